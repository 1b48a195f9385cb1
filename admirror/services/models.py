"""Pydantic models shared by the AdMirror service layer.

Enums, database row views, collaborator results and pipeline stats.
No database access in this file -- pure type definitions.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class CompetitorTrack(str, Enum):
    CONSOLIDATOR = "consolidator"
    VELOCITY_TESTER = "velocity_tester"


class TaggingStatus(str, Enum):
    PENDING = "pending"
    TAGGED = "tagged"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_APPLICABLE = "not_applicable"


class ConvergenceClassification(str, Enum):
    STRONG_CONVERGENCE = "STRONG_CONVERGENCE"
    MODERATE_CONVERGENCE = "MODERATE_CONVERGENCE"
    EMERGING_PATTERN = "EMERGING_PATTERN"
    NO_CONVERGENCE = "NO_CONVERGENCE"


class VelocityDirection(str, Enum):
    ACCELERATING = "accelerating"
    DECLINING = "declining"
    STABLE = "stable"


# =============================================================================
# Row views
# =============================================================================

class AdRecord(BaseModel):
    """The subset of an ``ads`` row read by the track classifier."""

    id: str
    competitor_id: Optional[str] = None
    launch_date: Optional[date] = None
    days_active: int = 0
    variation_count: int = 1
    is_active: bool = False

    @field_validator("launch_date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # Timestamps are truncated to their calendar date
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @field_validator("days_active", mode="before")
    @classmethod
    def _days_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("variation_count", mode="before")
    @classmethod
    def _variation_default(cls, value: Any) -> Any:
        return 1 if value is None else value

    @field_validator("is_active", mode="before")
    @classmethod
    def _active_default(cls, value: Any) -> Any:
        return bool(value)


class CompetitorRecord(BaseModel):
    """A ``competitors`` row as read at the start of a classification run."""

    id: str
    name: Optional[str] = None
    track: Optional[CompetitorTrack] = None

    @field_validator("track", mode="before")
    @classmethod
    def _blank_track(cls, value: Any) -> Any:
        return value or None


# =============================================================================
# Track classification
# =============================================================================

class ClassificationResult(BaseModel):
    competitor_id: str
    competitor_name: Optional[str] = None
    track: CompetitorTrack
    previous_track: Optional[CompetitorTrack] = None
    track_changed: bool = False
    new_ads_30d: int = 0
    total_ads_launched_30d: int = 0
    survived_14d: int = 0
    survival_rate: Optional[float] = None


class TrackChangeLogEntry(BaseModel):
    """Append-only ``track_change_log`` row."""

    competitor_id: str
    previous_track: Optional[CompetitorTrack] = None
    new_track: CompetitorTrack
    new_ads_30d: int
    survival_rate: Optional[float] = None
    created_at: Optional[datetime] = None


class ClassificationPipelineStats(BaseModel):
    total: int = 0
    classified: int = 0
    track_changes: int = 0
    ads_scored: int = 0
    failed: int = 0
    duration_ms: int = 0


# =============================================================================
# Tagging
# =============================================================================

class TagValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class TaggingResult(BaseModel):
    """Outcome of one vision call. ``tags`` is only set when they validated."""

    tags: Optional[Dict[str, str]] = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    duration_ms: int = 0
    error: Optional[str] = None

    @property
    def rate_limited(self) -> bool:
        return self.error == "RATE_LIMITED"


class VideoTaggingResult(TaggingResult):
    pass


class TaggingCostEntry(BaseModel):
    """One row of the cost ledger (``tagging_cost_log`` / ``video_tagging_cost_log``)."""

    ad_id: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    duration_ms: int = 0
    success: bool = True
    error_message: Optional[str] = None
    stage: Optional[str] = None
    audio_seconds: Optional[int] = None


class PipelineStats(BaseModel):
    total: int = 0
    tagged: int = 0
    deduped: int = 0
    failed: int = 0
    skipped: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0


class VideoPipelineStats(BaseModel):
    total: int = 0
    tagged: int = 0
    failed: int = 0
    skipped: int = 0
    no_audio: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0


class ClientAdSyncResult(BaseModel):
    """Outcome of copying one brand's active client ads into ``ads``."""

    synced: int = 0
    already_synced: int = 0


class CombinedPipelineStats(BaseModel):
    image: PipelineStats
    video: VideoPipelineStats
    client_ads_synced: int = 0


# =============================================================================
# Video media collaborators
# =============================================================================

class KeyframeExtractionResult(BaseModel):
    frames: List[bytes] = Field(default_factory=list)
    duration_seconds: float = 0.0
    audio_path: Optional[str] = None


class TranscriptionResult(BaseModel):
    transcript: str = ""
    word_count: int = 0
    duration_ms: int = 0
    audio_seconds: float = 0.0
    estimated_cost_usd: float = 0.0
    error: Optional[str] = None


class VisualShift(BaseModel):
    frame_index: int
    description: str


class ShiftDetectionResult(BaseModel):
    shifts: List[VisualShift] = Field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0


# =============================================================================
# Creative convergence
# =============================================================================

class CompetitorInfo(BaseModel):
    id: str
    name: Optional[str] = None
    track: Optional[str] = None


class TaggedAd(BaseModel):
    id: str
    competitor_id: str
    signal_strength: int = 1
    competitor_track: Optional[str] = None
    launch_date: date
    is_video: bool = False
    tags: Dict[str, Optional[str]] = Field(default_factory=dict)
    video_tags: Dict[str, Optional[str]] = Field(default_factory=dict)

    def tag_value(self, dimension: str) -> Optional[str]:
        return self.tags.get(dimension) or self.video_tags.get(dimension) or None


class CompetitorAdoption(BaseModel):
    competitor_id: str
    competitor_name: str
    track: str
    current_prevalence: float
    previous_prevalence: float
    velocity_percent: float
    increasing: bool
    example_ad_ids: List[str] = Field(default_factory=list)


class ConvergenceElement(BaseModel):
    dimension: str
    value: str
    convergence_ratio: float = 0.0
    adjusted_score: float = 0.0
    cross_track: bool = False
    classification: ConvergenceClassification = ConvergenceClassification.NO_CONVERGENCE
    confidence: float = 0.0
    competitors_increasing: int = 0
    total_competitors: int = 0
    track_a_increasing: int = 0
    track_b_increasing: int = 0
    competitors: List[CompetitorAdoption] = Field(default_factory=list)
    is_new_alert: bool = False


class ConvergenceAnalysis(BaseModel):
    competitive_set: str
    brand_id: str
    analysis_date: date
    total_competitors: int
    confidence: float
    strong_convergences: List[ConvergenceElement] = Field(default_factory=list)
    moderate_convergences: List[ConvergenceElement] = Field(default_factory=list)
    emerging_patterns: List[ConvergenceElement] = Field(default_factory=list)
    market_shift_alerts: List[ConvergenceElement] = Field(default_factory=list)


class ConvergencePipelineStats(BaseModel):
    brands_analyzed: int = 0
    snapshots_saved: int = 0
    alerts_generated: int = 0
    failed: int = 0
    duration_ms: int = 0


# =============================================================================
# Creative velocity
# =============================================================================

class ElementVelocity(BaseModel):
    dimension: str
    value: str
    current_prevalence: float
    previous_prevalence: float
    velocity_percent: float
    direction: VelocityDirection
    ad_count: int = 0


class DimensionVelocity(BaseModel):
    current: float
    previous: float
    velocity: float
    direction: VelocityDirection


class TrackDivergence(BaseModel):
    dimension: str
    value: str
    consolidator_prevalence: float
    velocity_tester_prevalence: float
    divergence_percent: float
    direction: str  # velocity_testers_leading | consolidators_leading


class VelocityAnalysis(BaseModel):
    competitive_set: str
    brand_id: str
    analysis_date: date
    period: str = "90d"
    top_accelerating: List[ElementVelocity] = Field(default_factory=list)
    top_declining: List[ElementVelocity] = Field(default_factory=list)
    full_dimension_breakdown: Dict[str, Dict[str, DimensionVelocity]] = Field(default_factory=dict)
    track_divergences: List[TrackDivergence] = Field(default_factory=list)
    snapshots_saved: int = 0


class VelocityPipelineStats(BaseModel):
    brands_analyzed: int = 0
    snapshots_saved: int = 0
    failed: int = 0
    duration_ms: int = 0


# =============================================================================
# Creative gap
# =============================================================================

class GapExample(BaseModel):
    ad_id: str
    competitor_name: str


class GapElement(BaseModel):
    dimension: str
    value: str
    client_prevalence: float
    competitor_prevalence: float
    gap_size: float
    velocity: float = 0.0
    velocity_direction: VelocityDirection = VelocityDirection.STABLE
    convergence_score: float = 0.0
    convergence_classification: str = ConvergenceClassification.NO_CONVERGENCE.value
    priority_score: float = 0.0
    competitor_examples: List[GapExample] = Field(default_factory=list)
    recommendation: str = ""


class GapSummary(BaseModel):
    biggest_opportunity: str
    strongest_match: str
    total_gaps_identified: int


class GapAnalysis(BaseModel):
    brand_id: str
    analysis_date: date
    total_client_ads: int
    total_competitor_ads: int
    priority_gaps: List[GapElement] = Field(default_factory=list)
    strengths: List[GapElement] = Field(default_factory=list)
    watch_list: List[GapElement] = Field(default_factory=list)
    summary: GapSummary


class GapPipelineStats(BaseModel):
    brands_analyzed: int = 0
    snapshots_saved: int = 0
    client_ads_synced: int = 0
    failed: int = 0
    duration_ms: int = 0


# =============================================================================
# Ad lifecycle
# =============================================================================

class LifecycleAd(BaseModel):
    """A velocity tester's ad as read by the lifecycle analysis."""

    id: str
    competitor_id: str
    competitor_name: str = "Unknown"
    launch_date: date
    days_active: int = 0
    is_active: bool = False
    is_video: bool = False
    cohort_week: Optional[date] = None
    is_breakout: bool = False
    is_cash_cow: bool = False
    tags: Dict[str, Optional[str]] = Field(default_factory=dict)
    video_tags: Dict[str, Optional[str]] = Field(default_factory=dict)

    @field_validator("launch_date", "cohort_week", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @field_validator("days_active", mode="before")
    @classmethod
    def _days_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("is_active", "is_video", "is_breakout", "is_cash_cow", mode="before")
    @classmethod
    def _flag_default(cls, value: Any) -> Any:
        return bool(value)

    @property
    def has_image_tags(self) -> bool:
        return any(v is not None for v in self.tags.values())


class Cohort(BaseModel):
    """One competitor's ads launched in the same Monday-to-Sunday week."""

    competitor_id: str
    competitor_name: str
    cohort_start: date
    cohort_end: date
    ads: List[LifecycleAd]
    survivors: List[LifecycleAd]
    killed: List[LifecycleAd]
    survival_rate: float
    is_breakout_cohort: bool


class DifferentiatingElement(BaseModel):
    dimension: str
    value: str
    survivor_prevalence: float
    killed_prevalence: float
    lift: float
    direction: str  # survivor_higher | killed_higher


class BreakoutEvent(BaseModel):
    brand_id: str
    competitor_id: str
    competitor_name: str
    cohort_start: date
    cohort_end: date
    analysis_date: date
    total_in_cohort: int
    survivors_count: int
    killed_count: int
    survival_rate: float
    survivor_ad_ids: List[str] = Field(default_factory=list)
    killed_ad_ids: List[str] = Field(default_factory=list)
    survivor_tag_profile: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    killed_tag_profile: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    differentiating_elements: List[DifferentiatingElement] = Field(default_factory=list)
    top_survivor_traits: List[str] = Field(default_factory=list)
    analysis_summary: str = ""


class CashCowTransition(BaseModel):
    ad_id: str
    competitor_name: str
    days_active: int
    breakout_date: str
    cash_cow_date: str
    traits: List[str] = Field(default_factory=list)


class WinningPattern(BaseModel):
    dimension: str
    value: str
    frequency: int
    avg_lift: float
    confidence: float


class LifecycleAnalysis(BaseModel):
    brand_id: str
    analysis_date: date
    breakout_events: List[BreakoutEvent] = Field(default_factory=list)
    cash_cow_transitions: List[CashCowTransition] = Field(default_factory=list)
    winning_patterns: List[WinningPattern] = Field(default_factory=list)
    total_breakout_ads: int = 0
    total_cash_cows: int = 0
    market_signals: str = ""


class LifecyclePipelineStats(BaseModel):
    brands_analyzed: int = 0
    breakout_events_found: int = 0
    breakout_ads_flagged: int = 0
    cash_cows_detected: int = 0
    snapshots_saved: int = 0
    failed: int = 0
    duration_ms: int = 0
