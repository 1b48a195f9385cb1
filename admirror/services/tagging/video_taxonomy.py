"""
Video creative taxonomy.

Seven dimensions. ``video_duration_bucket`` is computed from metadata with
``get_duration_bucket`` and is never asked of the model; the other six are
inferred from the transcript and hook-frame context.
"""

from typing import Any, Dict, Mapping, Tuple

from ..models import TagValidation
from .taxonomy import DIMENSION_KEYS, render_dimension_lines, validate_against

SCRIPT_STRUCTURE_VALUES = ('problem_solution', 'testimonial_narrative', 'listicle_tips', 'demonstration', 'story_arc', 'no_script_music_only')
VERBAL_HOOK_TYPE_VALUES = ('question', 'bold_claim', 'statistic', 'direct_address', 'pain_point', 'none_no_speech')
PACING_VALUES = ('fast_cut_under_3s', 'moderate_3_5s', 'slow_single_shot', 'mixed')
AUDIO_STYLE_VALUES = ('voiceover', 'direct_to_camera', 'music_only', 'mixed_voice_and_music', 'silent')
VIDEO_DURATION_BUCKET_VALUES = ('under_15s', '15_to_30s', '30_to_60s', 'over_60s')
NARRATIVE_ARC_VALUES = ('single_scene', 'face_to_product', 'product_to_result', 'problem_to_solution', 'testimonial_to_cta', 'multi_scene_montage')
OPENING_FRAME_VALUES = ('human_face', 'text_hook', 'product_closeup', 'environment_scene', 'brand_logo')

DURATION_BUCKET_KEY = 'video_duration_bucket'

VIDEO_TAXONOMY_DIMENSIONS: Dict[str, Tuple[str, ...]] = {
    'script_structure': SCRIPT_STRUCTURE_VALUES,
    'verbal_hook_type': VERBAL_HOOK_TYPE_VALUES,
    'pacing': PACING_VALUES,
    'audio_style': AUDIO_STYLE_VALUES,
    DURATION_BUCKET_KEY: VIDEO_DURATION_BUCKET_VALUES,
    'narrative_arc': NARRATIVE_ARC_VALUES,
    'opening_frame': OPENING_FRAME_VALUES,
}

VIDEO_DIMENSION_KEYS = list(VIDEO_TAXONOMY_DIMENSIONS)

# Dimensions the model is asked to infer
AI_VIDEO_DIMENSIONS: Dict[str, Tuple[str, ...]] = {
    key: values for key, values in VIDEO_TAXONOMY_DIMENSIONS.items() if key != DURATION_BUCKET_KEY
}
AI_VIDEO_DIMENSION_KEYS = list(AI_VIDEO_DIMENSIONS)

NO_SPEECH_PLACEHOLDER = '[No speech detected - music/silent video]'


def get_duration_bucket(seconds: float) -> str:
    if seconds < 15:
        return 'under_15s'
    if seconds < 30:
        return '15_to_30s'
    if seconds < 60:
        return '30_to_60s'
    return 'over_60s'


def validate_video_tag_set(tags: Any) -> TagValidation:
    return validate_against(VIDEO_TAXONOMY_DIMENSIONS, tags)


def summarize_hook_tags(hook_tags: Mapping[str, str]) -> str:
    """Render image hook tags as ``key: value, ...`` in taxonomy order."""
    return ', '.join(f"{key}: {hook_tags.get(key)}" for key in DIMENSION_KEYS)


def build_video_tagging_prompt(transcript: str, hook_tags_summary: str) -> str:
    """Prompt for the six inferred video dimensions (duration bucket excluded)."""
    return (
        "Analyze this video ad based on the transcript and hook frame visual context below.\n"
        f"Classify it across exactly {len(AI_VIDEO_DIMENSIONS)} dimensions.\n"
        "Pick EXACTLY ONE value per dimension.\n"
        "Return ONLY a JSON object with no markdown, no explanation.\n"
        "\n"
        "TRANSCRIPT:\n"
        f"{transcript or NO_SPEECH_PLACEHOLDER}\n"
        "\n"
        "HOOK FRAME VISUAL CONTEXT:\n"
        f"{hook_tags_summary}\n"
        "\n"
        "{\n"
        f"{render_dimension_lines(AI_VIDEO_DIMENSIONS)}\n"
        "}"
    )
