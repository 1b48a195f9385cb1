"""
VideoVisionService - video creative tagging with Anthropic.

Three calls per video ad:
1. tag_hook_frame: the first keyframe against the image taxonomy
2. detect_visual_shifts: pairwise comparison of consecutive keyframes
3. tag_video_content: six video dimensions from transcript + hook context
"""

import logging
import time
from typing import Dict, List, Mapping

import anthropic

from ..helpers import elapsed_ms
from ..models import ShiftDetectionResult, TaggingResult, VideoTaggingResult, VisualShift
from .cost_tracking import calculate_cost
from .taxonomy import build_tagging_prompt, parse_json_response, validate_tag_set
from .video_taxonomy import (
    DURATION_BUCKET_KEY,
    VIDEO_DIMENSION_KEYS,
    build_video_tagging_prompt,
    get_duration_bucket,
    summarize_hook_tags,
    validate_video_tag_set,
)
from .vision_service import AnthropicVisionBase

logger = logging.getLogger(__name__)

SHIFT_PROMPT = (
    'Compare these two consecutive frames from a video ad. Is there a MAJOR visual change '
    '(different scene, person, product focus, transition)? '
    'Reply JSON only: { "changed": true/false, "description": "brief description if changed" }'
)


class VideoVisionService(AnthropicVisionBase):
    """Vision calls used by the video tagging pipeline."""

    async def tag_hook_frame(self, frame: bytes) -> TaggingResult:
        """Tag the opening frame with the 12-dimension image taxonomy."""
        content = [
            self._image_block(frame),
            {"type": "text", "text": build_tagging_prompt()},
        ]
        return await self._tag_with_prompt(content, validate_tag_set)

    async def detect_visual_shifts(self, frames: List[bytes]) -> ShiftDetectionResult:
        """
        Find major visual changes between consecutive keyframes.

        Unparseable answers and API errors skip that pair; a rate limit stops
        the scan and returns what was found so far.
        """
        start = time.monotonic()
        result = ShiftDetectionResult()

        for i in range(len(frames) - 1):
            content = [
                self._image_block(frames[i]),
                self._image_block(frames[i + 1]),
                {"type": "text", "text": SHIFT_PROMPT},
            ]
            try:
                response = await self._create(content, max_tokens=256)
            except anthropic.RateLimitError:
                logger.warning("Rate limited during shift detection, stopping early")
                break
            except anthropic.APIError as e:
                logger.warning(f"Shift detection failed for frames {i}/{i + 1}: {e}")
                continue

            input_tokens = response.usage.input_tokens
            output_tokens = response.usage.output_tokens
            result.total_input_tokens += input_tokens
            result.total_output_tokens += output_tokens
            result.total_cost_usd += calculate_cost(input_tokens, output_tokens)

            text = self._response_text(response)
            if text is None:
                continue
            try:
                parsed = parse_json_response(text)
            except ValueError:
                logger.debug(f"Unparseable shift answer for frames {i}/{i + 1}")
                continue

            if isinstance(parsed, dict) and parsed.get("changed"):
                result.shifts.append(VisualShift(
                    frame_index=i + 1,
                    description=parsed.get("description") or "Visual change detected",
                ))

        result.duration_ms = elapsed_ms(start)
        return result

    async def tag_video_content(
        self,
        transcript: str,
        hook_tags: Mapping[str, str],
        duration_seconds: float,
    ) -> VideoTaggingResult:
        """
        Tag the six inferred video dimensions and merge the duration bucket.

        Args:
            transcript: Speech transcript ('' for silent/music-only ads)
            hook_tags: Validated image tags of the hook frame
            duration_seconds: Video length from metadata

        Returns:
            VideoTaggingResult with all seven dimensions when valid
        """
        prompt = build_video_tagging_prompt(transcript, summarize_hook_tags(hook_tags))
        bucket = get_duration_bucket(duration_seconds)

        def merge_bucket(parsed: Dict) -> Dict:
            parsed[DURATION_BUCKET_KEY] = bucket
            return parsed

        return await self._tag_with_prompt(
            prompt,
            validate_video_tag_set,
            keys=VIDEO_DIMENSION_KEYS,
            result_cls=VideoTaggingResult,
            transform=merge_bucket,
        )
