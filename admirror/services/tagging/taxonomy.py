"""
Creative taxonomy for image ads.

Twelve fixed dimensions, each with a closed set of allowed values. Tag sets
returned by the vision model are only stored once they pass
``validate_tag_set``.
"""

import json
import re
from typing import Any, Dict, Mapping, Tuple

from ..models import TagValidation

FORMAT_TYPE_VALUES = ('static_image', 'ugc_talking_head', 'product_demo', 'motion_graphics', 'lifestyle_photo', 'before_after', 'carousel_card', 'screenshot_testimonial')
HOOK_TYPE_VISUAL_VALUES = ('problem_agitation', 'bold_claim', 'question', 'statistic', 'curiosity_gap', 'social_proof', 'none')
HUMAN_PRESENCE_VALUES = ('full_face', 'partial_body', 'hands_only', 'no_human', 'crowd_multiple')
TEXT_OVERLAY_DENSITY_VALUES = ('none', 'minimal_headline_only', 'moderate', 'heavy_text_dominant')
TEXT_OVERLAY_POSITION_VALUES = ('top', 'center', 'bottom', 'split_top_bottom', 'none')
COLOR_TEMPERATURE_VALUES = ('warm', 'cool', 'neutral', 'high_contrast', 'muted')
BACKGROUND_STYLE_VALUES = ('solid_color', 'gradient', 'real_environment', 'studio', 'blurred')
PRODUCT_VISIBILITY_VALUES = ('hero_center', 'in_use', 'secondary', 'not_visible')
CTA_VISUAL_STYLE_VALUES = ('button', 'text_only', 'overlay_banner', 'end_card', 'none')
VISUAL_COMPOSITION_VALUES = ('centered_single', 'split_screen', 'grid_collage', 'full_bleed', 'framed')
BRAND_ELEMENT_PRESENCE_VALUES = ('logo_visible', 'brand_colors_dominant', 'neither', 'both')
EMOTION_ENERGY_LEVEL_VALUES = ('calm_aspirational', 'urgent_high_energy', 'educational_neutral', 'emotional_storytelling', 'humorous')

TAXONOMY_DIMENSIONS: Dict[str, Tuple[str, ...]] = {
    'format_type': FORMAT_TYPE_VALUES,
    'hook_type_visual': HOOK_TYPE_VISUAL_VALUES,
    'human_presence': HUMAN_PRESENCE_VALUES,
    'text_overlay_density': TEXT_OVERLAY_DENSITY_VALUES,
    'text_overlay_position': TEXT_OVERLAY_POSITION_VALUES,
    'color_temperature': COLOR_TEMPERATURE_VALUES,
    'background_style': BACKGROUND_STYLE_VALUES,
    'product_visibility': PRODUCT_VISIBILITY_VALUES,
    'cta_visual_style': CTA_VISUAL_STYLE_VALUES,
    'visual_composition': VISUAL_COMPOSITION_VALUES,
    'brand_element_presence': BRAND_ELEMENT_PRESENCE_VALUES,
    'emotion_energy_level': EMOTION_ENERGY_LEVEL_VALUES,
}

DIMENSION_KEYS = list(TAXONOMY_DIMENSIONS)

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def validate_against(dimensions: Mapping[str, Tuple[str, ...]], tags: Any) -> TagValidation:
    """Check every dimension of ``dimensions`` against a candidate tag dict.

    Violations accumulate; validation never stops at the first error.
    """
    if not isinstance(tags, dict):
        return TagValidation(valid=False, errors=['Tags must be a non-null object'])

    errors = []
    for key, allowed in dimensions.items():
        if key not in tags:
            errors.append(f"Missing dimension: {key}")
            continue
        value = tags[key]
        if not isinstance(value, str) or value not in allowed:
            errors.append(f'Invalid value for {key}: "{value}". Must be one of: {", ".join(allowed)}')

    return TagValidation(valid=not errors, errors=errors)


def validate_tag_set(tags: Any) -> TagValidation:
    return validate_against(TAXONOMY_DIMENSIONS, tags)


def render_dimension_lines(dimensions: Mapping[str, Tuple[str, ...]]) -> str:
    lines = []
    for key, values in dimensions.items():
        quoted = ", ".join(f'"{value}"' for value in values)
        lines.append(f'  "{key}": one of [{quoted}]')
    return ',\n'.join(lines)


def build_tagging_prompt() -> str:
    """Prompt asking the vision model for one value per image dimension."""
    return (
        f"Analyze this ad image. Classify it across exactly {len(TAXONOMY_DIMENSIONS)} dimensions.\n"
        "Pick EXACTLY ONE value per dimension.\n"
        "Return ONLY a JSON object with no markdown, no explanation.\n"
        "\n"
        "{\n"
        f"{render_dimension_lines(TAXONOMY_DIMENSIONS)}\n"
        "}"
    )


def strip_code_fences(text: str) -> str:
    """Return the body of the first ```json fence, or the text unchanged."""
    match = _CODE_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def parse_json_response(text: str) -> Any:
    """Parse a model response as JSON after stripping markdown fences.

    Raises:
        ValueError: if the text is not valid JSON
    """
    return json.loads(strip_code_fences(text))
