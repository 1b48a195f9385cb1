"""
Confidence CLI Commands

Offline helper for the survival-weighted confidence score.
"""

import click

from ..services.confidence import compute_confidence_score, get_confidence_label
from ._common import echo_json


@click.group(name="confidence")
def confidence_group():
    """Survival-weighted confidence scoring."""
    pass


@confidence_group.command(name="score")
@click.argument("quality", type=float)
@click.argument("days", type=int)
def confidence_score(quality: float, days: int):
    """
    Score an ad with QUALITY (0-100) that has run for DAYS days.

    Example:
        admirror confidence score 80 30
    """
    echo_json({
        "quality": quality,
        "days_running": days,
        "confidence_score": compute_confidence_score(quality, days),
        "label": get_confidence_label(days),
    })
