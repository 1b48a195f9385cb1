"""
Classify CLI Commands
"""

import asyncio

import click

from ._common import build_store, echo_json


@click.group(name="classify")
def classify_group():
    """Classify competitors by creative testing strategy."""
    pass


@classify_group.command(name="competitors")
@click.option("--verbose", is_flag=True, help="Print per-competitor results")
def classify_competitors(verbose: bool):
    """
    Assign every competitor a track and rescore their ads.

    Example:
        admirror classify competitors --verbose
    """
    from ..services.classification.track_classifier import TrackClassifier

    classifier = TrackClassifier(build_store())
    stats = asyncio.run(classifier.run())

    if verbose:
        for result in classifier.last_results:
            marker = "*" if result.track_changed else " "
            click.echo(
                f"{marker} {result.competitor_name or result.competitor_id}: "
                f"{result.track.value} ({result.new_ads_30d} new ads in 30d)"
            )
    echo_json(stats)
