"""
Tag CLI Commands

Run the image and video creative tagging pipelines.
"""

import asyncio

import click

from ..core.config import TaggingPolicy
from ._common import build_store, echo_json


@click.group(name="tag")
def tag_group():
    """Tag competitor ad creatives against the fixed taxonomies."""
    pass


@tag_group.command(name="images")
@click.option("--max-retries", type=int, help="Override the retry ceiling before an ad is skipped")
def tag_images(max_retries):
    """
    Tag one batch of untagged image ads.

    Example:
        admirror tag images
    """
    from ..services.tagging.tagging_pipeline import run_tagging_pipeline

    store = build_store()
    stats = asyncio.run(run_tagging_pipeline(store=store, policy=_policy(max_retries)))
    echo_json(stats)


@tag_group.command(name="videos")
@click.option("--max-retries", type=int, help="Override the retry ceiling before an ad is skipped")
def tag_videos(max_retries):
    """
    Tag one batch of untagged video ads (keyframes, transcript, vision).

    Example:
        admirror tag videos
    """
    from ..services.tagging.video_tagging_pipeline import run_video_tagging_pipeline

    store = build_store()
    stats = asyncio.run(run_video_tagging_pipeline(store=store, policy=_policy(max_retries)))
    echo_json(stats)


@tag_group.command(name="all")
def tag_all():
    """Run image tagging followed by video tagging."""
    from ..services.tagging.combined import run_combined_tagging_pipeline

    store = build_store()
    stats = asyncio.run(run_combined_tagging_pipeline(store=store))
    echo_json(stats)


def _policy(max_retries):
    policy = TaggingPolicy.from_config()
    if max_retries is not None:
        policy = policy.model_copy(update={"max_retries": max_retries})
    return policy
