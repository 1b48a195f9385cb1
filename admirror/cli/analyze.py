"""
Analyze CLI Commands
"""

import asyncio
from typing import Optional

import click

from ._common import build_store, echo_json


@click.group(name="analyze")
def analyze_group():
    """Cross-competitor creative analysis."""
    pass


def _run(analyzer, brand_id: Optional[str], empty_message: str):
    """Analyze one brand when given, otherwise run the job for every client brand."""
    if brand_id:
        result = asyncio.run(analyzer.analyze_brand(brand_id))
        if result is None:
            click.echo(f"{empty_message} for brand {brand_id}", err=True)
            return
        echo_json(result)
        return

    echo_json(asyncio.run(analyzer.run()))


@analyze_group.command(name="convergence")
@click.option("--brand-id", help="Analyze a single brand (default: every client brand)")
def analyze_convergence(brand_id: Optional[str]):
    """
    Detect creative elements competitors are converging on.

    Example:
        admirror analyze convergence --brand-id 3f2a...
    """
    from ..services.analysis.convergence import ConvergenceAnalyzer

    _run(ConvergenceAnalyzer(build_store()), brand_id, "No competitors or tagged ads")


@analyze_group.command(name="velocity")
@click.option("--brand-id", help="Analyze a single brand (default: every client brand)")
def analyze_velocity(brand_id: Optional[str]):
    """
    Rank creative elements by how fast competitors are adopting or dropping them.

    Example:
        admirror analyze velocity --brand-id 3f2a...
    """
    from ..services.analysis.velocity import VelocityAnalyzer

    _run(VelocityAnalyzer(build_store()), brand_id, "No competitors or tagged ads")


@analyze_group.command(name="gap")
@click.option("--brand-id", help="Analyze a single brand (default: every client brand)")
@click.option("--no-sync", is_flag=True, help="Skip queueing new client ads for tagging")
def analyze_gap(brand_id: Optional[str], no_sync: bool):
    """
    Compare a brand's own creative mix with its competitors'.

    Examples:
        admirror analyze gap
        admirror analyze gap --brand-id 3f2a... --no-sync
    """
    from ..services.analysis.gap import GapAnalyzer

    _run(GapAnalyzer(build_store(), sync_client_ads=not no_sync), brand_id, "No tagged client or competitor ads")


@analyze_group.command(name="lifecycle")
@click.option("--brand-id", help="Analyze a single brand (default: every client brand)")
def analyze_lifecycle(brand_id: Optional[str]):
    """
    Find breakout cohorts and cash cows among velocity testers.

    Example:
        admirror analyze lifecycle --brand-id 3f2a...
    """
    from ..services.analysis.lifecycle import LifecycleAnalyzer

    _run(LifecycleAnalyzer(build_store()), brand_id, "No velocity testers or recent ads")
