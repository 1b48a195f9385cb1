"""
Main CLI entry point for AdMirror
"""

import click

from .. import __version__
from .analyze import analyze_group
from .classify import classify_group
from .confidence import confidence_group
from .tag import tag_group


@click.group()
@click.version_option(version=__version__)
def cli():
    """
    AdMirror - competitor ad creative intelligence

    Tag competitor ads, classify competitors by testing strategy and detect
    creative convergence across a competitive set.
    """
    pass


cli.add_command(tag_group)
cli.add_command(classify_group)
cli.add_command(analyze_group)
cli.add_command(confidence_group)


if __name__ == '__main__':
    cli()
