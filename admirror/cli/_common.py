"""Shared CLI plumbing: logging setup, store construction, JSON output."""

import json
import logging

import click

from ..core.config import Config
from ..core.database import get_supabase_client
from ..core.observability import setup_logfire

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


def build_store():
    """Validate configuration and return an AdStore bound to Supabase."""
    from ..services.ad_store import AdStore

    try:
        Config.validate()
    except ValueError as e:
        raise click.ClickException(str(e))
    setup_logfire()
    return AdStore(get_supabase_client())


def echo_json(model) -> None:
    payload = model.model_dump(mode="json") if hasattr(model, "model_dump") else model
    click.echo(json.dumps(payload, indent=2))
