"""Settings management CLI commands."""

import json
import os

import click

from flowforge.core.settings import SettingsManager

SENSITIVE_HEADER_WORDS = ("authorization", "token", "key", "secret")


def _manager(ctx: click.Context) -> SettingsManager:
    if ctx.obj and ctx.obj.get("settings_manager"):
        return ctx.obj["settings_manager"]
    return SettingsManager()


def _mask_value(value: str) -> str:
    if len(value) <= 3:
        return "***"
    return f"{value[:3]}***"


def _mask_sensitive(settings_dict: dict) -> dict:
    """Copy of the settings dict with catalog header and env secrets masked."""
    masked = json.loads(json.dumps(settings_dict))
    catalog = masked.get("catalog", {})
    for section in ("headers", "env"):
        values = catalog.get(section) or {}
        for key, value in values.items():
            if any(word in key.lower() for word in SENSITIVE_HEADER_WORDS) and isinstance(value, str):
                values[key] = _mask_value(value)
    return masked


@click.group()
def settings() -> None:
    """Manage flowforge settings."""
    pass


@settings.command()
@click.pass_context
def show(ctx: click.Context) -> None:
    """Show current settings.

    Sensitive catalog headers and environment values are masked.
    """
    manager = _manager(ctx)
    current = manager.load()

    click.echo(f"Settings file: {manager.settings_path}")
    click.echo("\nCurrent settings:")
    click.echo(json.dumps(_mask_sensitive(current.model_dump()), indent=2))

    for name in ("FLOWFORGE_MODEL", "FLOWFORGE_VALIDATION_TIMEOUT", "FLOWFORGE_CATALOG_URL"):
        if os.getenv(name):
            click.echo(f"\n⚠️  {name} environment variable overrides the file")


@settings.command("set-model")
@click.argument("model")
@click.pass_context
def set_model(ctx: click.Context, model: str) -> None:
    """Set the model used for completions.

    Example:
        flowforge settings set-model anthropic/claude-sonnet-4-0
    """
    manager = _manager(ctx)
    manager.set_model(model)
    click.echo(f"✓ Model set to: {model}")


@settings.command("set-catalog-url")
@click.argument("url")
@click.pass_context
def set_catalog_url(ctx: click.Context, url: str) -> None:
    """Use a streamable-HTTP MCP server for the node catalog."""
    manager = _manager(ctx)
    manager.set_catalog_url(url)
    click.echo(f"✓ Catalog URL set to: {url}")
