"""Command line interface for the directory group manager."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import (
    AppConfig,
    AuthConfig,
    ConfigurationError,
    config_to_dict,
    ensure_default_config,
    load_config,
    save_config,
)

app = typer.Typer(help="Manage directory groups through the graph API.")
config_app = typer.Typer(help="Inspect and initialise the settings file.")
app.add_typer(config_app, name="config")

_SECRET_KEYS = {"client_secret"}


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _mask_secrets(payload: Dict[str, Any]) -> Dict[str, Any]:
    masked: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, dict):
            masked[key] = _mask_secrets(value)
        elif key in _SECRET_KEYS and value:
            masked[key] = "********"
        else:
            masked[key] = value
    return masked


@config_app.command("init")
def init_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    template_path: Optional[Path] = typer.Option(
        None, "--template", help="Template to copy when the settings file is missing."
    ),
) -> None:
    """Create the settings file if it does not exist.

    The example template is copied when available; otherwise the built-in
    defaults are written.
    """

    try:
        target = ensure_default_config(config_path, template_path)
    except ConfigurationError as exc:
        if template_path is not None:
            typer.echo(f"Error: {exc}")
            raise typer.Exit(code=1)
        target = save_config(AppConfig(auth=AuthConfig()), config_path)
        typer.echo("Example template not found; wrote built-in defaults.")
    typer.echo(f"Settings file ready at {target}.")


@config_app.command("show")
def show_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Print the effective configuration with secrets masked."""

    config = _load_configuration(config_path)
    typer.echo(json.dumps(_mask_secrets(config_to_dict(config)), indent=2))
    if not config.auth.has_credentials:
        typer.echo("Warning: auth.client_id and auth.client_secret are required for sign-in.")


@app.command("serve")
def serve(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    host: str = typer.Option("127.0.0.1", help="Interface to bind the development server to."),
    port: int = typer.Option(5000, help="Port for the development server."),
    debug: bool = typer.Option(False, "--debug", help="Enable the Flask debugger and reloader."),
) -> None:
    """Run the web interface with the Flask development server."""

    from .web import create_app

    _load_configuration(config_path)
    web_app = create_app(config_path)
    web_app.run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
