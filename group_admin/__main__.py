"""Entry point for running the CLI as a module."""
from __future__ import annotations

import sys

try:
    from .cli import run
except ModuleNotFoundError as exc:  # pragma: no cover - missing optional install
    missing = getattr(exc, "name", None)
    if missing == "typer":
        sys.stderr.write(
            "Missing dependency 'typer'. Install the project with\n"
            "    pip install -e .\n"
        )
        raise SystemExit(1) from exc
    raise

run()
