"""
Explicit dotenv loading for local runs.

`.env` is loaded first, then `.env.local` on top of it. Production
(`ENVIRONMENT=prod`) reads credentials from the real environment only.

Kept free of `exit_reconciler.config.config` imports so it can run before
configuration is parsed.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# (filename, override already-set variables)
DOTENV_FILES: tuple[tuple[str, bool], ...] = ((".env", False), (".env.local", True))


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files from ``repo_root`` (default: current directory).

    Returns:
        Paths actually loaded; always empty in prod.
    """
    if (os.getenv("ENVIRONMENT") or "dev").strip().lower() == "prod":
        return []

    root = repo_root or Path.cwd()
    loaded: list[Path] = []
    for filename, override in DOTENV_FILES:
        path = root / filename
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
