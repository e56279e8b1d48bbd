"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`, the default): `.env` files are not read.
- Otherwise: load `.env` then `.env.local`, the latter overriding.

Must not import `copytrader.config.config`; it runs before config is parsed.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def is_prod_env() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for local/dev usage.

    Returns the files that were actually loaded (empty in prod).
    """
    if is_prod_env():
        return []

    root = repo_root or Path(__file__).resolve().parent.parent.parent
    loaded = []
    for name, override in ((".env", False), (".env.local", True)):
        path = root / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
