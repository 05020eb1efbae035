"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Must not import coreyield.config.config.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _is_prod_env() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Optional[Path] = None) -> bool:
    """
    Load dotenv files for local/dev usage. No-op in prod.

    Returns:
        True if at least one file was loaded
    """
    if _is_prod_env():
        return False

    root = repo_root or Path.cwd()
    loaded = False

    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        loaded = True

    env_local_path = root / ".env.local"
    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
        loaded = True

    return loaded
