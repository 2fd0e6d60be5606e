"""
Dotenv loading for local runs.

Outside prod, `.env` then `.env.local` are loaded from the working directory,
followed by the file named in AUTOPAY_DOTENV (relayer keys kept outside the
checkout). Later files override earlier ones; `.env` never overrides the real
environment. In prod nothing is loaded and keys come from the process
environment only.

Must not import autopay.config.config: importing config has no dotenv side effects.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

EXPLICIT_DOTENV_VAR = "AUTOPAY_DOTENV"


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT", "prod") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """Load dotenv files for dev/paper runs. Returns the files actually loaded."""
    if _is_prod_env():
        return []

    root = repo_root or Path.cwd()
    candidates = [(root / ".env", False), (root / ".env.local", True)]
    explicit = os.getenv(EXPLICIT_DOTENV_VAR)
    if explicit:
        candidates.append((Path(explicit).expanduser(), True))

    loaded = []
    for path, override in candidates:
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
