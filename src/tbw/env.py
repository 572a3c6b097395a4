# src/tbw/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Set

_LOADED: Set[str] = set()


def _candidates(dotenv_path: Optional[str]) -> List[Path]:
    if dotenv_path:
        return [Path(dotenv_path).expanduser()]
    explicit = os.getenv("TBW_DOTENV_PATH")
    if explicit:
        return [Path(explicit).expanduser()]
    out = [Path(".env")]
    data_dir = os.getenv("TBW_DATA_DIR")
    if data_dir:
        out.append(Path(data_dir).expanduser() / ".env")
    return out


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> Optional[Path]:
    """Load operator overrides from the first .env file found.

    Lookup order: `dotenv_path`, then TBW_DOTENV_PATH, then ./.env, then
    $TBW_DATA_DIR/.env. A file is loaded at most once per process and
    variables already in the environment win over it. Returns the loaded
    path, or None.
    """
    for path in _candidates(dotenv_path):
        if not path.is_file():
            continue
        key = str(path.resolve())
        if key in _LOADED:
            return None

        from dotenv import load_dotenv

        load_dotenv(dotenv_path=key, override=False)
        _LOADED.add(key)
        return path
    return None
