# src/tbw/api/__main__.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import uvicorn

from tbw.env import load_dotenv_if_present


def serve(*, socket_path: Optional[str] = None) -> None:
    """Run the operator API on a unix domain socket."""
    # Load .env early so TBW_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load (prevents "config read before env" surprises)
    from tbw.api.app import create_app
    from tbw.config import load_tbw_config
    from tbw.log_events import configure_structured_logging

    cfg = load_tbw_config()
    configure_structured_logging(cfg.log_level)

    uds = socket_path or cfg.socket_path
    Path(uds).parent.mkdir(parents=True, exist_ok=True)
    if os.path.exists(uds):
        os.unlink(uds)

    uvicorn.run(create_app(cfg=cfg), uds=uds, log_level=cfg.log_level.lower())


def main() -> None:
    serve()


if __name__ == "__main__":
    main()
