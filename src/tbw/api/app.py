from __future__ import annotations

import importlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tbw.api.errors import ApiError, api_error_handler, tbw_error_handler
from tbw.api.routes import router
from tbw.api.structured_logging import RequestLogMiddleware
from tbw.config import TbwConfig, load_tbw_config
from tbw.errors import ConfigurationError, TbwError
from tbw.host import ChainHost, MemoryChainHost
from tbw.ledger.settings import SettingsStore
from tbw.ledger.store import HistoryStore, LedgerStore
from tbw.log_events import log_event
from tbw.pay.pay import Payer
from tbw.pay.rounds import RoundCalculator
from tbw.runtime.block_handler import BlockEventHandler
from tbw.runtime.sqlite_db import SqliteDB

log = logging.getLogger("tbw.http")


def build_host() -> ChainHost:
    """Build the ChainHost for the running service.

    TBW_HOST_FACTORY="package.module:callable" selects a host adapter; without
    it an in-memory host is used. Tests monkeypatch `tbw.api.app.build_host`.
    """
    target = (os.environ.get("TBW_HOST_FACTORY") or "").strip()
    if not target:
        return MemoryChainHost()
    mod_name, _, attr = target.partition(":")
    if not mod_name or not attr:
        raise ConfigurationError("TBW_HOST_FACTORY must look like 'module:callable'", {"value": target})
    factory = getattr(importlib.import_module(mod_name), attr)
    return factory()


def attach_runtime(app: FastAPI, *, cfg: TbwConfig, host: ChainHost, use_worker_process: bool = True) -> None:
    db = SqliteDB(path=cfg.db_path)
    ledger = LedgerStore(db=db)
    history = HistoryStore(db=db)
    settings = SettingsStore(cfg.settings_path)

    app.state.cfg = cfg
    app.state.host = host
    app.state.ledger = ledger
    app.state.history = history
    app.state.settings = settings
    app.state.payer = Payer(
        cfg=cfg,
        host=host,
        history=history,
        settings=settings,
        use_worker_process=use_worker_process,
    )
    handler = BlockEventHandler(
        host=host,
        ledger=ledger,
        history=history,
        settings=settings,
        rounds=RoundCalculator(cfg.active_delegates),
    )
    handler.subscribe()
    app.state.block_handler = handler


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [f"{'.'.join(str(x) for x in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()]
    return await api_error_handler(request, ApiError.bad_request("invalid_request", "invalid request body", {"errors": errors}))


def create_app(
    *,
    boot_runtime: bool = True,
    cfg: Optional[TbwConfig] = None,
    host: Optional[ChainHost] = None,
) -> FastAPI:
    """Create the operator FastAPI application.

    boot_runtime:
      - True (default): open the ledger and attach payer + block handler
      - False: bare app; callers attach the runtime with attach_runtime()
    """

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        handler = getattr(app.state, "block_handler", None)
        if handler is not None:
            rewound = handler.reconcile_with_host()
            if rewound is not None:
                log_event(log, "startup_reconciled", level=logging.WARNING, height=rewound)
        yield

    app = FastAPI(title="TBW payout service", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)

    app.state.cfg = None
    app.state.payer = None
    app.state.block_handler = None
    app.state.ledger = None

    if boot_runtime:
        attach_runtime(app, cfg=cfg or load_tbw_config(), host=host or build_host())

    app.add_middleware(RequestLogMiddleware)

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(TbwError, tbw_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(router)
    return app
