from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from possync import __version__
from possync.core.config import AppConfig, load_config
from possync.sync import SyncEngine
from possync.web.api import router as api_router

logger = logging.getLogger("web")


def build_app(cfg: Optional[AppConfig] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    cfg = cfg or load_config()
    engine = engine or SyncEngine.from_config(cfg)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        engine.start()
        try:
            yield
        finally:
            await engine.stop()
            logger.info("engine_stopped")

    api = FastAPI(title="possync", version=__version__, lifespan=lifespan)
    api.state.config = cfg
    api.state.engine = engine
    api.include_router(api_router)
    return api


def main(host: Optional[str] = None, port: Optional[int] = None):
    import uvicorn

    cfg = load_config()

    from possync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file, cfg.logging.max_bytes, cfg.logging.backup_count)

    uvicorn.run(
        build_app(cfg),
        host=host or cfg.web_bind_host,
        port=port or cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
