from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from snipsync import __version__
from snipsync.core.config import load_config
from snipsync.sync.db import init_db
from snipsync.web.api import router as api_router, start_scheduler, stop_scheduler


def build_app(with_scheduler: bool = True) -> FastAPI:
    cfg = load_config()
    init_db(cfg.database.path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        if with_scheduler:
            start_scheduler()
        try:
            yield
        finally:
            await stop_scheduler()

    api = FastAPI(title="snipsync", version=__version__, lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()
    init_db(cfg.database.path)

    from snipsync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
