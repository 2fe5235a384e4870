# hytainstall/main.py
"""
HyTa Installer – FastAPI entry point
====================================

Run options
-----------
• API server:   python -m hytainstall serve
• Programmatic: hytainstall.main.run_server(host, port)
"""

from __future__ import annotations

import importlib
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from hytainstall.core import config


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    yield
    # close the shared HTTP session and stop a running install
    await updates.session.close()


app = FastAPI(
    title=config.APP_NAME,
    version=config.LAUNCHER_VERSION,
    docs_url=None,
    redoc_url=None,
    lifespan=_lifespan,
)

# ────────────────────────────── API routers
updates = importlib.import_module("hytainstall.api.updates")

app.include_router(updates.router, prefix="/api")


def run_server(host: str = "127.0.0.1", port: int = 5050) -> None:
    config.setup_logging()
    uvicorn.run(app, host=host, port=port, log_level="error")
