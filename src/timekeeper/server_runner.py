"""Helpers to launch the local HTTP API."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from typing import Optional

import uvicorn

from .config import EngineSettings
from .webapp import create_app


def run_dashboard(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    settings: Optional[EngineSettings] = None,
    open_browser: bool = False,
    log_level: str = "info",
) -> None:
    """Start the FastAPI app and, optionally, open its docs page."""
    app = create_app(settings=settings or EngineSettings.from_env())

    if open_browser:
        url = f"http://{host}:{port}/docs"
        threading.Thread(
            target=_launch_browser_after_delay, args=(url,), daemon=True
        ).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _launch_browser_after_delay(url: str) -> None:
    time.sleep(1.0)
    try:
        webbrowser.open(url)
    except Exception:
        logging.getLogger(__name__).exception("Failed to launch browser for %s", url)
