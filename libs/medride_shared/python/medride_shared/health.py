import logging
import os
from collections.abc import Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse

_log = logging.getLogger("medride.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: dict[str, Callable[[], None]] | None = None,
):
    """
    Mount GET /health. Each entry in ``checks`` is called per request and
    reports "ok" unless it raises; any failing check turns the response 503.
    """

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        healthy = True
        for name, check in (checks or {}).items():
            try:
                check()
                results[name] = "ok"
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                results[name] = "error"
                healthy = False
        body = {
            "status": "ok" if healthy else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)
