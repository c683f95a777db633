"""FastAPI application factory for the llama session API.

Endpoints: /health, /version and the /sessions router.
"""
from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from llama_core import __version__, metrics
from llama_core.config import get_config
from llama_core.llm.exceptions import SessionError
from llama_core.llm.session import get_version
from llama_core.logs import configure_logging
from llama_session.api.routes.sessions import error_response
from llama_session.api.routes.sessions import router as sessions_router


def create_app() -> FastAPI:
    configure_logging(get_config().logging)
    app = FastAPI(
        title="llama session API",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    @app.get("/health")
    def health():  # noqa: D401
        return {"status": "ok"}

    @app.get("/version")
    def version():  # noqa: D401
        return {"version": get_version()}

    @app.exception_handler(SessionError)
    async def _session_error(request: Request, exc: SessionError) -> JSONResponse:
        return error_response(exc)

    app.include_router(sessions_router)

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):  # noqa: D401
        start = time.time()
        labels = {"route": request.url.path, "method": request.method}
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000.0
        metrics.inc("api_request_total", labels)
        metrics.observe("api_request_latency_ms", duration_ms, labels)
        if response.status_code >= 400:
            metrics.inc(
                "api_request_errors_total",
                labels | {"status": str(response.status_code)},
            )
        return response

    return app


def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "llama_session.api.app:create_app",
        factory=True,
        host="127.0.0.1",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
