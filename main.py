import asyncio
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kpi_engine.api.routes import router
from kpi_engine.errors import EngineError, InvalidRequestError
from kpi_engine.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def _error_response(exc: EngineError) -> JSONResponse:
    error = {"kind": exc.code, "message": exc.message, "errorId": exc.error_id}
    if exc.details:
        error["details"] = exc.details
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "version": settings.api_version, "error": error},
        headers={"Cache-Control": "no-store"},
    )


def create_app() -> FastAPI:
    docs_enabled = settings.environment != "production"
    app = FastAPI(
        title="KPI Engine",
        description="KPI query compiler and asynchronous warehouse execution service",
        version="0.1.0",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )

    @app.exception_handler(EngineError)
    async def handle_engine_error(_request: Request, exc: EngineError) -> JSONResponse:
        logger.warning(
            "engine.handled_error | %s",
            {
                "error_id": exc.error_id,
                "code": exc.code,
                "status_code": exc.status_code,
            },
        )
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        return _error_response(InvalidRequestError("Malformed request", details={"errors": errors}))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        error_id = str(uuid.uuid4())
        logger.exception("engine.unhandled_error | %s", {"error_id": error_id})
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "version": settings.api_version,
                "error": {
                    "kind": "internal_error",
                    "message": "Unexpected internal error",
                    "errorId": error_id,
                },
            },
        )

    @app.middleware("http")
    async def request_timeout_middleware(request: Request, call_next):  # type: ignore[override]
        try:
            response = await asyncio.wait_for(call_next(request), timeout=settings.request_timeout_seconds)
        except TimeoutError:
            return _error_response(
                EngineError(status_code=504, code="request_timeout", message="Request timed out")
            )
        response.headers["x-mc-version"] = settings.api_version
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "x-mc-api", "x-mc-version", "x-correlation-id"],
        expose_headers=["x-mc-version"],
        max_age=86400,
    )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
