from __future__ import annotations

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Dict, Set

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from meeting_intel.api.meetings import router as meetings_router
from meeting_intel.api.recording import router as recording_router
from meeting_intel.api.settings import router as settings_router
from meeting_intel.api.transcription import router as transcription_router
from meeting_intel.config import Settings
from meeting_intel.deps import get_recording_manager
from meeting_intel.errors import PipelineError
from meeting_intel.models.base import init_db
from meeting_intel.services.model_store import get_model_store, template_descriptor
from meeting_intel.services.orchestrator import get_orchestrator
from meeting_intel.services.prompt_composer import load_template_pack

settings = Settings()
logger = logging.getLogger("meeting_intel.api")

# Startup jobs, referenced until they finish
_background_tasks: Set[asyncio.Task] = set()

# HTTP code per error status; anything unlisted is a 500
HTTP_STATUS_BY_ERROR: Dict[str, int] = {
    "meeting_not_found": 404,
    "already_in_progress": 409,
    "invalid_state": 409,
    "transcript_finalized": 409,
    "no_model_configured": 412,
    "no_transcript": 412,
    "summary_missing": 412,
    "decode_error": 422,
    "rate_limited": 429,
    "model_call_failed": 502,
    "auth_error": 502,
    "model_unavailable": 502,
    "malformed_response": 502,
    "network_error": 502,
    "integrity_error": 502,
    "model_not_ready": 503,
    "engine_fatal": 503,
    "capture_failed": 503,
    "disk_error": 507,
    "timeout": 504,
}


def _configure_logging(app_settings: Settings) -> None:
    try:
        log_file = app_settings.logs_dir / "backend.log"
        handler = RotatingFileHandler(str(log_file), maxBytes=5_000_000, backupCount=2, encoding="utf-8")
        handler.setFormatter(logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s %(message)s"))
        root = logging.getLogger()
        if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
            root.addHandler(handler)
        root.setLevel(logging.INFO)
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)


async def _load_template_pack(app_settings: Settings) -> None:
    descriptor = template_descriptor(
        "prompt-templates",
        app_settings.template_pack_version,
        str(app_settings.template_pack_url),
        app_settings.template_pack_sha256,
    )
    try:
        path = await get_model_store(app_settings).ensure_available(
            descriptor, timeout=app_settings.download_timeout_seconds
        )
        get_orchestrator().set_templates(load_template_pack(path))
    except (PipelineError, OSError, ValueError) as exc:
        logger.warning("Prompt template pack unavailable, using built-in templates: %s", exc)


def create_app() -> FastAPI:
    app = FastAPI(title=f"{settings.app_name} Backend", version="0.1.0")

    # CORS for local dev and Tauri
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "tauri://localhost",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup() -> None:
        settings.ensure_dirs()
        _configure_logging(settings)
        init_db()
        if settings.template_pack_url:
            task = asyncio.create_task(_load_template_pack(settings))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
        logger.info("Backend started")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await get_recording_manager().shutdown()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(meetings_router)
    app.include_router(recording_router)
    app.include_router(transcription_router)
    app.include_router(settings_router)

    @app.exception_handler(PipelineError)
    async def _pipeline_error_handler(request: Request, exc: PipelineError):  # type: ignore[override]
        code = HTTP_STATUS_BY_ERROR.get(exc.status, 500)
        if code >= 500:
            logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.status)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def _validation_error_handler(request: Request, exc: ValidationError):  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={"status": "invalid_request", "message": str(exc), "retryable": False},
        )

    @app.exception_handler(ValueError)
    async def _value_error_handler(request: Request, exc: ValueError):  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={"status": "invalid_request", "message": str(exc), "retryable": False},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logging.getLogger("meeting_intel").exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"status": "error", "message": str(exc), "retryable": False})

    return app


app = create_app()


def run() -> None:
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Meeting Intel Backend Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    args = parser.parse_args()

    uvicorn.run(
        "meeting_intel.main:app" if args.reload else app,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    run()
