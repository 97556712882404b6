"""
FastAPI app for Ask Mandi.
Run with: uvicorn askmandi.main:app --reload --port 8000
"""
import os
import uuid
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from askmandi import __version__
from askmandi.db_utils import dispose_engines
from askmandi.routes.chat import router as chat_router
from askmandi.services.errors import MandiError
from askmandi.services.runtime import set_request_id, get_request_id, clear_context, log_event, shutdown_shared_executor
from askmandi.services.settings import ServiceConfig

app = FastAPI(title="Ask Mandi API", version=__version__)
logger = logging.getLogger("askmandi")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("shutdown")
def shutdown_workers():
    shutdown_shared_executor(wait=False)
    dispose_engines()


@app.exception_handler(MandiError)
async def mandi_error_handler(request: Request, exc: MandiError):
    log_event(
        logger,
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        "chat_error_response",
        status=exc.status_code,
        error_type=type(exc).__name__,
        path=request.url.path,
        error=str(exc)[:300],
    )
    details = str(exc) if exc.expose_details else f"Upstream service error (request id {get_request_id()})"
    return JSONResponse({"error": exc.public_message, "details": details}, status_code=exc.status_code)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=ServiceConfig.from_env().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
