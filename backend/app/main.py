from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import AppError, LlmResponseError, RateLimitExceeded
from .routes_ai_settings import router as ai_settings_router
from .routes_auth import router as auth_router
from .routes_files import router as files_router
from .routes_ideas import router as ideas_router
from .routes_projects import router as projects_router
from .routes_post_drafts import router as post_drafts_router
from .settings import get_settings

logger = logging.getLogger("app")

settings = get_settings()
app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after_sec)}
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code, headers=headers)


@app.exception_handler(LlmResponseError)
async def llm_response_error_handler(request: Request, exc: LlmResponseError):
    logger.warning("LLM response error on %s %s: %s", request.method, request.url.path, exc.code)
    return JSONResponse({"detail": exc.message, "code": exc.code}, status_code=502)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(projects_router)
app.include_router(ideas_router)
app.include_router(post_drafts_router)
app.include_router(ai_settings_router)
app.include_router(files_router)
