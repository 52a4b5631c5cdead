"""
Admin API for the stored AI provider settings and connection testing.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .dependencies import client_key, get_llm_provider, get_rate_limit_store
from .routes_auth import require_auth
from .schemas import AiConnectionTestRequest, AiSettingsUpdate
from .services.ai_settings import AiSettingsService
from .services.llm_provider import LLMProvider
from .services.rate_limiter import RateLimitStore, ai_settings_test_limiter

router = APIRouter(prefix="/api/ai-settings", tags=["ai-settings"], dependencies=[Depends(require_auth)])


@router.get("")
async def get_ai_settings(session: AsyncSession = Depends(get_session)):
    return await AiSettingsService(session).get_settings_view()


@router.put("")
async def update_ai_settings(body: AiSettingsUpdate, session: AsyncSession = Depends(get_session)):
    return await AiSettingsService(session).update_settings(body, updated_by="admin")


@router.delete("")
async def reset_ai_settings(session: AsyncSession = Depends(get_session)):
    return await AiSettingsService(session).reset_to_env_defaults()


@router.post("/test")
async def test_ai_connection(
    request: Request,
    body: Optional[AiConnectionTestRequest] = None,
    session: AsyncSession = Depends(get_session),
    llm_provider: LLMProvider = Depends(get_llm_provider),
    store: RateLimitStore = Depends(get_rate_limit_store),
):
    return await AiSettingsService(session).test_connection(
        llm_provider,
        ai_settings_test_limiter(store),
        client_key(request),
        body,
    )


@router.post("/models/{model_id}/activate")
async def activate_saved_model(model_id: str, session: AsyncSession = Depends(get_session)):
    return await AiSettingsService(session).activate_saved_model(model_id)


@router.delete("/models")
async def remove_saved_model(
    provider: str = Query(..., min_length=1, max_length=32),
    model: str = Query(..., min_length=1, max_length=255),
    session: AsyncSession = Depends(get_session),
):
    return await AiSettingsService(session).remove_saved_model(provider, model)
