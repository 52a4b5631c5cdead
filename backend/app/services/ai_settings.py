"""
AI provider settings: runtime config resolution and admin overrides.

Resolution order for get_runtime_config():
1. No stored row, or stored row disabled -> everything from environment
2. Stored row enabled -> stored provider; each field from the row when present,
   otherwise the environment default for that provider
"""
from __future__ import annotations

import ipaddress
import logging
import math
import re
import time
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    AppError,
    ConfigurationError,
    EntityNotFoundError,
    LlmResponseError,
    UpstreamUnavailableError,
    ValidationError,
)
from app.models import AiProviderModel, AiProviderSettings
from app.schemas import AiConnectionTestRequest, AiSettingsUpdate
from app.services.ai_crypto import AiSecretCrypto, mask_secret
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

PROVIDER_OPENAI = "openai"
PROVIDER_OPENROUTER = "openrouter"
PROVIDER_COMPATIBLE = "openai-compatible"
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_OPENROUTER, PROVIDER_COMPATIBLE)
PROVIDER_ALIASES = {"compatible": PROVIDER_COMPATIBLE, "custom": PROVIDER_COMPATIBLE}

DEFAULT_AI_RESPONSE_LANGUAGE = "Русский"
MAX_RESPONSE_LANGUAGE_CHARS = 64
MAX_MODEL_CHARS = 255
DEFAULT_LLM_MAX_TOKENS = 1400
MIN_LLM_MAX_TOKENS = 128
MAX_LLM_MAX_TOKENS = 8000
SETTINGS_SCOPE = "global"
MAX_SAVED_MODELS = 64

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_CHAT_COMPLETIONS_SUFFIX = re.compile(r"/chat/completions/?$", re.IGNORECASE)
_ALLOWED_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}
_FORBIDDEN_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "0.0.0.0/32",
        "::/128",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "fc00::/7",
        "fe80::/10",
    )
)


@dataclass(frozen=True)
class AiRuntimeConfig:
    provider: str
    api_key: str
    model: str
    base_url: str | None
    response_language: str
    max_tokens: int
    ai_test_mode: bool
    source: str = "env"


def parse_bool(value: Any, fallback: bool = False) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


def normalize_provider(value: str | None, *, strict: bool = False) -> str:
    """Map aliases onto a supported provider name.

    Unknown names fall back to openai unless strict=True.
    """
    candidate = (value or "").strip().lower()
    candidate = PROVIDER_ALIASES.get(candidate, candidate)
    if candidate in SUPPORTED_PROVIDERS:
        return candidate
    if strict:
        raise ValidationError("Unsupported provider. Use openai, openrouter, or openai-compatible.")
    return PROVIDER_OPENAI


def normalize_max_tokens(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_LLM_MAX_TOKENS
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LLM_MAX_TOKENS
    if not math.isfinite(number):
        return DEFAULT_LLM_MAX_TOKENS
    return min(max(int(number), MIN_LLM_MAX_TOKENS), MAX_LLM_MAX_TOKENS)


def normalize_response_language(value: str | None) -> str:
    text = (value or "").strip()
    if not text:
        return DEFAULT_AI_RESPONSE_LANGUAGE
    return text[:MAX_RESPONSE_LANGUAGE_CHARS]


def _is_forbidden_host(host: str) -> bool:
    if host in _ALLOWED_LOCAL_HOSTS or host.endswith(".localhost"):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(address in network for network in _FORBIDDEN_NETWORKS)


def normalize_base_url(value: str | None) -> str:
    """Validate a base URL for the openai-compatible provider and return its canonical form."""
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("Base URL is required for openai-compatible provider")
    canonical = _CHAT_COMPLETIONS_SUFFIX.sub("", raw).rstrip("/")

    try:
        parts = urlsplit(canonical)
        host = (parts.hostname or "").lower()
    except ValueError as exc:
        raise ValidationError("Base URL must be a valid HTTP(S) URL") from exc
    if not parts.scheme or not host:
        raise ValidationError("Base URL must be a valid HTTP(S) URL")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError("Base URL must use HTTP or HTTPS")
    if _is_forbidden_host(host):
        raise ValidationError("Base URL host is not allowed for security reasons")
    return canonical


def _normalize_base_url_or_none(value: str | None) -> str | None:
    if not (value or "").strip():
        return None
    try:
        return normalize_base_url(value)
    except ValidationError as exc:
        logger.warning(f"[ai-settings] Ignoring invalid base URL {value!r}: {exc.message}")
        return None


def _optional_text(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def env_runtime_config(settings: Settings, provider: str | None = None) -> AiRuntimeConfig:
    """Runtime config built from environment only."""
    provider = provider or normalize_provider(settings.llm_provider)
    common = dict(
        response_language=normalize_response_language(settings.llm_response_language),
        max_tokens=normalize_max_tokens(settings.llm_max_tokens),
        ai_test_mode=parse_bool(settings.ai_test_mode, False),
        source="env",
    )
    if provider == PROVIDER_OPENROUTER:
        return AiRuntimeConfig(
            provider=provider,
            api_key=_optional_text(settings.openrouter_api_key) or "",
            model=_optional_text(settings.openrouter_model) or "google/gemini-2.0-flash-exp:free",
            base_url=None,
            **common,
        )
    if provider == PROVIDER_COMPATIBLE:
        return AiRuntimeConfig(
            provider=provider,
            api_key=_optional_text(settings.llm_api_key) or "",
            model=(_optional_text(settings.llm_model) or "")[:MAX_MODEL_CHARS],
            base_url=_normalize_base_url_or_none(settings.llm_base_url),
            **common,
        )
    return AiRuntimeConfig(
        provider=PROVIDER_OPENAI,
        api_key=_optional_text(settings.openai_api_key) or "",
        model=_optional_text(settings.openai_model) or "gpt-4o-mini",
        base_url=None,
        **common,
    )


class AiSettingsService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        crypto: AiSecretCrypto | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.crypto = crypto or AiSecretCrypto(self.settings)

    async def _get_stored(self) -> AiProviderSettings | None:
        result = await self.session.execute(
            select(AiProviderSettings).where(AiProviderSettings.scope == SETTINGS_SCOPE)
        )
        return result.scalar_one_or_none()

    async def _find_saved_model(self, provider: str, model: str) -> AiProviderModel | None:
        result = await self.session.execute(
            select(AiProviderModel).where(
                AiProviderModel.scope == SETTINGS_SCOPE,
                AiProviderModel.provider == provider,
                AiProviderModel.model == model,
            )
        )
        return result.scalar_one_or_none()

    def _decrypt_stored_key(self, encrypted: str | None, *, strict: bool = True) -> str:
        """Decrypt a saved key.

        With strict=False an unreadable key is logged and treated as absent,
        so read-only views keep working.
        """
        if not encrypted:
            return ""
        try:
            return self.crypto.decrypt(encrypted)
        except (ValidationError, ConfigurationError) as exc:
            if strict:
                raise
            logger.warning(f"[ai-settings] Saved AI key is unreadable: {exc.message}")
            return ""

    def _key_view(self, encrypted: str | None) -> dict:
        return {
            "hasApiKey": bool(encrypted),
            "apiKeyMasked": mask_secret(self._decrypt_stored_key(encrypted, strict=False)),
        }

    def _assert_provider_config(self, provider: str, model: str, has_api_key: bool) -> None:
        if not model.strip():
            raise ValidationError("Model is required")
        if provider in (PROVIDER_OPENAI, PROVIDER_OPENROUTER) and not has_api_key:
            if not env_runtime_config(self.settings, provider).api_key:
                raise ValidationError(f"{provider.upper()} API key is required to save this provider")

    def resolve_runtime_config(self, stored: AiProviderSettings | None, *, strict: bool = True) -> AiRuntimeConfig:
        if stored is None or not stored.is_enabled:
            return env_runtime_config(self.settings)

        provider = normalize_provider(stored.provider)
        fallback = env_runtime_config(self.settings, provider)
        base_url = None
        if provider == PROVIDER_COMPATIBLE:
            base_url = _normalize_base_url_or_none(stored.base_url) or fallback.base_url

        return AiRuntimeConfig(
            provider=provider,
            api_key=self._decrypt_stored_key(stored.api_key_encrypted, strict=strict) or fallback.api_key,
            model=(_optional_text(stored.model) or fallback.model)[:MAX_MODEL_CHARS],
            base_url=base_url,
            response_language=normalize_response_language(stored.response_language or fallback.response_language),
            max_tokens=normalize_max_tokens(
                stored.max_tokens if stored.max_tokens is not None else fallback.max_tokens
            ),
            ai_test_mode=stored.ai_test_mode if stored.ai_test_mode is not None else fallback.ai_test_mode,
            source="database",
        )

    async def get_runtime_config(self) -> AiRuntimeConfig:
        return self.resolve_runtime_config(await self._get_stored())

    def _model_profile_view(self, row: AiProviderModel) -> dict | None:
        try:
            provider = normalize_provider(row.provider, strict=True)
        except ValidationError:
            return None
        model = _optional_text(row.model)
        if not model:
            return None
        return {
            "id": row.id,
            "provider": provider,
            "model": model[:MAX_MODEL_CHARS],
            "baseUrl": _normalize_base_url_or_none(row.base_url) if provider == PROVIDER_COMPATIBLE else None,
            "responseLanguage": normalize_response_language(row.response_language),
            "maxTokens": normalize_max_tokens(
                row.max_tokens if row.max_tokens is not None else self.settings.llm_max_tokens
            ),
            "isEnabled": row.is_enabled,
            **self._key_view(row.api_key_encrypted),
            "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
            "updatedBy": row.updated_by,
            "active": row.is_active,
        }

    async def list_saved_models(self) -> list[dict]:
        result = await self.session.execute(
            select(AiProviderModel)
            .where(AiProviderModel.scope == SETTINGS_SCOPE)
            .order_by(
                AiProviderModel.is_active.desc(),
                AiProviderModel.updated_at.desc(),
                AiProviderModel.created_at.desc(),
            )
            .limit(MAX_SAVED_MODELS)
        )
        views = (self._model_profile_view(row) for row in result.scalars().all())
        return [view for view in views if view is not None]

    async def get_settings_view(self) -> dict:
        stored = await self._get_stored()
        runtime = self.resolve_runtime_config(stored, strict=False)
        stored_view = None
        if stored is not None:
            stored_view = {
                "provider": normalize_provider(stored.provider),
                "model": stored.model,
                "baseUrl": stored.base_url,
                "responseLanguage": stored.response_language,
                "maxTokens": stored.max_tokens,
                "aiTestMode": stored.ai_test_mode,
                "isEnabled": stored.is_enabled,
                **self._key_view(stored.api_key_encrypted),
                "updatedAt": stored.updated_at.isoformat() if stored.updated_at else None,
                "updatedBy": stored.updated_by,
            }
        models = await self.list_saved_models()
        return {
            "stored": stored_view,
            "effective": {
                "provider": runtime.provider,
                "model": runtime.model,
                "baseUrl": runtime.base_url,
                "responseLanguage": runtime.response_language,
                "maxTokens": runtime.max_tokens,
                "aiTestMode": runtime.ai_test_mode,
                "hasApiKey": bool(runtime.api_key),
                "apiKeyMasked": mask_secret(runtime.api_key),
                "source": runtime.source,
            },
            "models": models,
            "activeModelId": next((item["id"] for item in models if item["active"]), None),
        }

    async def _deactivate_models(self) -> None:
        result = await self.session.execute(
            select(AiProviderModel).where(
                AiProviderModel.scope == SETTINGS_SCOPE, AiProviderModel.is_active.is_(True)
            )
        )
        for row in result.scalars().all():
            row.is_active = False

    async def _set_active_model(self, profile: AiProviderModel) -> None:
        await self._deactivate_models()
        profile.is_active = True

    async def update_settings(self, payload: AiSettingsUpdate, updated_by: str | None = None) -> dict:
        """Save the active settings and upsert the matching saved model profile.

        A missing key or base URL comes from the saved profile for the same
        provider/model, then from the current row. Language and max_tokens fall
        back to the profile only.
        """
        provider = normalize_provider(payload.provider, strict=True)
        model = (_optional_text(payload.model) or "")[:MAX_MODEL_CHARS]
        if not model:
            raise ValidationError("Model is required")

        stored = await self._get_stored()
        profile = await self._find_saved_model(provider, model)

        base_url = None
        if provider == PROVIDER_COMPATIBLE:
            base_url = normalize_base_url(
                _optional_text(payload.base_url)
                or (profile.base_url if profile else None)
                or (stored.base_url if stored else None)
                or self.settings.llm_base_url
            )

        if payload.clear_api_key:
            api_key_encrypted = None
        elif _optional_text(payload.api_key):
            api_key_encrypted = self.crypto.encrypt(payload.api_key.strip())
        else:
            api_key_encrypted = (profile.api_key_encrypted if profile else None) or (
                stored.api_key_encrypted if stored else None
            )
        self._assert_provider_config(provider, model, bool(api_key_encrypted))

        response_language = (
            normalize_response_language(payload.response_language)
            if payload.response_language
            else (profile.response_language if profile else None)
        )
        if payload.max_tokens is not None:
            max_tokens = normalize_max_tokens(payload.max_tokens)
        else:
            max_tokens = profile.max_tokens if profile else None

        if stored is None:
            stored = AiProviderSettings(scope=SETTINGS_SCOPE, provider=provider)
            self.session.add(stored)
        stored.provider = provider
        stored.model = model
        stored.base_url = base_url
        stored.response_language = response_language
        stored.max_tokens = max_tokens
        stored.ai_test_mode = payload.ai_test_mode
        stored.is_enabled = payload.is_enabled
        stored.updated_by = updated_by
        stored.api_key_encrypted = api_key_encrypted

        if profile is None:
            profile = AiProviderModel(scope=SETTINGS_SCOPE, provider=provider, model=model)
            self.session.add(profile)
        profile.base_url = base_url
        profile.response_language = response_language
        profile.max_tokens = max_tokens
        profile.is_enabled = payload.is_enabled
        profile.api_key_encrypted = api_key_encrypted
        profile.updated_by = updated_by
        await self._set_active_model(profile)

        await self.session.commit()
        logger.info(
            f"[ai-settings] Settings updated: provider={provider} model={model} "
            f"enabled={payload.is_enabled} by={updated_by}"
        )
        return await self.get_settings_view()

    async def _sync_settings_from_profile(self, profile: AiProviderModel) -> None:
        provider = normalize_provider(profile.provider, strict=True)
        stored = await self._get_stored()
        base_url = None
        if provider == PROVIDER_COMPATIBLE:
            base_url = normalize_base_url(
                profile.base_url or (stored.base_url if stored else None) or self.settings.llm_base_url
            )
        self._assert_provider_config(provider, profile.model, bool(profile.api_key_encrypted))

        if stored is None:
            stored = AiProviderSettings(scope=SETTINGS_SCOPE, provider=provider)
            self.session.add(stored)
        stored.provider = provider
        stored.model = profile.model
        stored.base_url = base_url
        stored.response_language = profile.response_language
        stored.max_tokens = profile.max_tokens
        stored.is_enabled = profile.is_enabled
        stored.updated_by = profile.updated_by
        stored.api_key_encrypted = profile.api_key_encrypted

    async def activate_saved_model(self, model_id: str) -> dict:
        profile = await self.session.get(AiProviderModel, model_id)
        if profile is None or profile.scope != SETTINGS_SCOPE:
            raise EntityNotFoundError("Saved model not found")
        await self._sync_settings_from_profile(profile)
        await self._set_active_model(profile)
        await self.session.commit()
        logger.info(f"[ai-settings] Saved model activated: {profile.provider}/{profile.model}")
        return await self.get_settings_view()

    async def remove_saved_model(self, provider: str, model: str) -> dict:
        """Delete a saved profile; removing the active one promotes the most recent remaining profile."""
        provider = normalize_provider(provider, strict=True)
        model = (_optional_text(model) or "")[:MAX_MODEL_CHARS]
        if not model:
            raise ValidationError("Model is required")

        target = await self._find_saved_model(provider, model)
        if target is None:
            return await self.get_settings_view()
        was_active = target.is_active
        await self.session.delete(target)
        await self.session.flush()

        if was_active:
            result = await self.session.execute(
                select(AiProviderModel)
                .where(AiProviderModel.scope == SETTINGS_SCOPE)
                .order_by(AiProviderModel.updated_at.desc(), AiProviderModel.created_at.desc())
                .limit(1)
            )
            fallback = result.scalar_one_or_none()
            if fallback is None:
                await self.session.execute(
                    delete(AiProviderSettings).where(AiProviderSettings.scope == SETTINGS_SCOPE)
                )
            else:
                await self._sync_settings_from_profile(fallback)
                await self._set_active_model(fallback)

        await self.session.commit()
        logger.info(f"[ai-settings] Saved model removed: {provider}/{model}")
        return await self.get_settings_view()

    async def reset_to_env_defaults(self) -> dict:
        await self.session.execute(delete(AiProviderSettings).where(AiProviderSettings.scope == SETTINGS_SCOPE))
        await self._deactivate_models()
        await self.session.commit()
        logger.info("[ai-settings] Stored settings removed, environment defaults active")
        return await self.get_settings_view()

    async def build_runtime_config_for_test(self, payload: AiConnectionTestRequest | None) -> AiRuntimeConfig:
        runtime = await self.get_runtime_config()
        if payload is None:
            return runtime
        if payload.provider:
            provider = normalize_provider(payload.provider, strict=True)
            if provider != runtime.provider:
                runtime = replace(env_runtime_config(self.settings, provider), source=runtime.source)
        if _optional_text(payload.model):
            runtime = replace(runtime, model=payload.model.strip()[:MAX_MODEL_CHARS])
        if _optional_text(payload.api_key):
            runtime = replace(runtime, api_key=payload.api_key.strip())
        if runtime.provider == PROVIDER_COMPATIBLE and _optional_text(payload.base_url):
            runtime = replace(runtime, base_url=normalize_base_url(payload.base_url))
        return runtime

    async def test_connection(self, llm_provider, rate_limiter, client_key: str,
                              payload: AiConnectionTestRequest | None = None) -> dict:
        """Send a tiny JSON request through the selected provider.

        Gated by the connection-test rate limiter before any settings are read.
        """
        await rate_limiter.check(client_key)
        runtime = await self.build_runtime_config_for_test(payload)

        started = time.monotonic()
        try:
            result = await llm_provider.generate_json(
                'Return {"ok": true}',
                max_tokens=min(runtime.max_tokens, 120),
                temperature=0,
                config=runtime,
            )
        except AppError:
            raise
        except LlmResponseError as exc:
            logger.warning(f"[ai-settings] Connection test failed for {runtime.provider}: {exc.message}")
            raise UpstreamUnavailableError(f"AI provider connection failed: {exc.message}") from exc

        return {
            "ok": True,
            "provider": runtime.provider,
            "model": result.model,
            "latencyMs": int((time.monotonic() - started) * 1000),
            "requestId": result.request_id,
            "source": runtime.source,
        }
