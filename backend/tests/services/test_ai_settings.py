"""
Tests for app.services.ai_settings
"""

from unittest.mock import AsyncMock

import pytest

from app.errors import (
    EntityNotFoundError,
    LlmResponseError,
    RateLimitExceeded,
    UpstreamUnavailableError,
    ValidationError,
)
from app.models import AiProviderSettings
from app.schemas import AiConnectionTestRequest, AiSettingsUpdate
from app.services.ai_settings import (
    DEFAULT_AI_RESPONSE_LANGUAGE,
    DEFAULT_LLM_MAX_TOKENS,
    PROVIDER_COMPATIBLE,
    PROVIDER_OPENAI,
    PROVIDER_OPENROUTER,
    AiSettingsService,
    env_runtime_config,
    normalize_base_url,
    normalize_max_tokens,
    normalize_provider,
    normalize_response_language,
    parse_bool,
)
from app.services.llm_provider import LlmJsonResult


class TestNormalizers:
    """Pure normalization helpers."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, DEFAULT_LLM_MAX_TOKENS),
            (True, DEFAULT_LLM_MAX_TOKENS),
            ("abc", DEFAULT_LLM_MAX_TOKENS),
            (float("inf"), DEFAULT_LLM_MAX_TOKENS),
            (10, 128),
            ("700", 700),
            (99999, 8000),
            (512.9, 512),
        ],
    )
    def test_max_tokens(self, value, expected):
        assert normalize_max_tokens(value) == expected

    def test_provider_aliases(self):
        assert normalize_provider("OpenRouter") == PROVIDER_OPENROUTER
        assert normalize_provider("custom") == PROVIDER_COMPATIBLE
        assert normalize_provider("compatible") == PROVIDER_COMPATIBLE
        assert normalize_provider("bogus") == PROVIDER_OPENAI
        assert normalize_provider(None) == PROVIDER_OPENAI

    def test_provider_strict(self):
        with pytest.raises(ValidationError):
            normalize_provider("bogus", strict=True)

    def test_response_language(self):
        assert normalize_response_language("  ") == DEFAULT_AI_RESPONSE_LANGUAGE
        assert normalize_response_language("English") == "English"
        assert len(normalize_response_language("x" * 100)) == 64

    def test_parse_bool(self):
        assert parse_bool("YES") is True
        assert parse_bool("off") is False
        assert parse_bool("maybe", True) is True
        assert parse_bool(None) is False


class TestNormalizeBaseUrl:
    """Base URL validation for the openai-compatible provider."""

    def test_private_range_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_base_url("http://192.168.1.10/v1")
        assert exc_info.value.message == "Base URL host is not allowed for security reasons"

    @pytest.mark.parametrize(
        "url",
        ["http://10.0.0.5/v1", "http://172.16.3.1", "http://169.254.169.254/latest", "http://127.0.0.2:8080"],
    )
    def test_other_forbidden_networks(self, url):
        with pytest.raises(ValidationError):
            normalize_base_url(url)

    def test_local_hosts_allowed(self):
        assert normalize_base_url("http://localhost:1234/v1") == "http://localhost:1234/v1"
        assert normalize_base_url("http://127.0.0.1:11434/v1/") == "http://127.0.0.1:11434/v1"

    def test_chat_completions_suffix_stripped(self):
        assert normalize_base_url("https://llm.example.com/v1/chat/completions") == "https://llm.example.com/v1"

    def test_scheme_and_presence(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_base_url("ftp://llm.example.com")
        assert exc_info.value.message == "Base URL must use HTTP or HTTPS"
        with pytest.raises(ValidationError) as exc_info:
            normalize_base_url("")
        assert exc_info.value.message == "Base URL is required for openai-compatible provider"
        with pytest.raises(ValidationError):
            normalize_base_url("not a url")


class TestEnvRuntimeConfig:
    def test_defaults(self, settings):
        config = env_runtime_config(settings)
        assert config.provider == PROVIDER_OPENAI
        assert config.model == "gpt-4o-mini"
        assert config.api_key == ""
        assert config.max_tokens == DEFAULT_LLM_MAX_TOKENS
        assert config.ai_test_mode is False
        assert config.source == "env"

    def test_compatible_ignores_invalid_base_url(self, make_settings):
        settings = make_settings(llm_provider="openai-compatible", llm_model="qwen", llm_base_url="http://10.1.1.1/v1")
        config = env_runtime_config(settings)
        assert config.provider == PROVIDER_COMPATIBLE
        assert config.model == "qwen"
        assert config.base_url is None


class TestAiSettingsService:
    """Stored overrides and runtime resolution."""

    async def test_no_row_uses_environment(self, session, make_settings):
        settings = make_settings(openai_api_key="sk-env-0000", llm_max_tokens="900")
        runtime = await AiSettingsService(session, settings).get_runtime_config()
        assert runtime.source == "env"
        assert runtime.api_key == "sk-env-0000"
        assert runtime.max_tokens == 900

    async def test_stored_row_wins_field_by_field(self, session, make_settings):
        settings = make_settings(openrouter_api_key="or-env-key", llm_response_language="English")
        service = AiSettingsService(session, settings)
        await service.update_settings(
            AiSettingsUpdate(provider="openrouter", model="meta/llama", max_tokens=50000), updated_by="admin"
        )

        runtime = await service.get_runtime_config()
        assert runtime.source == "database"
        assert runtime.provider == PROVIDER_OPENROUTER
        assert runtime.model == "meta/llama"
        assert runtime.api_key == "or-env-key"
        assert runtime.max_tokens == 8000
        assert runtime.response_language == "English"

    async def test_api_key_is_encrypted_and_masked(self, session, settings):
        service = AiSettingsService(session, settings)
        view = await service.update_settings(
            AiSettingsUpdate(provider="openai", model="gpt-4o", api_key=" sk-stored-9876 ")
        )
        assert view["stored"]["hasApiKey"] is True
        assert view["stored"]["apiKeyMasked"] == "***9876"
        assert view["effective"]["apiKeyMasked"] == "***9876"

        stored = await service._get_stored()
        assert "sk-stored" not in stored.api_key_encrypted
        assert (await service.get_runtime_config()).api_key == "sk-stored-9876"

    async def test_clear_api_key(self, session, make_settings):
        service = AiSettingsService(session, make_settings(openai_api_key="sk-env-1111"))
        await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-1"))
        view = await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", clear_api_key=True))
        assert view["stored"]["hasApiKey"] is False
        assert view["effective"]["apiKeyMasked"] == "***1111"

    async def test_disabled_row_falls_back_to_environment(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(
            AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="or-key", is_enabled=False)
        )
        runtime = await service.get_runtime_config()
        assert runtime.source == "env"
        assert runtime.provider == PROVIDER_OPENAI

    async def test_compatible_requires_safe_base_url(self, session, settings):
        service = AiSettingsService(session, settings)
        with pytest.raises(ValidationError):
            await service.update_settings(
                AiSettingsUpdate(provider="openai-compatible", model="m", base_url="http://192.168.1.10/v1")
            )
        assert await service._get_stored() is None

    async def test_reset(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="or-key"))
        view = await service.reset_to_env_defaults()
        assert view["stored"] is None
        assert view["effective"]["source"] == "env"
        assert view["activeModelId"] is None
        assert [item["active"] for item in view["models"]] == [False]

    async def test_unreadable_stored_key_keeps_view(self, session, settings):
        session.add(AiProviderSettings(scope="global", provider="openai", model="gpt-4o", api_key_encrypted="a:b:c"))
        await session.commit()
        service = AiSettingsService(session, settings)

        view = await service.get_settings_view()
        assert view["stored"]["hasApiKey"] is True
        assert view["stored"]["apiKeyMasked"] is None
        assert view["effective"]["source"] == "database"
        assert view["effective"]["hasApiKey"] is False

        with pytest.raises(ValidationError):
            await service.get_runtime_config()


class TestProviderConfigValidation:
    """Saving requires a model and, for hosted providers, a key."""

    @pytest.mark.parametrize("model", [None, "", "   "])
    async def test_model_is_required(self, session, settings, model):
        service = AiSettingsService(session, settings)
        with pytest.raises(ValidationError) as exc_info:
            await service.update_settings(AiSettingsUpdate(provider="openai", model=model, api_key="sk-1"))
        assert exc_info.value.message == "Model is required"
        assert await service._get_stored() is None

    @pytest.mark.parametrize(
        "provider, message",
        [
            ("openai", "OPENAI API key is required to save this provider"),
            ("openrouter", "OPENROUTER API key is required to save this provider"),
        ],
    )
    async def test_hosted_provider_requires_key(self, session, settings, provider, message):
        service = AiSettingsService(session, settings)
        with pytest.raises(ValidationError) as exc_info:
            await service.update_settings(AiSettingsUpdate(provider=provider, model="some-model"))
        assert exc_info.value.message == message
        assert await service._get_stored() is None

    async def test_clearing_last_key_is_rejected(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-1"))
        with pytest.raises(ValidationError):
            await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", clear_api_key=True))

    async def test_compatible_provider_may_be_keyless(self, session, settings):
        view = await AiSettingsService(session, settings).update_settings(
            AiSettingsUpdate(provider="compatible", model="llama3", base_url="http://localhost:11434/v1")
        )
        assert view["stored"]["provider"] == PROVIDER_COMPATIBLE
        assert view["stored"]["hasApiKey"] is False
        assert view["effective"]["baseUrl"] == "http://localhost:11434/v1"


class TestSavedModels:
    """Saved provider/model profiles and the active selection."""

    async def test_save_creates_active_profile(self, session, settings):
        view = await AiSettingsService(session, settings).update_settings(
            AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-aaaa1111", max_tokens=900),
            updated_by="admin",
        )
        [profile] = view["models"]
        assert view["activeModelId"] == profile["id"]
        assert profile["provider"] == PROVIDER_OPENAI
        assert profile["model"] == "gpt-4o"
        assert profile["maxTokens"] == 900
        assert profile["apiKeyMasked"] == "***1111"
        assert profile["updatedBy"] == "admin"
        assert profile["active"] is True

    async def test_resaving_model_reuses_its_profile(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(
            AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-openai", response_language="English")
        )
        await service.update_settings(AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="sk-router"))
        view = await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o"))

        assert len(view["models"]) == 2
        assert view["models"][0]["model"] == "gpt-4o"
        assert view["models"][0]["active"] is True
        runtime = await service.get_runtime_config()
        assert runtime.api_key == "sk-openai"
        assert runtime.response_language == "English"

    async def test_activate_saved_model(self, session, settings):
        service = AiSettingsService(session, settings)
        first = await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-openai"))
        await service.update_settings(AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="sk-router"))

        view = await service.activate_saved_model(first["activeModelId"])
        assert view["activeModelId"] == first["activeModelId"]
        assert [item["active"] for item in view["models"]] == [True, False]
        runtime = await service.get_runtime_config()
        assert (runtime.provider, runtime.model, runtime.api_key) == (PROVIDER_OPENAI, "gpt-4o", "sk-openai")

    async def test_activate_unknown_model(self, session, settings):
        with pytest.raises(EntityNotFoundError):
            await AiSettingsService(session, settings).activate_saved_model("missing")

    async def test_removing_active_model_promotes_latest(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-openai"))
        await service.update_settings(AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="sk-router"))

        view = await service.remove_saved_model("openrouter", "meta/llama")
        [profile] = view["models"]
        assert profile["model"] == "gpt-4o"
        assert view["activeModelId"] == profile["id"]
        assert view["stored"]["provider"] == PROVIDER_OPENAI
        assert (await service.get_runtime_config()).api_key == "sk-openai"

    async def test_removing_last_model_drops_stored_settings(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-openai"))

        view = await service.remove_saved_model("openai", " gpt-4o ")
        assert view["models"] == []
        assert view["stored"] is None
        assert view["effective"]["source"] == "env"

    async def test_removing_inactive_or_unknown_model_keeps_active(self, session, settings):
        service = AiSettingsService(session, settings)
        await service.update_settings(AiSettingsUpdate(provider="openai", model="gpt-4o", api_key="sk-openai"))
        active = await service.update_settings(
            AiSettingsUpdate(provider="openrouter", model="meta/llama", api_key="sk-router")
        )

        await service.remove_saved_model("openai", "gpt-4o")
        view = await service.remove_saved_model("openai", "never-saved")
        assert view["activeModelId"] == active["activeModelId"]
        assert view["stored"]["model"] == "meta/llama"

    async def test_remove_rejects_unknown_provider(self, session, settings):
        with pytest.raises(ValidationError):
            await AiSettingsService(session, settings).remove_saved_model("anthropic", "claude")


class TestConnectionTest:
    """Provider connection test behind the rate limiter."""

    @pytest.fixture
    def limiter(self):
        limiter = AsyncMock()
        limiter.check.return_value = None
        return limiter

    async def test_success(self, session, settings, limiter):
        provider = AsyncMock()
        provider.generate_json.return_value = LlmJsonResult("openai", "gpt-4o-mini", 5, "req-9", {"ok": True})

        result = await AiSettingsService(session, settings).test_connection(
            provider, limiter, "1.2.3.4", AiConnectionTestRequest(api_key="sk-override")
        )

        limiter.check.assert_awaited_once_with("1.2.3.4")
        config = provider.generate_json.await_args.kwargs["config"]
        assert config.api_key == "sk-override"
        assert provider.generate_json.await_args.kwargs["max_tokens"] == 120
        assert result["ok"] is True
        assert result["requestId"] == "req-9"

    async def test_rate_limited_before_provider_call(self, session, settings, limiter):
        limiter.check.side_effect = RateLimitExceeded("Too many AI connection test requests. Try again in 5 seconds.", 5)
        provider = AsyncMock()
        with pytest.raises(RateLimitExceeded):
            await AiSettingsService(session, settings).test_connection(provider, limiter, "1.2.3.4")
        provider.generate_json.assert_not_awaited()

    async def test_provider_failure_maps_to_unavailable(self, session, settings, limiter):
        provider = AsyncMock()
        provider.generate_json.side_effect = LlmResponseError("boom", "provider_request_failed")
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await AiSettingsService(session, settings).test_connection(provider, limiter, "1.2.3.4")
        assert exc_info.value.message == "AI provider connection failed: boom"
