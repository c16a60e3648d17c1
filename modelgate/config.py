from datetime import datetime, timezone

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from modelgate.budget.models import FallbackMode, ModelTier


class ModelConfig(BaseModel):
    name: str
    tier: ModelTier = "standard"


class ProviderConfig(BaseModel):
    name: str
    base_url: str
    api_key_setting: str  # name of the Settings field holding the key
    models: list[ModelConfig]
    extra_headers: dict[str, str] = Field(default_factory=dict)


# Catalog order is the performance-profile priority order.
DEFAULT_MODEL_CATALOG = [
    ProviderConfig(
        name="modal",
        base_url="https://api.us-west-2.modal.direct/v1",
        api_key_setting="modal_api_key",
        models=[ModelConfig(name="zai-org/GLM-5-FP8", tier="premium")],
    ),
    ProviderConfig(
        name="openrouter",
        base_url="https://openrouter.ai/api/v1",
        api_key_setting="openrouter_api_key",
        models=[ModelConfig(name="stepfun/step-3.5-flash:free", tier="standard")],
        extra_headers={"X-Title": "modelgate"},
    ),
    ProviderConfig(
        name="google",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        api_key_setting="gemini_api_key",
        models=[ModelConfig(name="gemini-flash-lite-latest", tier="economy")],
    ),
]


class Settings(BaseSettings):
    # API Keys
    modal_api_key: str | None = None
    openrouter_api_key: str | None = None
    gemini_api_key: str | None = None

    # Data
    data_dir: str = "/data"
    database_url: str | None = None  # defaults to sqlite under data_dir

    # Budget limits (per UTC day unless noted)
    daily_request_limit: int = Field(2_400, gt=0)
    daily_token_limit: int = Field(5_000_000, gt=0)
    session_request_limit: int = Field(300, gt=0)  # lifetime of a session
    session_token_limit: int = Field(700_000, gt=0)
    per_provider_request_limit: int = Field(1_000, gt=0)
    per_provider_token_limit: int = Field(2_200_000, gt=0)
    warning_threshold_pct: float = Field(80.0, gt=0, lt=100)

    # Pacing
    warning_pacing_ms: int = Field(250, ge=0)
    hard_limit_pacing_ms: int = Field(1_250, ge=0)
    max_pacing_ms: int = Field(5_000, ge=0)  # total pacing per turn

    # Provider cooldown backoff: base * 2^failures, capped
    cooldown_base_ms: int = Field(1_000, gt=0)
    cooldown_max_ms: int = Field(60_000, gt=0)

    # Router
    fallback_mode: FallbackMode = "aggressive_fallback"
    attempt_timeout_seconds: float = Field(60.0, gt=0)
    router_event_buffer: int = Field(120, ge=10)
    model_catalog: list[ProviderConfig] = Field(
        default_factory=lambda: list(DEFAULT_MODEL_CATALOG), min_length=1
    )

    # API
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.cooldown_max_ms < self.cooldown_base_ms:
            raise ValueError("COOLDOWN_MAX_MS must be >= COOLDOWN_BASE_MS")
        names = [p.name for p in self.model_catalog]
        if len(names) != len(set(names)):
            raise ValueError("MODEL_CATALOG has duplicate provider names")
        for provider in self.model_catalog:
            if provider.api_key_setting not in type(self).model_fields:
                raise ValueError(
                    f"Provider '{provider.name}' references unknown key setting "
                    f"'{provider.api_key_setting}'"
                )
        return self

    def api_key_for(self, provider: ProviderConfig) -> str | None:
        return getattr(self, provider.api_key_setting, None)

    def limits(self) -> dict:
        return {
            "daily_request_limit": self.daily_request_limit,
            "daily_token_limit": self.daily_token_limit,
            "session_request_limit": self.session_request_limit,
            "session_token_limit": self.session_token_limit,
            "per_provider_request_limit": self.per_provider_request_limit,
            "per_provider_token_limit": self.per_provider_token_limit,
            "warning_threshold_pct": self.warning_threshold_pct,
            "warning_pacing_ms": self.warning_pacing_ms,
            "hard_limit_pacing_ms": self.hard_limit_pacing_ms,
            "max_pacing_ms": self.max_pacing_ms,
            "cooldown_base_ms": self.cooldown_base_ms,
            "cooldown_max_ms": self.cooldown_max_ms,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


settings = Settings()
