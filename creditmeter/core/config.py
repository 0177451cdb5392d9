from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]

# Play Store product id -> credits granted per purchase
DEFAULT_CREDIT_PACKS = {
    "token_pack_tier1": 2,
    "token_pack_tier2": 10,
    "token_pack_tier3": 40,
    "token_pack_tier4": 200,
}

# Estimated output tokens by action type
DEFAULT_OUTPUT_ESTIMATES = {
    "plan": 1_000,
    "generate": 3_000,
    "evaluate": 500,
    "refine": 3_000,
}


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars", alias="SECRET_KEY")

    # Purchase token encryption (Fernet key, base64)
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # Persistence: "mongo" for deployments, "memory" for local runs and tests
    store_backend: str = Field(default="mongo", alias="STORE_BACKEND")
    mongodb_uri: str = Field(default="mongodb://localhost:27017/?replicaSet=rs0", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditmeter", alias="MONGODB_DB_NAME")
    transaction_max_attempts: int = Field(default=5, alias="TRANSACTION_MAX_ATTEMPTS")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Firebase identity
    firebase_project_id: str = Field(default="", alias="FIREBASE_PROJECT_ID")
    app_check_required: bool = Field(default=False, alias="APP_CHECK_REQUIRED")

    # Gemini
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")

    # Google Play
    android_package_name: str = Field(default="com.ronitervo.ideatesvg", alias="ANDROID_PACKAGE_NAME")
    purchase_processing_timeout_seconds: int = 5 * 60

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (USD per token, gemini-2.5-flash list prices)
    input_rate_usd_per_token: float = 0.30 / 1_000_000
    output_rate_usd_per_token: float = 2.50 / 1_000_000
    credit_retail_price_usd: float = 0.50
    platform_fee_rate: float = 0.15
    tax_rate: float = 0.0
    safety_margin_rate: float = 0.20
    baseline_credits: float = 0.05
    decay_credits: float = 0.25
    min_billed_credits: float = 0.01
    credit_precision_decimals: int = 3

    credit_packs: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CREDIT_PACKS))
    output_estimates: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_OUTPUT_ESTIMATES))
    default_output_estimate: int = 2_000

    # Generation limits
    max_input_tokens: int = Field(default=200_000, alias="MAX_INPUT_TOKENS")
    stream_keepalive_seconds: float = Field(default=15.0, alias="STREAM_KEEPALIVE_SECONDS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
