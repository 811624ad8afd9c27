"""Runtime configuration for the table-repair pipeline.

Values come from the process environment (optionally seeded from ``ROOT/.env``)
and are validated by the ``Settings`` pydantic model.  An invalid value raises
``pydantic.ValidationError`` at load time rather than surfacing mid-batch.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent.parent.resolve()
load_dotenv(ROOT / ".env")


# ─── Provider Defaults ───────────────────────────────────────────────────────

PRIMARY_MODEL_DEFAULT = "gemini-3-flash-preview"
POOL_MODEL_DEFAULT = "google/gemini-3-flash-preview"
OPENROUTER_BASE_URL_DEFAULT = "https://openrouter.ai/api/v1"


class Settings(BaseModel):
    """Validated settings shared by intake, workers and the repair protocol."""

    environment: str = Field(default="development", pattern="^(development|production|test)$")
    log_level: str = "INFO"

    # Providers
    gemini_api_key: str | None = None
    openrouter_keys: list[str] = Field(default_factory=list)
    primary_model: str = PRIMARY_MODEL_DEFAULT
    pool_model: str = POOL_MODEL_DEFAULT
    openrouter_base_url: str = OPENROUTER_BASE_URL_DEFAULT
    pool_max_tokens: int = Field(default=32000, gt=0)

    # Workers and retry policy
    worker_concurrency: int = Field(default=8, ge=1)
    max_retry_attempts: int = Field(default=3, ge=1)
    queue_max_deliveries: int = Field(default=3, ge=1)
    rate_limit_per_minute: int = Field(default=60, ge=1)
    retry_base_delay_ms: int = Field(default=5000, ge=0)
    max_verification_attempts: int = Field(default=3, ge=1)
    max_key_rotations: int = Field(default=3, ge=1)
    key_rotation_delay_s: float = Field(default=0.5, ge=0)

    # File storage
    upload_dir: Path = Path("./uploads")
    output_dir: Path = Path("./outputs")
    max_file_size_mb: int = Field(default=500, gt=0)

    # Pricing (USD per million tokens) and FX rate to BRL
    price_input_usd: float = Field(default=0.10, ge=0)
    price_output_usd: float = Field(default=0.40, ge=0)
    primary_price_input_usd: float = Field(default=0.0, ge=0)
    primary_price_output_usd: float = Field(default=0.0, ge=0)
    usd_to_brl: float = Field(default=6.00, gt=0)

    @field_validator("openrouter_keys", mode="before")
    @classmethod
    def _split_keys(cls, value):
        """Accept a comma-separated string as well as a list; drop blank entries."""
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [k.strip() for k in value if k and k.strip()]

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_dev(self) -> bool:
        return self.environment == "development"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (unset variables keep their defaults)."""
        env_map = {
            "environment": "NODE_ENV",
            "log_level": "LOG_LEVEL",
            "gemini_api_key": "GEMINI_API_KEY",
            "openrouter_keys": "OPENROUTER_KEYS",
            "primary_model": "PRIMARY_MODEL",
            "pool_model": "POOL_MODEL",
            "openrouter_base_url": "OPENROUTER_BASE_URL",
            "pool_max_tokens": "POOL_MAX_TOKENS",
            "worker_concurrency": "WORKER_CONCURRENCY",
            "max_retry_attempts": "MAX_RETRY_ATTEMPTS",
            "queue_max_deliveries": "QUEUE_MAX_DELIVERIES",
            "rate_limit_per_minute": "RATE_LIMIT_PER_MINUTE",
            "retry_base_delay_ms": "RETRY_BASE_DELAY_MS",
            "max_verification_attempts": "MAX_VERIFICATION_ATTEMPTS",
            "max_key_rotations": "MAX_KEY_ROTATIONS",
            "key_rotation_delay_s": "KEY_ROTATION_DELAY_S",
            "upload_dir": "UPLOAD_DIR",
            "output_dir": "OUTPUT_DIR",
            "max_file_size_mb": "MAX_FILE_SIZE_MB",
            "price_input_usd": "PRICE_INPUT_USD",
            "price_output_usd": "PRICE_OUTPUT_USD",
            "primary_price_input_usd": "PRIMARY_PRICE_INPUT_USD",
            "primary_price_output_usd": "PRIMARY_PRICE_OUTPUT_USD",
            "usd_to_brl": "USD_TO_BRL",
        }
        values: dict = {}
        for field_name, env_name in env_map.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()

        # A single legacy key is folded into the rotating pool
        single_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if single_key:
            keys = cls._split_keys(values.get("openrouter_keys"))
            if single_key not in keys:
                keys.append(single_key)
            values["openrouter_keys"] = keys

        settings = cls(**values)
        if not settings.openrouter_keys:
            logger.warning("No pool keys configured (OPENROUTER_KEYS); pool repairs will fail")
        return settings
