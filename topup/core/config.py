from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ================================
# ВСПОМОГАТЕЛЬНЫЕ ХЕЛПЕРЫ
# ================================
def _mask_secret(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    s = str(val)
    if not s:
        return s
    if len(s) <= 6:
        return "***"
    return s[:3] + "***" + s[-3:]


def _is_secret_key_name(key: str) -> bool:
    lk = key.lower()
    if any(s in lk for s in ("secret", "password", "token", "dsn")):
        return True
    if "key" in lk and "public" not in lk:
        return True
    return False


def _parse_list_like(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("[") and v.endswith("]"):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return [str(i).strip() for i in parsed if str(i).strip()]
            except ValueError:
                pass
        return [i.strip() for i in v.split(",") if i.strip()]
    return v


# ================================
# НАСТРОЙКИ ПРИЛОЖЕНИЯ (Pydantic v2)
# ================================
class Settings(BaseSettings):
    """
    Settings for the top-up billing service.
    - SQLite (aiosqlite) by default, any async SQLAlchemy URL in production.
    - Payment gateway credentials are masked in dumps.
    - Webhook signature verification is opt-in.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    # ---- базовые
    PROJECT_NAME: str = Field(default="topup", description="Project name")
    VERSION: str = Field(default="0.1.0", description="Application version")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment")

    # ---- БД
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./topup.db",
        description="Async SQLAlchemy database URL",
    )
    DATABASE_ECHO: bool = Field(default=False, description="Echo SQL statements")

    # ---- логи
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format (json|text)")

    # ---- биллинг
    BILLING_CURRENCY: str = Field(default="IDR", description="Settlement currency (ISO 4217)")
    BILLING_MIN_AMOUNT: int = Field(default=10_000, description="Minimum top-up amount, minor units")
    # str: comma-separated env values are split by _banks()
    BILLING_BANKS: Union[List[str], str] = Field(
        default=["bca", "bni", "bri", "mandiri", "permata"],
        description="Bank codes accepted for virtual accounts",
    )

    # ---- платёжный шлюз
    PAYMENT_GATEWAY_MODE: str = Field(default="http", description="Gateway client: http|mock")
    PAYMENT_GATEWAY_URL: str = Field(default="https://api.xendit.co", description="Gateway base URL")
    PAYMENT_GATEWAY_SECRET_KEY: Optional[str] = Field(default=None, description="Gateway secret API key")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = Field(default=30.0, description="Gateway request timeout")
    QR_EXPIRY_MINUTES: int = Field(default=15, description="Dynamic QR lifetime")
    VA_EXPIRY_HOURS: int = Field(default=24, description="Virtual account lifetime")

    # ---- вебхук
    PAYMENT_WEBHOOK_VERIFY_SIGNATURE: bool = Field(
        default=False, description="Require HMAC signature on gateway callbacks"
    )
    PAYMENT_WEBHOOK_SECRET: Optional[str] = Field(default=None, description="Callback HMAC secret")

    @field_validator("BILLING_BANKS", mode="before")
    @classmethod
    def _banks(cls, v):
        v = _parse_list_like(v)
        if isinstance(v, list):
            return [str(i).strip().lower() for i in v if str(i).strip()]
        return v

    @field_validator("BILLING_CURRENCY")
    @classmethod
    def _currency(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if len(v) != 3:
            raise ValueError("BILLING_CURRENCY must be a 3-letter ISO code")
        return v

    @field_validator("PAYMENT_GATEWAY_MODE")
    @classmethod
    def _gateway_mode(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("http", "mock"):
            raise ValueError("PAYMENT_GATEWAY_MODE must be 'http' or 'mock'")
        return v

    @field_validator("PAYMENT_GATEWAY_URL")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    # ---- вычисляемые
    @model_validator(mode="after")
    def _webhook_secret_required(self) -> "Settings":
        if self.PAYMENT_WEBHOOK_VERIFY_SIGNATURE and not (self.PAYMENT_WEBHOOK_SECRET or "").strip():
            raise ValueError("PAYMENT_WEBHOOK_SECRET is required when PAYMENT_WEBHOOK_VERIFY_SIGNATURE is on")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def build_info(self) -> dict:
        return {"project": self.PROJECT_NAME, "version": self.VERSION, "environment": self.ENVIRONMENT}

    def dump_settings_safe(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k, v in self.model_dump().items():
            out[k] = _mask_secret(v) if _is_secret_key_name(k) and v is not None else v
        return out


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
