# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal


DEV_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: str = "dev"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = ""
    PAYMENT_STORE: Literal["memory", "postgres"] = "memory"

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default=DEV_JWT_SECRET, min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # M-Pesa Daraja (Mode Switch)
    # -----------------------
    MPESA_MODE: Literal["sandbox", "real"] = "sandbox"
    # sandbox only: answer pushes locally without calling Daraja
    MPESA_SIMULATE: bool = True

    MPESA_SANDBOX_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_REAL_BASE_URL: str = "https://api.safaricom.co.ke"

    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""

    MPESA_HTTP_TIMEOUT_S: float = 20.0

    # callback origin checks (both optional in dev)
    MPESA_WEBHOOK_SECRET: str = ""
    MPESA_CALLBACK_ALLOWED_IPS: str = ""

    # -----------------------
    # Payment lifecycle
    # -----------------------
    PAYMENT_POLL_INTERVAL_S: float = 3.0
    PAYMENT_DEADLINE_S: int = 120
    PAYMENT_STALE_SWEEP_S: int = 300

    # downstream invoice-status collaborator
    INVOICE_NOTIFY_URL: str = ""
    INVOICE_NOTIFY_TIMEOUT_S: float = 5.0


settings = Settings()


def _is_strict_env(env: str) -> bool:
    return (env or "").strip().lower() in ("staging", "prod", "production")


def validate_env_settings() -> None:
    """
    Fail fast on deployments that are missing required configuration.
    dev/test are permissive so the sandbox simulator works out of the box.
    """
    env = (settings.ENV or "dev").strip().lower()
    if not _is_strict_env(env):
        return

    missing: list[str] = []

    if settings.PAYMENT_STORE == "postgres" and not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if env in ("prod", "production") and settings.PAYMENT_STORE != "postgres":
        missing.append("PAYMENT_STORE=postgres")

    if settings.JWT_SECRET == DEV_JWT_SECRET:
        missing.append("JWT_SECRET")

    if settings.MPESA_MODE == "real" or env in ("prod", "production"):
        for key in (
            "MPESA_CONSUMER_KEY",
            "MPESA_CONSUMER_SECRET",
            "MPESA_SHORTCODE",
            "MPESA_PASSKEY",
            "MPESA_CALLBACK_URL",
        ):
            if not (getattr(settings, key, "") or "").strip():
                missing.append(key)

    if env in ("prod", "production") and not (settings.MPESA_WEBHOOK_SECRET or "").strip():
        missing.append("MPESA_WEBHOOK_SECRET")

    if missing:
        raise RuntimeError(
            f"Environment validation failed for ENV={env}. "
            "Missing or insecure settings: " + ", ".join(sorted(set(missing)))
        )
