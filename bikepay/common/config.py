"""Environment-driven settings for the payment service.

Loaded once at process start and handed to `create_app`; nothing in the
payment path reads a module-level settings object.
"""

import base64
import binascii
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bikepay.common.errors import ConfigurationError


REDSYS_TEST_URL = "https://sis-t.redsys.es:25443/sis/realizarPago"
REDSYS_LIVE_URL = "https://sis.redsys.es/sis/realizarPago"


class Settings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "bikepay-payments"
    log_level: str = "INFO"
    app_env: Literal["test", "live"] = "test"
    postgres_dsn: str = "sqlite:///./bikepay.db"
    site_base_url: str | None = None

    redsys_secret_key: str | None = None
    redsys_merchant_code: str | None = None
    redsys_terminal: str | None = None
    redsys_url: str | None = None
    redsys_notification_path: str = "/api/notification"
    redsys_success_path: str = "/reserva-exitosa"
    redsys_failure_path: str = "/reserva-fallida"
    redsys_product_description: str = "Alquiler de bicicletas"
    redsys_outbound_signature_encoding: Literal["standard", "urlsafe"] = "standard"
    redsys_inbound_signature_encoding: Literal["standard", "urlsafe"] = "urlsafe"
    redsys_key_derivation: Literal["order", "merchant_terminal"] = "order"

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    # Comma-separated card fingerprints of the processor's public test cards.
    stripe_test_card_fingerprints: str = ""

    resend_api_key: str | None = None
    email_from: str = "Altea Bike Shop <reservas@alteabikeshop.com>"
    email_max_attempts: int = 5
    email_dispatch_interval_seconds: float = 2.0

    otel_exporter_otlp_endpoint: str | None = None
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("redsys_terminal")
    @classmethod
    def _pad_terminal(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value.zfill(3) if value else None

    @field_validator("site_base_url")
    @classmethod
    def _strip_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/") or None

    @property
    def is_live(self) -> bool:
        return self.app_env == "live"

    @property
    def redsys_endpoint(self) -> str:
        if self.redsys_url:
            return self.redsys_url
        return REDSYS_LIVE_URL if self.is_live else REDSYS_TEST_URL

    @property
    def test_card_fingerprints(self) -> frozenset[str]:
        return frozenset(fp.strip() for fp in self.stripe_test_card_fingerprints.split(",") if fp.strip())

    def validate_for_startup(self) -> None:
        """Fail fast when the payment endpoints cannot run safely.

        Only setting names are reported, never their values.
        """

        problems: list[str] = []
        required = ["site_base_url", "redsys_secret_key", "redsys_merchant_code", "redsys_terminal"]
        if self.is_live:
            required += ["stripe_secret_key", "stripe_webhook_secret", "resend_api_key"]
        for name in required:
            if not getattr(self, name):
                problems.append(f"{name.upper()} is not set")

        if self.redsys_secret_key and not _is_3des_secret(self.redsys_secret_key):
            problems.append("REDSYS_SECRET_KEY must be base64 of exactly 24 bytes")

        if self.redsys_notification_path in (self.redsys_success_path, self.redsys_failure_path):
            problems.append("REDSYS_NOTIFICATION_PATH must differ from the success/failure pages")

        if self.is_live and self.redsys_url and "sis-t." in self.redsys_url:
            problems.append("REDSYS_URL points at the test gateway in a live deployment")

        if problems:
            raise ConfigurationError("; ".join(problems))


def _is_3des_secret(secret_b64: str) -> bool:
    try:
        raw = base64.b64decode(secret_b64.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) == 24


def load_settings() -> Settings:
    """Read settings from the environment and validate them."""

    settings = Settings()
    settings.validate_for_startup()
    return settings
