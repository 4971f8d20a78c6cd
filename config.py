import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Environment-provided configuration for the relay."""

    database_url: str = "sqlite:///./futapay.db"
    database_echo: bool = False
    public_base_url: str = "http://localhost:10000"

    mollie_api_key: str = ""
    mollie_base_url: str = "https://api.mollie.com"

    pawapay_token: str = ""
    pawapay_base_url: str = "https://api.sandbox.pawapay.io"
    pawapay_return_url: Optional[str] = None

    processor_timeout: float = 15.0
    correlation_grace_seconds: float = 2.0
    correlation_poll_seconds: float = 0.25

    networks_file: str = "networks.json"
    log_level: str = "INFO"
    log_format: str = "standard"

    @property
    def payment_webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhooks/payment"

    @property
    def payment_return_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/mollie/return"

    @property
    def payout_return_url(self) -> str:
        return self.pawapay_return_url or f"{self.public_base_url.rstrip('/')}/pawapay/return"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables (and .env)."""
        return cls(
            database_url=os.getenv("DATABASE_URL") or "sqlite:///./futapay.db",
            database_echo=_flag("DATABASE_ECHO"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:10000"),
            mollie_api_key=os.getenv("MOLLIE_API_KEY", "").strip(),
            mollie_base_url=os.getenv("MOLLIE_BASE_URL", "https://api.mollie.com"),
            pawapay_token=os.getenv("PAWAPAY_TOKEN", "").strip(),
            pawapay_base_url=os.getenv("PAWAPAY_BASE_URL", "https://api.sandbox.pawapay.io"),
            pawapay_return_url=os.getenv("PAWAPAY_RETURN_URL") or None,
            processor_timeout=float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "15")),
            correlation_grace_seconds=float(os.getenv("CORRELATION_GRACE_SECONDS", "2")),
            correlation_poll_seconds=float(os.getenv("CORRELATION_POLL_SECONDS", "0.25")),
            networks_file=os.getenv("NETWORKS_FILE", "networks.json"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
        )


@lru_cache
def get_settings() -> Settings:
    """
    Settings are read once per process; tests override the FastAPI dependency.
    """
    return Settings.from_env()
