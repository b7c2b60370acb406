import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

BASE_URLS = {
    "dev": "https://fib.dev.fib.iq",
    "stage": "https://fib.stage.fib.iq",
    "prod": "https://fib.fib.iq",
}
DEFAULT_ENVIRONMENT = "stage"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FibSettings:
    """Connection settings for the FIB online-shop API."""

    environment: str = DEFAULT_ENVIRONMENT
    client_id: str = ""
    client_secret: str = ""
    callback_url: str = ""
    currency: str = "IQD"
    verify_ssl: bool = True
    timeout: float = 30.0

    @property
    def base_url(self) -> str:
        return BASE_URLS.get(self.environment, BASE_URLS[DEFAULT_ENVIRONMENT])

    @classmethod
    def from_env(cls) -> "FibSettings":
        insecure = os.getenv("FIB_INSECURE_SKIP_VERIFY", "false").strip().lower()
        return cls(
            environment=os.getenv("FIB_ENVIRONMENT", DEFAULT_ENVIRONMENT),
            client_id=os.getenv("FIB_CLIENT_ID", ""),
            client_secret=os.getenv("FIB_CLIENT_SECRET", ""),
            callback_url=os.getenv("FIB_CALLBACK_URL", ""),
            currency=os.getenv("FIB_CURRENCY", "IQD"),
            verify_ssl=insecure not in _TRUTHY,
            timeout=float(os.getenv("FIB_TIMEOUT", "30")),
        )
