from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"

_PROVIDER_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openai_compatible": "OPENAI_API_KEY",
}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("PITCHDESK_DB_PATH") or DATA_DIR / "pitchdesk.db")
    )

    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))

    poll_interval_seconds: float = Field(default_factory=lambda: _env_float("PITCHDESK_POLL_INTERVAL", 2.0))
    max_poll_attempts: int = Field(default_factory=lambda: _env_int("PITCHDESK_MAX_POLL_ATTEMPTS", 150))
    require_contact_email: bool = Field(
        default_factory=lambda: _env_bool("PITCHDESK_REQUIRE_CONTACT_EMAIL")
    )

    def llm_api_key(self) -> str:
        """Credential for the configured provider, empty string when unset."""
        env_name = _PROVIDER_KEY_ENV.get(self.llm_provider, "")
        return (os.getenv(env_name, "") if env_name else "").strip()

    def has_llm_credentials(self) -> bool:
        return bool(self.llm_api_key())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
