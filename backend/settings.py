"""
Runtime configuration, read from the environment on every call.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from allocation import ShareTotalCheck

load_dotenv()

APP_NAME = "billsplit-backend"
APP_VERSION = "0.1.0"
DEFAULT_LEDGER_API_URL = "https://secure.splitwise.com/api/v3.0"


@dataclass(frozen=True)
class Settings:
    ledger_api_url: str = DEFAULT_LEDGER_API_URL
    ledger_api_key: str = ""
    ledger_group_id: Optional[int] = None
    currency_code: str = "INR"
    ledger_timeout_sec: float = 30.0
    share_total_check: ShareTotalCheck = ShareTotalCheck.OFF
    openai_api_key: str = ""
    vision_model: str = "gpt-4o"
    vision_max_tokens: int = 1000
    vision_timeout_sec: float = 60.0
    log_level: str = "INFO"


class ConfigurationError(ValueError):
    pass


def _number_env(name: str, default: str, cast):
    value = os.getenv(name, default).strip()
    try:
        return cast(value)
    except ValueError as ex:
        kind = "an integer" if cast is int else "a number"
        raise ConfigurationError(f"{name} must be {kind}, got {value!r}") from ex


def _optional_int_env(name: str) -> Optional[int]:
    value = (os.getenv(name) or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as ex:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from ex


def _share_check_env(name: str) -> ShareTotalCheck:
    value = os.getenv(name, "off").strip().lower()
    try:
        return ShareTotalCheck(value)
    except ValueError as ex:
        allowed = ", ".join(check.value for check in ShareTotalCheck)
        raise ConfigurationError(f"{name} must be one of {allowed}, got {value!r}") from ex


def load_settings() -> Settings:
    """Raises ConfigurationError naming the variable when a value cannot be parsed."""
    api_key = os.getenv("LEDGER_API_KEY") or os.getenv("SPLITWISE_API_KEY") or ""
    return Settings(
        ledger_api_url=os.getenv("LEDGER_API_URL", DEFAULT_LEDGER_API_URL).rstrip("/"),
        ledger_api_key=api_key.strip(),
        ledger_group_id=_optional_int_env("LEDGER_GROUP_ID"),
        currency_code=os.getenv("LEDGER_CURRENCY_CODE", "INR").strip().upper(),
        ledger_timeout_sec=_number_env("LEDGER_TIMEOUT_SEC", "30", float),
        share_total_check=_share_check_env("LEDGER_SHARE_TOTAL_CHECK"),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        vision_model=os.getenv("VISION_MODEL", "gpt-4o"),
        vision_max_tokens=_number_env("VISION_MAX_TOKENS", "1000", int),
        vision_timeout_sec=_number_env("VISION_TIMEOUT_SEC", "60", float),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
