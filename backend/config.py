"""
Runtime settings for the funnel dashboard backend.

Values come from the process environment (optionally seeded from
backend/.env through python-dotenv) and are collected once into a frozen
Settings value. Routes receive it through FastAPI's Depends(get_settings).
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent

# Bitrix24 sales funnel "Договор" and its won stage ("prepayment received")
DEFAULT_CONTRACT_CATEGORY_ID = "31"
DEFAULT_CONTRACT_WON_STAGE_ID = "C31:WON"


@dataclass(frozen=True)
class Settings:
    # Incoming webhook mode: https://portal.bitrix24.ru/rest/1/abc123/
    bitrix_webhook_url: str = ""
    # OAuth mode (local application)
    bitrix_client_endpoint: str = ""
    bitrix_client_id: str = ""
    bitrix_client_secret: str = ""
    bitrix_access_token: str = ""
    bitrix_refresh_token: str = ""
    bitrix_token_file: Optional[str] = None
    bitrix_max_requests_per_second: int = 2

    funnel_config_path: Optional[str] = None
    contract_category_id: str = DEFAULT_CONTRACT_CATEGORY_ID
    contract_won_stage_id: str = DEFAULT_CONTRACT_WON_STAGE_ID

    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def uses_oauth(self) -> bool:
        return bool(self.bitrix_client_endpoint or self.bitrix_token_file)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Read settings from the environment, loading the .env file first."""
    load_dotenv(env_file or ROOT_DIR / ".env")

    origins = os.environ.get("CORS_ORIGINS", "*")
    return Settings(
        bitrix_webhook_url=os.environ.get("BITRIX_WEBHOOK_URL", ""),
        bitrix_client_endpoint=os.environ.get("BITRIX_CLIENT_ENDPOINT", ""),
        bitrix_client_id=os.environ.get("BITRIX_CLIENT_ID", ""),
        bitrix_client_secret=os.environ.get("BITRIX_CLIENT_SECRET", ""),
        bitrix_access_token=os.environ.get("BITRIX_ACCESS_TOKEN", ""),
        bitrix_refresh_token=os.environ.get("BITRIX_REFRESH_TOKEN", ""),
        bitrix_token_file=os.environ.get("BITRIX_TOKEN_FILE") or None,
        bitrix_max_requests_per_second=_int_env("BITRIX_MAX_REQUESTS_PER_SECOND", 2),
        funnel_config_path=os.environ.get("FUNNEL_CONFIG_PATH") or None,
        contract_category_id=os.environ.get("CONTRACT_CATEGORY_ID", DEFAULT_CONTRACT_CATEGORY_ID),
        contract_won_stage_id=os.environ.get("CONTRACT_WON_STAGE_ID", DEFAULT_CONTRACT_WON_STAGE_ID),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
