# paygate/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# Tempo Moderato testnet defaults
TESTNET_RPC = "https://rpc.moderato.tempo.xyz"
ALPHA_USD_ADDRESS = "0x20c0000000000000000000000000000000000001"


class Settings(BaseSettings):
    PROJECT_NAME: str = "Payment Gate"
    API_V1_STR: str = "/api/v1"

    # Payment gate
    PAYMENT_ENABLED: bool = True
    PAYMENT_REALM: str = "Payment Gate"
    PAYMENT_METHOD: str = "tempo"
    PAYMENT_RECIPIENT: Optional[str] = None
    PAYMENT_AMOUNT: Optional[str] = None  # base units, e.g. "10000" = 0.01 with 6 decimals
    PAYMENT_TOKEN: str = ALPHA_USD_ADDRESS
    PAYMENT_RPC_URL: AnyHttpUrl = TESTNET_RPC
    PAYMENT_DESCRIPTION: Optional[str] = None
    PAYMENT_MAX_AGE_SECONDS: int = 300
    PAYMENT_CONFIRMATIONS: int = 1

    # Replay protection and challenge lifetime
    PAYMENT_REPLAY_TTL_SECONDS: float = 300
    PAYMENT_CHALLENGE_TTL_SECONDS: int = 300
    PAYMENT_BIND_CHALLENGES: bool = False

    # Comma-separated "METHOD /path" pairs
    PAYMENT_PROTECTED_PATHS: str = "GET /api/v1/premium"

    # Audit trail (JSON lines)
    PAYMENT_AUDIT_ENABLED: bool = False
    PAYMENT_AUDIT_LOG_PATH: str = "logs/payment_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
