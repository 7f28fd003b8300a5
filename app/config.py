"""
Configuration management for Cyber Dice.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()

# Project root directory (parent of 'app' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = True
    name: str = "Cyber Dice"


class SecurityConfig(BaseModel):
    secret_key: str = "CHANGE_THIS_IN_PRODUCTION_PLEASE"
    session_cookie: str = "session"
    session_max_age_seconds: int = 7 * 24 * 3600
    session_idle_seconds: int = 30 * 60  # Unused player sessions are dropped after this


class WalletConfig(BaseModel):
    """Wallet buckets and money precision."""
    starting_main_balance: float = 100.0
    starting_game_balance: float = 0.0
    # Stake is drawn from the first bucket that covers it
    stake_buckets: List[str] = Field(default_factory=lambda: ["main_balance", "game_balance"])
    payout_bucket: str = "game_balance"
    precision: int = 2


class DiceConfig(BaseModel):
    enabled: bool = True
    min_bet: float = 1.0
    max_bet: float = 10000.0
    house_edge_factor: float = 98.0  # 100 - house percentage
    min_threshold: int = 2
    max_threshold: int = 98
    default_threshold: int = 50
    suspense_ms: int = 300
    tick_ms: int = 30


class CoinflipConfig(BaseModel):
    enabled: bool = True
    min_bet: float = 1.0
    max_bet: float = 10000.0
    multiplier: float = 1.90
    suspense_ms: int = 2000
    tick_ms: int = 100


class GamesConfig(BaseModel):
    dice: DiceConfig = Field(default_factory=DiceConfig)
    coinflip: CoinflipConfig = Field(default_factory=CoinflipConfig)


class SettlementConfig(BaseModel):
    timeout_seconds: float = 10.0
    credit_attempts: int = 2


class HistoryConfig(BaseModel):
    limit: int = 10
    refresh_attempts: int = 2


class RateLimitConfig(BaseModel):
    enabled: bool = True
    game_requests: str = "30/minute"  # For play actions
    auth_requests: str = "10/minute"  # For guest wallet creation


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    database: str = "data/wallet.db"
    log_file: str = "data/app.log"

    def get_db_path(self) -> Path:
        return PROJECT_ROOT / self.database

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    games: GamesConfig = Field(default_factory=GamesConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

def load_config() -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    config_path = PROJECT_ROOT / get_env("CONFIG_FILE", "config.json")

    data = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    if get_env("SERVER_HOST"):
        data.setdefault("server", {})["host"] = get_env("SERVER_HOST")
    if get_env("SERVER_PORT"):
        data.setdefault("server", {})["port"] = get_env_int("SERVER_PORT", 8000)
    if get_env("DEBUG"):
        data.setdefault("server", {})["debug"] = get_env_bool("DEBUG")

    if get_env("SECRET_KEY"):
        data.setdefault("security", {})["secret_key"] = get_env("SECRET_KEY")

    if get_env("DB_PATH"):
        data.setdefault("paths", {})["database"] = get_env("DB_PATH")

    if get_env("HOUSE_EDGE_FACTOR"):
        data.setdefault("games", {}).setdefault("dice", {})["house_edge_factor"] = get_env_float(
            "HOUSE_EDGE_FACTOR", 98.0
        )
    if get_env("SETTLEMENT_TIMEOUT"):
        data.setdefault("settlement", {})["timeout_seconds"] = get_env_float("SETTLEMENT_TIMEOUT", 10.0)

    if get_env("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = get_env("LOG_LEVEL")
    if get_env("LOG_TO_FILE"):
        data.setdefault("logging", {})["log_to_file"] = get_env_bool("LOG_TO_FILE")
    if get_env("LOG_FORMATTER"):
        data.setdefault("logging", {})["formatter"] = get_env("LOG_FORMATTER")

    if get_env("RATE_LIMIT_ENABLED"):
        data.setdefault("rate_limit", {})["enabled"] = get_env_bool("RATE_LIMIT_ENABLED", True)
    if get_env("RATE_LIMIT_GAME_REQUESTS"):
        data.setdefault("rate_limit", {})["game_requests"] = get_env("RATE_LIMIT_GAME_REQUESTS")

    return AppConfig(**data)


# Global config instance
settings = load_config()
