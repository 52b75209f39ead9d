"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class AIConfig:
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"
    reflection_model: str = "claude-haiku-4-5-20251001"
    daily_token_limit: int = 500000
    request_timeout: float = 60.0
    vertex_project_id: str = ""
    vertex_region: str = "us-east5"

    @property
    def configured(self) -> bool:
        if self.provider == "vertex":
            return bool(self.vertex_project_id)
        return bool(self.anthropic_api_key)


@dataclass
class BankrConfig:
    """Research / trading API (submit-then-poll job semantics)."""
    api_url: str = "https://api.bankr.bot"
    api_key: str = ""
    poll_interval: float = 2.0
    job_timeout: float = 120.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class ExecutionConfig:
    timeout_seconds: float = 30.0


@dataclass
class ScannerConfig:
    score_threshold: float = 60.0
    max_candidates: int = 10


@dataclass
class TradingDefaults:
    """Seed values for a fresh ledger. After first start the ledger copy wins."""
    max_market_cap: float = 40000.0
    max_buy_amount: str = "5"
    take_profit_pct: float = 100.0
    stop_loss_pct: float = 30.0
    scan_interval_min: int = 30
    max_open_positions: int = 3
    auto_trade_enabled: bool = False


@dataclass
class TelegramConfig:
    enabled: bool = True
    bot_token: str = ""
    chat_id: str = ""
    allowed_user_ids: list[int] = field(default_factory=list)


@dataclass
class BrainConfig:
    history_limit: int = 40
    context_messages: int = 20
    learnings_limit: int = 100
    max_tokens: int = 1000
    temperature: float = 0.7


@dataclass
class Config:
    mode: str = "paper"
    timezone: str = "UTC"
    log_level: str = "INFO"
    ai: AIConfig = field(default_factory=AIConfig)
    bankr: BankrConfig = field(default_factory=BankrConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    trading: TradingDefaults = field(default_factory=TradingDefaults)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    brain: BrainConfig = field(default_factory=BrainConfig)
    db_path: str = ""

    def is_paper(self) -> bool:
        return self.mode == "paper"


def _merge(section: object, values: dict) -> None:
    for key in vars(section):
        if key in values:
            setattr(section, key, values[key])


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "agent.db")

    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)
        if general.get("db_path"):
            config.db_path = str(PROJECT_ROOT / general["db_path"])

        ai = settings.get("ai", {})
        _merge(config.ai, ai)
        vertex = ai.get("vertex", {})
        config.ai.vertex_project_id = vertex.get("project_id", config.ai.vertex_project_id)
        config.ai.vertex_region = vertex.get("region", config.ai.vertex_region)

        _merge(config.bankr, settings.get("bankr", {}))
        _merge(config.execution, settings.get("execution", {}))
        _merge(config.scanner, settings.get("scanner", {}))
        _merge(config.trading, settings.get("trading", {}))
        _merge(config.brain, settings.get("brain", {}))

        tg = settings.get("telegram", {})
        config.telegram.enabled = tg.get("enabled", config.telegram.enabled)
        config.telegram.allowed_user_ids = tg.get("allowed_user_ids", config.telegram.allowed_user_ids)

    # Secrets
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
    config.bankr.api_key = os.getenv("BANKR_API_KEY", "")
    config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    config.telegram.chat_id = os.getenv("TELEGRAM_CHAT_ID", "")

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []

    if config.mode not in ("paper", "live"):
        errors.append(f"mode must be 'paper' or 'live', got '{config.mode}'")
    if config.ai.provider not in ("anthropic", "vertex"):
        errors.append(f"ai.provider must be 'anthropic' or 'vertex', got '{config.ai.provider}'")
    if config.ai.daily_token_limit < 1:
        errors.append(f"ai.daily_token_limit must be >= 1, got {config.ai.daily_token_limit}")
    if config.execution.timeout_seconds <= 0:
        errors.append(f"execution.timeout_seconds must be > 0, got {config.execution.timeout_seconds}")
    if not (0 < config.bankr.job_timeout <= 600):
        errors.append(f"bankr.job_timeout must be 0-600, got {config.bankr.job_timeout}")
    if config.bankr.poll_interval <= 0:
        errors.append(f"bankr.poll_interval must be > 0, got {config.bankr.poll_interval}")
    if not (0 <= config.scanner.score_threshold <= 100):
        errors.append(f"scanner.score_threshold must be 0-100, got {config.scanner.score_threshold}")
    if config.trading.scan_interval_min < 1:
        errors.append(f"trading.scan_interval_min must be >= 1, got {config.trading.scan_interval_min}")
    if config.trading.max_open_positions < 1:
        errors.append(f"trading.max_open_positions must be >= 1, got {config.trading.max_open_positions}")
    if config.trading.take_profit_pct <= 0:
        errors.append(f"trading.take_profit_pct must be > 0, got {config.trading.take_profit_pct}")
    if not (0 < config.trading.stop_loss_pct <= 100):
        errors.append(f"trading.stop_loss_pct must be 0-100, got {config.trading.stop_loss_pct}")
    if config.brain.history_limit < 2:
        errors.append(f"brain.history_limit must be >= 2, got {config.brain.history_limit}")
    if config.brain.context_messages > config.brain.history_limit:
        errors.append(
            f"brain.context_messages ({config.brain.context_messages}) > "
            f"history_limit ({config.brain.history_limit})"
        )

    try:
        ZoneInfo(config.timezone)
    except Exception:
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
