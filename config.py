import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Ensure .env is loaded from the project root, not the cwd
_env_path = Path(__file__).parent / ".env"
load_dotenv(_env_path, override=True)


class ConfigError(ValueError):
    """Missing or invalid settings; aborts a run before any work starts."""


@dataclass(frozen=True)
class Config:
    # Anthropic
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    claude_model: str = os.getenv("CLAUDE_MODEL", "claude-haiku-4-5-20251001")
    completion_timeout_seconds: float = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "30"))

    # Database
    database_url: str = os.getenv("DATABASE_URL", "")  # PostgreSQL (production)
    database_path: str = os.getenv("DATABASE_PATH", "klio.db")  # SQLite (local)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # In-memory sessions
    max_messages_per_session: int = int(os.getenv("MAX_MESSAGES_PER_SESSION", "20"))
    session_expiry_hours: int = int(os.getenv("SESSION_EXPIRY_HOURS", "24"))
    session_sweep_minutes: int = int(os.getenv("SESSION_SWEEP_MINUTES", "60"))

    # Summarization
    session_gap_hours: float = float(os.getenv("SESSION_GAP_HOURS", "4"))
    min_messages_for_summary: int = int(os.getenv("MIN_MESSAGES_FOR_SUMMARY", "5"))
    recent_messages_limit: int = int(os.getenv("RECENT_MESSAGES_LIMIT", "50"))
    cleanup_trigger_multiplier: float = float(os.getenv("CLEANUP_TRIGGER_MULTIPLIER", "1.5"))

    # Retention
    summary_retention_days: int = int(os.getenv("SUMMARY_RETENTION_DAYS", "90"))
    notification_expiry_days: int = int(os.getenv("NOTIFICATION_EXPIRY_DAYS", "7"))

    # Daily digests
    min_total_messages: int = int(os.getenv("MIN_TOTAL_MESSAGES", "6"))
    min_conversations_for_summary: int = int(os.getenv("MIN_CONVERSATIONS_FOR_SUMMARY", "2"))

    # Batch runs
    batch_size: int = int(os.getenv("BATCH_SIZE", "5"))
    batch_delay_seconds: float = float(os.getenv("BATCH_DELAY_SECONDS", "2"))
    active_learner_days: int = int(os.getenv("ACTIVE_LEARNER_DAYS", "7"))
    maintenance_time: str = os.getenv("MAINTENANCE_TIME", "02:00")  # UTC

    def validate(self) -> None:
        required = {
            "ANTHROPIC_API_KEY": self.anthropic_api_key,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ConfigError(f"Missing required env vars: {', '.join(missing)}")
        if self.batch_size < 1:
            raise ConfigError(f"BATCH_SIZE must be at least 1, got {self.batch_size}")
        try:
            hour, minute = map(int, self.maintenance_time.split(":"))
        except ValueError:
            raise ConfigError(f"MAINTENANCE_TIME must be HH:MM, got {self.maintenance_time!r}")
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ConfigError(f"MAINTENANCE_TIME out of range: {self.maintenance_time!r}")


config = Config()
