"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".garage_workflow" / "garage.db")
    workday_start: int = 7
    workday_end: int = 19
    working_days: tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)
    claim_retries: int = 5
    reminder_poll_interval: float = 60.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("GW_DB_PATH"):
            config.db_path = Path(db)

        if start := os.environ.get("GW_WORKDAY_START"):
            config.workday_start = int(start)

        if end := os.environ.get("GW_WORKDAY_END"):
            config.workday_end = int(end)

        if days := os.environ.get("GW_WORKING_DAYS"):
            config.working_days = tuple(int(d) for d in days.split(",") if d.strip())

        if retries := os.environ.get("GW_CLAIM_RETRIES"):
            config.claim_retries = max(1, int(retries))

        if poll := os.environ.get("GW_REMINDER_POLL_SECONDS"):
            config.reminder_poll_interval = float(poll)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("GW_SLACK_CHANNEL")

        if level := os.environ.get("GW_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
