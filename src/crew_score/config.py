"""Configuration file management for crew-score.

Reads and writes ~/.crew-score/config.json for settings that don't belong in
the DB (database path, queue limits, retry counts, level table overrides).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from crew_score.levels import LEVEL_TIERS, LevelTier, tiers_from_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Path = Path.home() / ".crew-score" / "config.json"


def load_config(config_path: Path | None = None) -> dict:
    """Load config from JSON file. Returns {} if file missing or invalid."""
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def save_config(data: dict, config_path: Path | None = None) -> None:
    """Write config dict to JSON file. Creates parent dirs if needed."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


@dataclass
class EngineSettings:
    db_path: Path | None = None
    queue_max_size: int | None = None
    max_retries: int = 3
    max_delivery_attempts: int = 3
    new_user_days: int = 30
    log_level: str = "WARNING"
    levels: list[LevelTier] = field(default_factory=lambda: list(LEVEL_TIERS))

    @classmethod
    def from_config(cls, config: dict) -> EngineSettings:
        """Typed view of a config dict. Invalid level tables raise ValueError."""
        settings = cls()
        if config.get("db_path"):
            settings.db_path = Path(config["db_path"]).expanduser()
        if config.get("queue_max_size") is not None:
            settings.queue_max_size = int(config["queue_max_size"])
        for key in ("max_retries", "max_delivery_attempts", "new_user_days"):
            if config.get(key) is not None:
                setattr(settings, key, int(config[key]))
        if config.get("log_level"):
            settings.log_level = str(config["log_level"]).upper()
        if config.get("levels"):
            settings.levels = tiers_from_config(config["levels"])
        return settings


def load_settings(config_path: Path | None = None) -> EngineSettings:
    return EngineSettings.from_config(load_config(config_path))


def configure_logging(level: str = "WARNING") -> None:
    """Route crew_score logs through rich for terminal use."""
    from rich.logging import RichHandler

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
