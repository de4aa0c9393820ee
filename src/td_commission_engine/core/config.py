"""Environment-based configuration."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Mapping

from ..storage.database import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Engine configuration loaded from TD_* environment variables."""

    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    log_level: str = "INFO"

    # Block completion when the breakdown fails validation (default: log only)
    strict_breakdown: bool = False


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment (or an explicit mapping)."""
    env = os.environ if environ is None else environ

    level = env.get("TD_LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        logger.warning(f"Unknown TD_LOG_LEVEL {level!r}, using INFO")
        level = "INFO"

    return Settings(
        db_path=Path(env["TD_DATABASE_PATH"]).expanduser() if env.get("TD_DATABASE_PATH") else DEFAULT_DB_PATH,
        log_level=level,
        strict_breakdown=env.get("TD_STRICT_BREAKDOWN", "false").lower() in TRUE_VALUES,
    )
