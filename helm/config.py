import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from helm.constants import (
    COMPACTION_KEEP_RECENT,
    CONTEXT_LIMITS,
    DEFAULT_MODEL,
    DOOM_LOOP_THRESHOLD,
    MAX_STEPS,
    OVERFLOW_RATIO,
    PRUNE_MINIMUM_TOKENS,
    PRUNE_PROTECT_TOKENS,
    RETRY_BASE_DELAY,
    RETRY_JITTER,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
)
from helm.logging import get_logger

HELM_DIR = Path.home() / ".helm"
SETTINGS_PATH = HELM_DIR / "settings.json"

_logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    jitter: float = RETRY_JITTER


@dataclass(frozen=True)
class CompactionPolicy:
    context_limit: int = 0
    overflow_ratio: float = OVERFLOW_RATIO
    keep_recent: int = COMPACTION_KEEP_RECENT
    prune_protect: int = PRUNE_PROTECT_TOKENS
    prune_minimum: int = PRUNE_MINIMUM_TOKENS


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HELM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # API keys are read by litellm from the standard provider env vars
    model: str = DEFAULT_MODEL
    context_limit: int | None = None  # None = look up the model, 0 = no limit

    # Compaction
    overflow_ratio: float = OVERFLOW_RATIO
    compaction_keep_recent: int = COMPACTION_KEEP_RECENT
    prune_protect_tokens: int = PRUNE_PROTECT_TOKENS
    prune_minimum_tokens: int = PRUNE_MINIMUM_TOKENS

    # Stream processor
    doom_loop_threshold: int = DOOM_LOOP_THRESHOLD
    retry_max_attempts: int = RETRY_MAX_ATTEMPTS
    retry_base_delay: float = RETRY_BASE_DELAY
    retry_max_delay: float = RETRY_MAX_DELAY
    retry_jitter: float = RETRY_JITTER

    # Session loop
    max_steps: int | None = MAX_STEPS

    data_dir: Path = Field(default=HELM_DIR)
    approvals_namespace: str = "default"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _default_context_limit(self) -> "Config":
        if self.context_limit is None:
            self.context_limit = CONTEXT_LIMITS.get(self.model, 0)
            if not self.context_limit:
                _logger.info("Unknown context window for %s, overflow detection disabled", self.model)
        return self

    @field_validator("overflow_ratio")
    @classmethod
    def _validate_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError(f"overflow_ratio must be in (0, 1], got {v}")
        return v

    @field_validator("retry_jitter")
    @classmethod
    def _validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError(f"retry_jitter must be in [0, 1), got {v}")
        return v

    @field_validator("doom_loop_threshold", "retry_max_attempts", "compaction_keep_recent")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {v}")
        return level

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    @property
    def compaction_policy(self) -> CompactionPolicy:
        return CompactionPolicy(
            context_limit=self.context_limit or 0,
            overflow_ratio=self.overflow_ratio,
            keep_recent=self.compaction_keep_recent,
            prune_protect=self.prune_protect_tokens,
            prune_minimum=self.prune_minimum_tokens,
        )

    @property
    def sessions_db_path(self) -> Path:
        return self.data_dir / "sessions.db"


PERSIST_KEYS = frozenset(
    {
        "model",
        "context_limit",
        "overflow_ratio",
        "compaction_keep_recent",
        "doom_loop_threshold",
        "max_steps",
        "approvals_namespace",
    }
)


def get_config() -> Config:
    settings = load_user_settings()
    # init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)
