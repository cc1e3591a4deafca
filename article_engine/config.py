"""
Engine configuration — Article Engine
=====================================

Settings come from a JSON file (explicit path, ``$ARTICLE_ENGINE_CONFIG``, or
``configs/engine.json`` under the project root) with a couple of environment
overrides on top.  A missing file means defaults.

Example ``configs/engine.json``::

    {
      "duplicate_window_days": 30,
      "skip_phases": ["publish"],
      "worker_endpoints": {"research": "http://localhost:8700/research"},
      "link_engine": {"max_internal_links": 4},
      "retry_overrides": {"writing": {"max_attempts": 3}}
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from article_engine.job_state import is_optional, parse_phase

logger = logging.getLogger("config")

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "configs" / "engine.json"
DATA_DIR = Path(os.getenv("ARTICLE_ENGINE_DATA_DIR", str(BASE_DIR / "data")))

# Loggers owned by the package, switched together by set_log_level()
PACKAGE_LOGGERS = (
    "job_state",
    "checkpoint_manager",
    "error_classifier",
    "retry_policy",
    "duplicate_guard",
    "link_engine",
    "step_workers",
    "assembly",
    "orchestrator",
    "config",
)


@dataclass
class EngineConfig:
    """Runtime settings shared by the orchestrator and the CLI."""
    data_dir: str = str(DATA_DIR)
    duplicate_window_days: int = 30
    checkpoint_retention_days: int = 30
    skip_phases: List[str] = field(default_factory=list)
    worker_endpoints: Dict[str, str] = field(default_factory=dict)
    worker_headers: Dict[str, str] = field(default_factory=dict)
    worker_timeout_seconds: float = 120.0
    link_engine: Dict[str, Any] = field(default_factory=dict)
    retry_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EngineConfig:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.data_dir) / "checkpoints"

    @property
    def submissions_dir(self) -> Path:
        return Path(self.data_dir) / "submissions"

    def validate(self) -> None:
        """Raise ValueError for settings the engine cannot honour."""
        if self.duplicate_window_days <= 0:
            raise ValueError("duplicate_window_days must be positive")
        if self.checkpoint_retention_days <= 0:
            raise ValueError("checkpoint_retention_days must be positive")
        for name in self.skip_phases:
            phase = parse_phase(name)
            if not is_optional(phase):
                raise ValueError(f"Required phase '{phase.value}' cannot be skipped")


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load EngineConfig from JSON, then apply environment overrides."""
    if path is None:
        env_path = os.getenv("ARTICLE_ENGINE_CONFIG")
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    path = Path(path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        logger.debug("Loaded config from %s", path)

    config = EngineConfig.from_dict(data)
    if os.getenv("ARTICLE_ENGINE_DATA_DIR"):
        config.data_dir = os.environ["ARTICLE_ENGINE_DATA_DIR"]
    if os.getenv("ARTICLE_ENGINE_LOG_LEVEL"):
        config.log_level = os.environ["ARTICLE_ENGINE_LOG_LEVEL"].upper()

    config.validate()
    return config


def set_log_level(level: str) -> None:
    """Apply *level* to every package logger."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level '{level}'")
    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(numeric)
