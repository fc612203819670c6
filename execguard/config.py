"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from execguard.errors import ConfigError


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "execguard_config.json"
DEFAULT_DATA_DIR = ".execguard"
APPROVAL_MODES = ("database", "auto")

ENV_POLICY = "EXECGUARD_POLICY"
ENV_DATA_DIR = "EXECGUARD_DATA_DIR"
ENV_APPROVAL_MODE = "EXECGUARD_APPROVAL_MODE"
ENV_EXEC_TIMEOUT = "EXECGUARD_EXEC_TIMEOUT"
ENV_MAX_OUTPUT = "EXECGUARD_MAX_OUTPUT"


@dataclass
class GuardConfig:
    """execguard configuration."""
    policy_path: Optional[Path] = None
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))
    approval_mode: str = "database"
    exec_timeout_seconds: float = 120.0
    max_output_bytes: int = 10 * 1024 * 1024
    approval_poll_interval: float = 1.0

    def __post_init__(self):
        if self.approval_mode not in APPROVAL_MODES:
            raise ConfigError(
                f"approval_mode must be one of {', '.join(APPROVAL_MODES)}, got {self.approval_mode!r}"
            )
        if self.exec_timeout_seconds <= 0:
            raise ConfigError("exec_timeout_seconds must be positive")
        if self.max_output_bytes <= 0:
            raise ConfigError("max_output_bytes must be positive")
        if self.approval_poll_interval <= 0:
            raise ConfigError("approval_poll_interval must be positive")

    @property
    def db_path(self) -> Path:
        return self.data_dir / "knowledge.db"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def plans_dir(self) -> Path:
        return self.data_dir / "plans"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "GuardConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (execguard_config.json)
        3. Default values
        """
        config: dict[str, Any] = {}

        config_path = Path(config_path) if config_path else Path(CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to load config file {config_path}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigError(f"Config file {config_path} must contain a JSON object")
            config.update(file_config)

        env_map = {
            ENV_POLICY: "policy_path",
            ENV_DATA_DIR: "data_dir",
            ENV_APPROVAL_MODE: "approval_mode",
            ENV_EXEC_TIMEOUT: "exec_timeout_seconds",
            ENV_MAX_OUTPUT: "max_output_bytes",
        }
        for env_name, key in env_map.items():
            value = os.environ.get(env_name)
            if value:
                config[key] = value

        return cls.from_dict(config)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuardConfig":
        """Build a config from raw (possibly string) values."""
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

        kwargs: dict[str, Any] = {}
        if data.get("policy_path"):
            kwargs["policy_path"] = Path(data["policy_path"])
        if data.get("data_dir"):
            kwargs["data_dir"] = Path(data["data_dir"])
        if "approval_mode" in data:
            kwargs["approval_mode"] = str(data["approval_mode"]).lower()
        for key, convert in (
            ("exec_timeout_seconds", float),
            ("max_output_bytes", int),
            ("approval_poll_interval", float),
        ):
            if key in data:
                try:
                    kwargs[key] = convert(data[key])
                except (TypeError, ValueError):
                    raise ConfigError(f"{key} must be a number, got {data[key]!r}") from None
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_path": str(self.policy_path) if self.policy_path else None,
            "data_dir": str(self.data_dir),
            "approval_mode": self.approval_mode,
            "exec_timeout_seconds": self.exec_timeout_seconds,
            "max_output_bytes": self.max_output_bytes,
            "approval_poll_interval": self.approval_poll_interval,
        }
