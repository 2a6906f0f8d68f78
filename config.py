import logging
import os
import sys

import yaml

from settings_schema import ConfigSchema, validate_config

LOGGER_NAME = "emst"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

ENV_OVERRIDES = {
    "EMST_DB_PATH": "db_path",
    "EMST_TIMEZONE": "timezone",
    "EMST_LOG_LEVEL": "log_level",
}


class YamlConfig:
    """Load and save process configuration to a YAML file."""

    def __init__(self, path: str = "emst.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_config(path: str = "emst.yaml") -> ConfigSchema:
    """Read ``path`` and apply ``EMST_*`` environment overrides."""
    data = YamlConfig(path).load()
    for env_key, field in ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if value:
            data[field] = value
    return validate_config(data)


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    handler = next(
        (h for h in logger.handlers if getattr(h, "_emst_handler", False)), None
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._emst_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    handler.setLevel(level)
    logger.propagate = False
    return logger
