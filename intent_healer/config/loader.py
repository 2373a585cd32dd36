from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from intent_healer.config.schema import HealerConfig
from intent_healer.core.exceptions import ConfigurationError


class ConfigLoader:
    """Loads and validates the JSON healer configuration."""

    @staticmethod
    def load(path: str | Path) -> HealerConfig:
        config_path = Path(path)
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Could not read healer config {config_path}: {exc}") from exc
        return ConfigLoader.from_dict(payload)

    @staticmethod
    def from_dict(payload: dict) -> HealerConfig:
        try:
            return HealerConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid healer config: {exc}") from exc
