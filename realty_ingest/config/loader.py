"""Configuration loading helpers for realty-ingest."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import EngineConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
CONFIG_FILENAME = "realty.yaml"
STATUS_FILENAME = "status.json"
HOME_ENV = "REALTY_INGEST_HOME"
AUTH_TOKEN_ENV = "YANDEX_REALTY_AUTH_TOKEN"


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(HOME_ENV)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME

    def status_path(self) -> Path:
        return self.data_dir / STATUS_FILENAME

    def resolve(self, path: Path) -> Path:
        """Anchor a relative path from the config at the project root."""

        return path if path.is_absolute() else (self.project_root / path).resolve()


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: EngineConfig | None = None

    def load_config(self, path: Path | None = None) -> EngineConfig:
        if path is None and self._cache is not None:
            return self._cache
        target = path or self.locator.config_path()
        if not target.exists():
            raise ConfigurationError(f"Configuration file not found: {target}")
        if target.suffix not in CONFIG_EXTENSIONS:
            raise ConfigurationError(f"Unsupported configuration format: {target.suffix}")
        payload = _read_file(target)
        if not payload.get("auth_token"):
            payload["auth_token"] = os.environ.get(AUTH_TOKEN_ENV, "")
        try:
            config = EngineConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration {target}:\n{exc}") from exc
        self._cache = config
        return config

    def save_config(self, config: EngineConfig, path: Path | None = None) -> Path:
        target = path or self.locator.config_path()
        _write_file(target, config.model_dump(mode="json", by_alias=True))
        self._cache = config
        return target

    # ------------------------------------------------------------------
    # Operator status snapshot
    # ------------------------------------------------------------------
    def write_status(self, payload: dict) -> Path:
        path = self.locator.status_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)
        return path

    def read_status(self) -> dict | None:
        path = self.locator.status_path()
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))


__all__ = ["AUTH_TOKEN_ENV", "CONFIG_EXTENSIONS", "ConfigLocator", "ConfigRepository"]
