"""Project directory and configuration handling for ``.sagacity/``."""

from __future__ import annotations

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ConfigError
from .models import SagacityConfig

logger = logging.getLogger(__name__)

SAGACITY_DIR = ".sagacity"
CONFIG_FILE = "config.toml"
CACHE_FILE = "index_cache.json"

API_KEY_ENV = "ANTHROPIC_API_KEY"


def find_project_root(start: Path) -> Path | None:
    """Walk up from *start* looking for a ``.sagacity/`` directory."""
    start = start.resolve()
    for d in [start, *start.parents]:
        if (d / SAGACITY_DIR).is_dir():
            return d
    return None


def init_project(root: Path) -> Path:
    """Create ``.sagacity/`` with a default config under *root*.

    Raises FileExistsError if the directory already exists and ValueError if
    *root* is not a directory.
    """
    root = root.resolve()
    if not root.is_dir():
        raise ValueError(f"{root} is not a directory")
    sagacity_dir = root / SAGACITY_DIR
    if sagacity_dir.exists():
        raise FileExistsError(sagacity_dir)
    sagacity_dir.mkdir()
    save_config(sagacity_dir, SagacityConfig())
    return sagacity_dir


def cache_path(sagacity_dir: Path) -> Path:
    return sagacity_dir / CACHE_FILE


def load_config(sagacity_dir: Path) -> SagacityConfig:
    """Read ``config.toml``; a missing file yields the defaults."""
    path = sagacity_dir / CONFIG_FILE
    if not path.is_file():
        return SagacityConfig()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    return build_config(data)


def build_config(data: dict[str, Any]) -> SagacityConfig:
    """Validate a raw mapping into a config, raising ConfigError."""
    unknown = set(data) - set(SagacityConfig.model_fields)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")
    try:
        return SagacityConfig(**data)
    except ValidationError as exc:
        raise ConfigError(_describe_validation_error(exc)) from exc


def save_config(sagacity_dir: Path, cfg: SagacityConfig) -> None:
    """Write *cfg* as flat ``key = value`` TOML.

    The API key is never written; it comes from the environment.
    """
    lines = ["# sagacity configuration", ""]
    for key, value in cfg.model_dump(exclude={"api_key"}).items():
        if value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")
    (sagacity_dir / CONFIG_FILE).write_text("\n".join(lines) + "\n", encoding="utf-8")


def apply_overrides(
    cfg: SagacityConfig,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> SagacityConfig:
    """Layer environment and explicit overrides on top of *cfg*.

    ``None`` override values are ignored so unset CLI flags fall through.
    """
    environ = os.environ if environ is None else environ
    data = cfg.model_dump()
    api_key = environ.get(API_KEY_ENV, "").strip()
    if api_key:
        data["api_key"] = api_key
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return build_config(data)


def set_config_value(cfg: SagacityConfig, key: str, raw: str) -> SagacityConfig:
    """Return a copy of *cfg* with *key* parsed from the string *raw*."""
    if key not in SagacityConfig.model_fields or key == "api_key":
        raise ConfigError(f"Unknown config key: {key}")
    data = cfg.model_dump()
    if key == "extensions":
        data[key] = [part for part in raw.split(",") if part.strip()]
    else:
        try:
            data[key] = tomllib.loads(f"v = {raw}")["v"]
        except tomllib.TOMLDecodeError:
            data[key] = raw
    return build_config(data)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    # JSON strings and string arrays are valid TOML.
    return json.dumps(value)


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "Invalid config: " + "; ".join(parts)
