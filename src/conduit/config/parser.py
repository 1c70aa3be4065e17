"""Load, validate, and resolve conduit.yaml configuration."""

from __future__ import annotations

import difflib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from conduit.config.models import ConduitConfig
from conduit.errors import ConfigError

if TYPE_CHECKING:
    from pydantic_core import ErrorDetails

DEFAULT_CONFIG_NAME = "conduit.yaml"


def load_config(path: Path | None = None) -> ConduitConfig:
    """Load and validate a conduit.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              conduit.yaml in the current directory and falls back to
              defaults when there is none.

    Returns:
        A validated ConduitConfig instance.

    Raises:
        ConfigError: On a missing explicit file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        return ConduitConfig()
    raw = _read_yaml(config_path)
    _resolve_relative_paths(raw, config_path.parent)
    _load_env(config_path.parent)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _resolve_relative_paths(raw: dict[str, Any], base_dir: Path) -> None:
    # store_path is project-scoped: relative values are anchored at the config.
    store = raw.get("store_path")
    if isinstance(store, str) and not store.startswith("~") and not Path(store).is_absolute():
        raw["store_path"] = str(base_dir / store)


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _validate(raw: dict[str, Any]) -> ConduitConfig:
    try:
        return ConduitConfig.model_validate(raw)
    except ValidationError as exc:
        lines = [f"  {_describe(err)}" for err in exc.errors()]
        joined = "\n".join(lines)
        noun = "problem" if len(lines) == 1 else "problems"
        msg = f"Invalid configuration ({len(lines)} {noun}):\n{joined}"
        raise ConfigError(msg) from exc


def _describe(err: ErrorDetails) -> str:
    """One readable line per pydantic error, keyed by the dotted setting name."""
    loc = err["loc"]
    setting = ".".join(str(part) for part in loc) or "(top level)"
    ctx = err.get("ctx") or {}
    value = err.get("input")

    match err["type"]:
        case "extra_forbidden":
            hint = _suggest(loc)
            return f"{setting}: unknown setting" + (f" (did you mean '{hint}'?)" if hint else "")
        case "literal_error":
            return f"{setting}: {value!r} is not one of {ctx.get('expected', '?')}"
        case "greater_than":
            return f"{setting}: must be greater than {ctx.get('gt')} (got {value!r})"
        case "greater_than_equal":
            return f"{setting}: must be at least {ctx.get('ge')} (got {value!r})"
        case "value_error":
            return f"{setting}: {ctx.get('error', err['msg'])}"
        case "model_type" | "dict_type":
            return f"{setting}: expected a mapping of settings, got {type(value).__name__}"
    return f"{setting}: {err['msg']} (got {value!r})"


def _suggest(loc: tuple[int | str, ...]) -> str | None:
    """Closest known setting name to the unknown key at *loc*."""
    model: type[BaseModel] = ConduitConfig
    for part in loc[:-1]:
        field = model.model_fields.get(str(part))
        nested = field.annotation if field is not None else None
        if not (isinstance(nested, type) and issubclass(nested, BaseModel)):
            return None
        model = nested
    matches = difflib.get_close_matches(str(loc[-1]), list(model.model_fields), n=1)
    return matches[0] if matches else None
