"""YAML + environment variable build-config loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from cdc_protogen.config.defaults import build_compiler_config
from cdc_protogen.config.models import CompilerConfig

# Matches ${VAR} or ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")

# Keys whose values are filesystem paths, resolved against the config file.
_PATH_KEYS = ("output_dir", "descriptor_set_path")
_PATH_LIST_KEYS = ("schema_paths", "include_paths")


def _resolve_env_str(value: str) -> str:
    """Replace all ${VAR} / ${VAR:-default} references in a string."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default.replace("\\}", "}")
        msg = f"Environment variable '{var_name}' is not set and no default provided"
        raise ValueError(msg)

    return _ENV_PATTERN.sub(_replace, value)


def resolve_env_vars(data: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:-default} in parsed YAML data."""
    if isinstance(data, str):
        return _resolve_env_str(data)
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        msg += f": {exc}"
        raise ValueError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def anchor_paths(data: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    """Resolve relative path entries in *data* against *base_dir* (non-mutating)."""
    anchored: dict[str, Any] = {**data}
    for key in _PATH_KEYS:
        value = anchored.get(key)
        if isinstance(value, str):
            anchored[key] = str(base_dir / value)
    for key in _PATH_LIST_KEYS:
        values = anchored.get(key)
        if isinstance(values, list):
            anchored[key] = [
                str(base_dir / v) if isinstance(v, str) else v for v in values
            ]
    return anchored


def load_compiler_config(
    path: str | Path,
    *,
    defaults: str = "compiler",
) -> CompilerConfig:
    """Load a build config YAML and merge it with the compiler defaults.

    Relative paths in the file are taken relative to the file's directory,
    so a build config behaves the same regardless of the working directory.
    """
    p = Path(path)
    overrides = anchor_paths(load_yaml(p), p.resolve().parent)
    try:
        return build_compiler_config(overrides, defaults=defaults)
    except ValidationError as exc:
        msg = f"Invalid compiler config ({path}):\n{exc}"
        raise ValueError(msg) from exc
