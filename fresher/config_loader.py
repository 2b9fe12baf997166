"""
Configuration loader for Fresher.
Merges defaults with per-project .fresher/config.yaml overrides,
then applies FRESHER_* environment variables on top.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from fresher.errors import ConfigError


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LoopConfig(BaseModel):
    mode: str = "planning"
    max_iterations: int = 0  # 0 = unlimited
    smart_termination: bool = True
    dangerous_permissions: bool = True
    max_turns: int = 50
    model: str = "sonnet"
    single_file_threshold: int = 8


class CommandsConfig(BaseModel):
    test: str = ""
    build: str = ""
    lint: str = ""


class PathsConfig(BaseModel):
    log_dir: str = ".fresher/logs"
    spec_dir: str = "specs"
    src_dir: str = "src"
    impl_dir: str = "impl"
    plan_file: str = "IMPLEMENTATION_PLAN.md"


class HooksConfig(BaseModel):
    enabled: bool = True
    timeout: int = 30  # seconds


class FresherConfig(BaseModel):
    fresher: LoopConfig = Field(default_factory=LoopConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

CONTROL_DIR = ".fresher"

# env var -> (section, key, kind)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "FRESHER_MODE":                  ("fresher", "mode", str),
    "FRESHER_MAX_ITERATIONS":        ("fresher", "max_iterations", int),
    "FRESHER_SMART_TERMINATION":     ("fresher", "smart_termination", bool),
    "FRESHER_DANGEROUS_PERMISSIONS": ("fresher", "dangerous_permissions", bool),
    "FRESHER_MAX_TURNS":             ("fresher", "max_turns", int),
    "FRESHER_MODEL":                 ("fresher", "model", str),
    "FRESHER_TEST_CMD":              ("commands", "test", str),
    "FRESHER_BUILD_CMD":             ("commands", "build", str),
    "FRESHER_LINT_CMD":              ("commands", "lint", str),
    "FRESHER_LOG_DIR":               ("paths", "log_dir", str),
    "FRESHER_SPEC_DIR":              ("paths", "spec_dir", str),
    "FRESHER_SRC_DIR":               ("paths", "src_dir", str),
    "FRESHER_IMPL_DIR":              ("paths", "impl_dir", str),
    "FRESHER_HOOKS_ENABLED":         ("hooks", "enabled", bool),
    "FRESHER_HOOK_TIMEOUT":          ("hooks", "timeout", int),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """
    Layer FRESHER_* environment variables over a raw config mapping.

    Booleans are true only for the literal "true" (any case). Integers that
    fail to parse are ignored rather than rejected.
    """
    merged = {section: dict(values) for section, values in data.items() if isinstance(values, dict)}
    for var, (section, key, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None:
            continue
        if kind is bool:
            value: Any = raw.strip().lower() == "true"
        elif kind is int:
            try:
                value = int(raw.strip())
            except ValueError:
                logger.debug(f"[CONFIG] Ignoring non-integer {var}={raw!r}")
                continue
        else:
            value = raw
        merged.setdefault(section, {})[key] = value
    return merged


def load_config(
    project_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FresherConfig:
    """
    Load config by merging:
      1. Built-in defaults (fresher/config.yaml)
      2. Project-level overrides (<project>/.fresher/config.yaml)
      3. FRESHER_* environment variable overrides
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. Project overrides
    if project_dir:
        project_config = project_dir / CONTROL_DIR / "config.yaml"
        if project_config.exists():
            base = _deep_merge(base, _read_yaml(project_config))

    # 3. Env overrides
    base = apply_env_overrides(base, os.environ if environ is None else environ)

    try:
        return FresherConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
