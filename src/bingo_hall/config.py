from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import yaml

from .core.cards import CARD_LAYOUTS
from .core.ranges import partition_range
from .errors import InvalidConfiguration
from .rng import RNG_ENGINES
from .store import CALLER_MODES

ENV_PREFIX = "BINGO_HALL_"

PATH_KEYS = ("out_cards", "out_report", "log_file", "patterns_file", "store_dir")
LOG_FORMATS = ("text", "json")
COLOR_MODES = ("auto", "always", "never")

DEFAULTS: Dict[str, Any] = {
    "number_range": 75,
    "caller_mode": "manual",
    "auto_interval_seconds": 3,
    "card_layout": "modulo",
    "seed": {"engine": "py_random", "value": None},
    "max_write_attempts": 3,
    "store_dir": ".bingo-hall",
    "colors": "auto",
    "log_level": "INFO",
    "log_format": "text",
}


def _read_config_file(config_path: Path | None) -> Dict[str, Any]:
    if not config_path:
        return {}
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    suffix = config_path.suffix.lower()
    text = config_path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("Top-level YAML config must be a mapping")
        return data
    if suffix == ".json":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Top-level JSON config must be a mapping")
        return data
    raise ValueError(f"Unsupported config extension: {suffix}")


def _collect_env_vars(env: Mapping[str, str]) -> Dict[str, Any]:
    """Map ENV variables with the BINGO_HALL_ prefix to config keys.

    Only the keys listed here are read; anything else under the prefix is
    ignored.
    """
    mapping: Dict[str, str] = {
        # Game
        f"{ENV_PREFIX}NUMBER_RANGE": "number_range",
        f"{ENV_PREFIX}CALLER_MODE": "caller_mode",
        f"{ENV_PREFIX}AUTO_INTERVAL_SECONDS": "auto_interval_seconds",
        f"{ENV_PREFIX}CARD_LAYOUT": "card_layout",
        f"{ENV_PREFIX}MAX_WRITE_ATTEMPTS": "max_write_attempts",
        # Seed
        f"{ENV_PREFIX}SEED_ENGINE": "seed.engine",
        f"{ENV_PREFIX}SEED_VALUE": "seed.value",
        # Files
        f"{ENV_PREFIX}PATTERNS_FILE": "patterns_file",
        f"{ENV_PREFIX}STORE_DIR": "store_dir",
        f"{ENV_PREFIX}OUT_CARDS": "out_cards",
        f"{ENV_PREFIX}OUT_REPORT": "out_report",
        # Output & UX
        f"{ENV_PREFIX}COLORS": "colors",
        f"{ENV_PREFIX}LOG_LEVEL": "log_level",
        f"{ENV_PREFIX}LOG_FORMAT": "log_format",
        f"{ENV_PREFIX}LOG_FILE": "log_file",
    }

    result: Dict[str, Any] = {}
    for env_key, cfg_key in mapping.items():
        if env_key not in env:
            continue
        raw = env[env_key]
        if cfg_key in {"number_range", "max_write_attempts", "seed.value"}:
            try:
                result[cfg_key] = int(raw)
            except ValueError:
                # left as text; validate_parameters reports it
                result[cfg_key] = raw
        elif cfg_key == "auto_interval_seconds":
            try:
                result[cfg_key] = float(raw)
            except ValueError:
                result[cfg_key] = raw
        else:
            result[cfg_key] = raw
    return result


def _set_nested(config: Dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    cursor = config
    for part in parts[:-1]:
        if part not in cursor or not isinstance(cursor[part], dict):
            cursor[part] = {}
        cursor = cursor[part]
    cursor[parts[-1]] = value


def _apply_overrides(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = json.loads(json.dumps(base))  # deep copy via JSON
    for key, value in overrides.items():
        if "." in key:
            _set_nested(merged, key, value)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def canonical_json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def _extract(path: str, source: Mapping[str, Any]) -> Any:
    cur: Any = source
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return None
        cur = cur[part]
    return cur


def compute_params_hash(resolved: Mapping[str, Any]) -> str:
    """Hash of the settings that decide which cards and call orders come out."""
    include = (
        "number_range",
        "card_layout",
        "seed.engine",
        "seed.value",
    )
    contract: Dict[str, Any] = {}
    for item in include:
        value = _extract(item, resolved)
        if value is not None:
            contract[item] = value
    digest = hashlib.sha256(canonical_json_dumps(contract).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def validate_parameters(resolved: Mapping[str, Any]) -> None:
    """Raise InvalidConfiguration on the first bad value."""
    n = resolved.get("number_range")
    if not isinstance(n, int) or isinstance(n, bool):
        raise InvalidConfiguration(f"number_range must be an integer, got {n!r}")
    partition_range(n)

    if resolved.get("caller_mode") not in CALLER_MODES:
        raise InvalidConfiguration(
            f"caller_mode must be one of {', '.join(CALLER_MODES)}, got {resolved.get('caller_mode')!r}"
        )
    interval = resolved.get("auto_interval_seconds")
    if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
        raise InvalidConfiguration(f"auto_interval_seconds must be positive, got {interval!r}")
    if resolved.get("card_layout") not in CARD_LAYOUTS:
        raise InvalidConfiguration(
            f"card_layout must be one of {', '.join(CARD_LAYOUTS)}, got {resolved.get('card_layout')!r}"
        )
    attempts = resolved.get("max_write_attempts")
    if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 1:
        raise InvalidConfiguration(f"max_write_attempts must be >= 1, got {attempts!r}")

    engine = _extract("seed.engine", resolved)
    if engine not in RNG_ENGINES:
        raise InvalidConfiguration(
            f"seed.engine must be one of {', '.join(RNG_ENGINES)}, got {engine!r}"
        )
    seed_value = _extract("seed.value", resolved)
    if seed_value is not None and (not isinstance(seed_value, int) or isinstance(seed_value, bool)):
        raise InvalidConfiguration(f"seed.value must be an integer, got {seed_value!r}")

    if resolved.get("log_format") not in LOG_FORMATS:
        raise InvalidConfiguration(f"log_format must be text or json, got {resolved.get('log_format')!r}")
    if resolved.get("colors") not in COLOR_MODES:
        raise InvalidConfiguration(
            f"colors must be one of {', '.join(COLOR_MODES)}, got {resolved.get('colors')!r}"
        )


def resolve_paths(
    resolved: Dict[str, Any],
    config_file: Path | None,
    cli_overrides: Mapping[str, Any],
) -> Dict[str, Any]:
    """Normalize paths per policy.

    - Paths from config file: resolve relative to config directory
    - Paths from CLI: resolve relative to CWD
    """
    cwd = Path.cwd()
    cfg_dir = config_file.parent if config_file else None

    def normalize(path_value: str | None, is_cli: bool) -> str | None:
        if path_value is None or path_value == "":
            return None
        p = Path(path_value)
        if p.is_absolute():
            return str(p)
        base = cwd if is_cli else (cfg_dir or cwd)
        return str((base / p).resolve())

    result = dict(resolved)
    cli_keys = {k for k in cli_overrides if k in PATH_KEYS}
    for key in PATH_KEYS:
        value = resolved.get(key)
        if value is None:
            continue
        result[key] = normalize(str(value), key in cli_keys)
    return result


def resolve_parameters(
    *,
    config_path_str: str | None,
    cli_overrides: Mapping[str, Any],
    env: Mapping[str, str] | None = None,
) -> Tuple[Dict[str, Any], str, Path | None]:
    """Resolve parameters with precedence CLI > ENV > config > defaults.

    Returns (resolved_params, params_hash, config_path)
    """
    config_path = Path(config_path_str).resolve() if config_path_str else None
    file_cfg = _read_config_file(config_path) if config_path else {}
    env_map = _collect_env_vars(os.environ if env is None else env)
    overrides = {k: v for k, v in cli_overrides.items() if v is not None}

    merged = _apply_overrides(DEFAULTS, file_cfg)
    merged = _apply_overrides(merged, env_map)
    merged = _apply_overrides(merged, overrides)

    merged = resolve_paths(merged, config_path, overrides)
    validate_parameters(merged)

    params_hash = compute_params_hash(merged)
    return merged, params_hash, config_path
