"""
Configuration helpers for YAML-backed engine settings.

Precedence is always defaults < YAML file < explicit CLI flags.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from .utils import UserError, ensure_file_exists


DEFAULT_ENGINE: dict[str, Any] = {
    "unit_timeout_s": 30.0,
    "job_grace_period_s": 5.0,
    "min_band_height_px": 5,
    "max_input_bytes": 10 * 1024 * 1024,
    "max_dimension": 1500,
    "rasterize_scale": 1.5,
    "portrait_aspect": 1.5,
    "output_format": "png",
    "storage_quota_bytes": 5 * 1024 * 1024,
    "state_key": "page-composer/sessions",
}

ENGINE_KEYS = set(DEFAULT_ENGINE.keys())
OUTPUT_FORMATS = {"png"}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file into a dictionary."""

    ensure_file_exists(path, "Config file")
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise UserError(f"Failed to parse YAML config {path}: {exc}") from exc
    except OSError as exc:
        raise UserError(f"Failed to read config {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise UserError(f"Config {path} must contain a YAML mapping/object at top level.")
    return loaded


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge dictionaries where overlay values win.
    """

    merged = deepcopy(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def validate_keys(cfg: dict[str, Any], allowed: set[str], ctx: str) -> None:
    """
    Validate dictionary keys and fail fast on unknown entries.
    """

    unknown = sorted(key for key in cfg.keys() if key not in allowed)
    if unknown:
        allowed_list = ", ".join(sorted(allowed))
        unknown_list = ", ".join(unknown)
        raise UserError(
            f"Unknown keys in {ctx}: {unknown_list}. Allowed keys: {allowed_list}."
        )


def extract_engine_section(loaded: Dict[str, Any]) -> Dict[str, Any]:
    """Support either root config keys or an engine wrapper."""

    if "engine" in loaded:
        section = loaded["engine"]
        if not isinstance(section, dict):
            raise UserError("config.engine must be a mapping/object.")
        validate_keys(section, ENGINE_KEYS, "config.engine")
        return section

    validate_keys(loaded, ENGINE_KEYS, "config")
    return loaded


def dump_default_engine_yaml() -> str:
    """Serialize wrapped engine defaults as YAML."""

    return yaml.safe_dump({"engine": DEFAULT_ENGINE}, sort_keys=False).rstrip()


def _number(cfg: Dict[str, Any], key: str) -> float:
    value = cfg[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UserError(f"{key} must be a number.")
    return float(value)


def _integer(cfg: Dict[str, Any], key: str) -> int:
    value = cfg[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise UserError(f"{key} must be an integer.")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Validated engine settings shared by sessions, jobs and pipelines."""

    unit_timeout_s: float = 30.0
    job_grace_period_s: float = 5.0
    min_band_height_px: int = 5
    max_input_bytes: int = 10 * 1024 * 1024
    max_dimension: int = 1500
    rasterize_scale: float = 1.5
    portrait_aspect: float = 1.5
    output_format: str = "png"
    storage_quota_bytes: int = 5 * 1024 * 1024
    state_key: str = "page-composer/sessions"

    @classmethod
    def from_mapping(cls, overrides: Dict[str, Any] | None = None) -> "EngineSettings":
        """Merge overrides onto the defaults and validate the result."""

        cfg = deep_merge(DEFAULT_ENGINE, overrides or {})
        validate_keys(cfg, ENGINE_KEYS, "engine settings")

        unit_timeout_s = _number(cfg, "unit_timeout_s")
        if unit_timeout_s <= 0:
            raise UserError("unit_timeout_s must be > 0.")
        job_grace_period_s = _number(cfg, "job_grace_period_s")
        if job_grace_period_s < 0:
            raise UserError("job_grace_period_s must be >= 0.")
        min_band_height_px = _integer(cfg, "min_band_height_px")
        if min_band_height_px < 1:
            raise UserError("min_band_height_px must be >= 1.")
        max_input_bytes = _integer(cfg, "max_input_bytes")
        if max_input_bytes <= 0:
            raise UserError("max_input_bytes must be a positive integer.")
        max_dimension = _integer(cfg, "max_dimension")
        if max_dimension <= 0:
            raise UserError("max_dimension must be a positive integer.")
        rasterize_scale = _number(cfg, "rasterize_scale")
        if rasterize_scale <= 0:
            raise UserError("rasterize_scale must be > 0.")
        portrait_aspect = _number(cfg, "portrait_aspect")
        if portrait_aspect < 1:
            raise UserError("portrait_aspect must be >= 1 (height / width).")
        output_format = str(cfg["output_format"]).lower()
        if output_format not in OUTPUT_FORMATS:
            raise UserError("Only PNG output is supported for now.")
        storage_quota_bytes = _integer(cfg, "storage_quota_bytes")
        if storage_quota_bytes <= 0:
            raise UserError("storage_quota_bytes must be a positive integer.")
        state_key = str(cfg["state_key"]).strip()
        if not state_key:
            raise UserError("state_key must not be empty.")

        return cls(
            unit_timeout_s=unit_timeout_s,
            job_grace_period_s=job_grace_period_s,
            min_band_height_px=min_band_height_px,
            max_input_bytes=max_input_bytes,
            max_dimension=max_dimension,
            rasterize_scale=rasterize_scale,
            portrait_aspect=portrait_aspect,
            output_format=output_format,
            storage_quota_bytes=storage_quota_bytes,
            state_key=state_key,
        )


def load_engine_settings(path: Path | None, cli_overrides: Dict[str, Any] | None = None) -> EngineSettings:
    """Resolve defaults < YAML config < explicit CLI overrides."""

    effective: Dict[str, Any] = {}
    if path is not None:
        effective = deep_merge(effective, extract_engine_section(load_yaml(path)))
    if cli_overrides:
        effective = deep_merge(effective, cli_overrides)
    return EngineSettings.from_mapping(effective)
