# functions/utils/common.py
"""
common utility helpers used across the CV document service.

This includes:
- YAML loading (parameters.yaml / prompts.yaml / credentials.yaml)
- Cached access to the full parameters.yaml and its sub-sections
- Engine parameter mapping for the generation gateway
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml
import structlog

logger = structlog.get_logger().bind(module="utils.common")

# Root of project (two dirs up from utils/)
ROOT = Path(__file__).resolve().parents[2]
PARAMETERS_DIR = ROOT / "parameters"

# Simple cache for full parameters.yaml
_PARAMETERS_CACHE: Dict[str, Any] | None = None

# ---------------------------------------------------------------------------
# yaml reader
# ---------------------------------------------------------------------------

def load_yaml_dict(path: str | Path) -> dict[str, Any]:
    """
    Load a YAML file into a dict. Accepts either a string path or a Path object.
    Returns {} on any error, and logs via structlog.
    """
    p = Path(path)
    if not p.exists():
        logger.warning("yaml_file_not_found", path=str(p))
        return {}

    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("yaml_file_load_error", path=str(p), error=str(exc))
        return {}

    if not isinstance(data, dict):
        logger.error("yaml_file_not_a_mapping", path=str(p), root_type=type(data).__name__)
        return {}

    return data

# ---------------------------------------------------------------------------
# Full parameters.yaml loader (cached)
# ---------------------------------------------------------------------------

def load_all_parameters() -> Dict[str, Any]:
    """
    Load and cache the entire parameters/parameters.yaml file.

    The PARAMETERS_YAML environment variable may point to another file
    (useful for deployments that mount their own configuration).
    """
    global _PARAMETERS_CACHE
    if _PARAMETERS_CACHE is not None:
        return _PARAMETERS_CACHE

    params_path = Path(os.environ.get("PARAMETERS_YAML") or PARAMETERS_DIR / "parameters.yaml")
    _PARAMETERS_CACHE = load_yaml_dict(params_path)
    return _PARAMETERS_CACHE


def reset_parameters_cache() -> None:
    """Drop the cached parameters (tests and config reloads)."""
    global _PARAMETERS_CACHE
    _PARAMETERS_CACHE = None


def _section(name: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    cfg = (params if params is not None else load_all_parameters()).get(name) or {}
    if not isinstance(cfg, dict):
        logger.warning("parameters_section_not_dict", section=name, raw=cfg)
        return {}
    return cfg


def load_generation_params(params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return the `generation` block of parameters.yaml."""
    return _section("generation", params)


def load_validation_params(params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return the `validation` block of parameters.yaml."""
    return _section("validation", params)


def load_store_params(params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return the `store` block of parameters.yaml with MONGO_URI applied."""
    cfg = dict(_section("store", params))
    env_uri = os.environ.get("MONGO_URI")
    if env_uri:
        cfg["mongo_uri"] = env_uri
    return cfg


def map_engine_params(gen_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Map parameters.yaml → LLM client keyword arguments."""
    params: Dict[str, Any] = {}

    if "model_name" in gen_cfg:
        params["model"] = gen_cfg["model_name"]
    if "temperature" in gen_cfg:
        params["temperature"] = float(gen_cfg["temperature"])
    if "top_p" in gen_cfg:
        params["top_p"] = float(gen_cfg["top_p"])
    if "max_tokens" in gen_cfg:
        params["max_output_tokens"] = int(gen_cfg["max_tokens"])
    if "timeout_seconds" in gen_cfg:
        params["timeout_seconds"] = int(gen_cfg["timeout_seconds"])

    return params


__all__ = [
    "ROOT",
    "PARAMETERS_DIR",
    "load_yaml_dict",
    "load_all_parameters",
    "reset_parameters_cache",
    "load_generation_params",
    "load_validation_params",
    "load_store_params",
    "map_engine_params",
]
