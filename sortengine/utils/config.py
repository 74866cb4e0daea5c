"""
Configuration loader for SortEngine.

Behavior:
- Explicit path first, then the path in env var `SORTENGINE_CONFIG`.
- Falls back to `sortengine/config.json` next to the package.
- Every candidate is validated against `json_schema/config.schema.json`.
- If nothing valid is found, conservative defaults are used.
"""

import copy
import json
import os
from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate

from .logger import logger

_DEFAULT_CONFIG: Dict[str, Any] = {
    "preference": "automatic",
    "providers": {
        "ollama": {"base_url": "http://localhost:11434", "model": "llama3"},
        "heuristic": {},
    },
    "orchestrator": {
        "escalation_threshold": 0.5,
        "health_check_interval": 30.0,
        "enable_degraded_mode": True,
    },
    "prototypes": {"profile": "default"},
    "confidence": {"preset": "default"},
    "embedding_cache": {"max_cache_size": 100000, "ttl_days": 90},
    "patterns": {"near_match_threshold": 0.9},
    "persistence": {"backend": "memory"},
    "log_level": "INFO",
}

_config_cache: Dict[str, Any] = {}
_schema_cache: Dict[str, Any] = {}


def _default_config_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(base_dir, "config.json")


def _schema_path() -> str:
    return os.path.join(
        os.path.dirname(__file__), "..", "json_schema", "config.schema.json"
    )


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in configuration."""
    return copy.deepcopy(_DEFAULT_CONFIG)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with sensible fallbacks.

    The first candidate that exists, parses and validates wins. Invalid
    files are logged and skipped.
    """
    global _config_cache
    if _config_cache:
        return _config_cache

    candidates = []
    if path:
        candidates.append(path)
    env_path = os.environ.get("SORTENGINE_CONFIG")
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())

    for p in candidates:
        p_abs = os.path.abspath(p)
        if not os.path.exists(p_abs):
            continue
        try:
            with open(p_abs, "r", encoding="utf-8") as f:
                cfg = json.load(f)
            validate_config(cfg)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {p_abs}: {e}")
            continue
        except (ValidationError, ValueError) as e:
            logger.warning(f"Rejected config {p_abs}: {e}")
            continue
        except OSError as e:
            logger.warning(f"Failed to read config {p_abs}: {e}")
            continue
        _config_cache = cfg
        logger.info(f"Configuration loaded from {p_abs}")
        return cfg

    logger.warning(
        "No config found; using default conservative configuration. "
        "Set SORTENGINE_CONFIG to customize."
    )
    _config_cache = default_config()
    return _config_cache


def clear_config_cache() -> None:
    """Forget the loaded configuration (next load re-reads disk)."""
    global _config_cache
    _config_cache = {}


def _load_schema() -> Dict[str, Any]:
    if not _schema_cache:
        with open(_schema_path(), "r", encoding="utf-8") as f:
            _schema_cache.update(json.load(f))
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using the package JSON Schema.

    Raises:
        ValueError: If cfg is not a dict
        jsonschema.ValidationError: On schema violations
    """
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a JSON object/dict")
    validate(instance=cfg, schema=_load_schema())


if __name__ == "__main__":
    print(json.dumps(load_config(), indent=2))
