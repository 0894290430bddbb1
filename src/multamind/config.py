"""Configuration loading utilities for MultaMind.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable MULTAMIND_CONFIG
3. Fallback to "config/default.yaml"

Built-in defaults are merged underneath whatever file is found, and optional
overrides come from environment variables with prefix ``MULTAMIND__``
(e.g., MULTAMIND__AGENTS__API_KEY=sk-or-...).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "MULTAMIND__"

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "site_url": "http://localhost:9002",
    },
    "storage": {"data_dir": "data"},
    "auth": {
        "jwt_secret": "",
        "jwt_algorithms": ["HS256"],
        "audience": None,
    },
    "agents": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key": "",
        "timeout": 60.0,
        "app_title": "MultaMind",
        "names": {"agentA": "GPT", "agentB": "Gemini", "moderator": "Multa"},
        "moderator_prompt": (
            "You are Multa, a friendly but precise moderator AI. You compare answers "
            "from two expert AIs and explain the differences clearly. Answer in the "
            "language the user writes in."
        ),
        "plans": {
            "free": {
                "agent_a": "openai/gpt-4o-mini",
                "agent_b": "google/gemini-flash-1.5",
                "moderator": "openai/gpt-4o-mini",
            },
            "standard": {
                "agent_a": "openai/gpt-4o-mini",
                "agent_b": "google/gemini-pro-1.5",
                "moderator": "openai/gpt-4o-mini",
            },
            "pro": {
                "agent_a": "openai/gpt-4o",
                "agent_b": "google/gemini-pro-1.5",
                "moderator": "openai/gpt-4o",
            },
        },
    },
    "billing": {
        "secret_key": "",
        "webhook_secret": "",
        "grace_period_days": 3,
        "prices": {
            "pro_monthly": "",
            "pro_yearly": "",
            "standard_monthly": "",
        },
    },
    "chat": {"title_chars": 40, "title_max": 60},
}


def _parse_scalar(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix MULTAMIND__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., MULTAMIND__BILLING__SECRET_KEY -> cfg["billing"]["secret_key"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _parse_scalar(value)
    return cfg


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the service.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``MULTAMIND_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the parsed file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("MULTAMIND_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, loaded))


def agent_names(cfg: Dict[str, Any]) -> Dict[str, str]:
    """Display names per author key, used in prompts and notices."""
    names = dict(DEFAULTS["agents"]["names"])
    names.update((cfg.get("agents", {}) or {}).get("names", {}) or {})
    return names
