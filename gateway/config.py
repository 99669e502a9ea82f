"""
mintsaga — Environment Config Loader

Three-tier configuration loading:
  1. Base file (mintsaga.yaml)
  2. Per-environment overlay files (config/{MINTSAGA_ENV}.yaml merged over base)
  3. Environment variable overrides (MINTSAGA_ prefixed)

Usage:
    from gateway.config import load_settings, get_config_value

    settings = load_settings("mintsaga.yaml", env="prod")
    settings.coordinator.signature_timeout_s   # 30.0

    interval = get_config_value("reconcile.interval_s", cfg, default=3.0)

Environment variables:
    MINTSAGA_ENV                 — active profile (dev, staging, prod)
    MINTSAGA_CONFIG_DIR          — directory for overlay files (default: config/)
    MINTSAGA_<SECTION>__<KEY>    — overrides, e.g. MINTSAGA_RECONCILE__MAX_ATTEMPTS=90

Read directly by the runtime and never merged into the config tree:
    MINTSAGA_SIGNER_KEY          — private key for the local signing agent
    MINTSAGA_WORKER_MODE         — inline | thread
    MINTSAGA_DB                  — rollback ledger path (default: in-memory)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("mintsaga.config")

ENV_PREFIX = "MINTSAGA_"
_META_VARS = {
    "MINTSAGA_ENV", "MINTSAGA_CONFIG_DIR", "MINTSAGA_VERSION", "MINTSAGA_CONFIG",
    "MINTSAGA_SIGNER_KEY", "MINTSAGA_WORKER_MODE", "MINTSAGA_DB",
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml next to the working directory or
    next to the base file. Returns empty dict if not found.
    """
    env = env or os.environ.get("MINTSAGA_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("MINTSAGA_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load MINTSAGA_ prefixed environment variables as config overrides.

    Naming convention (double underscore separates levels, so keys may
    themselves contain underscores):
      MINTSAGA_SECTION__KEY=value            → {"section": {"key": value}}
      MINTSAGA_CHANNEL__BASE_DELAY_MS=500    → {"channel": {"base_delay_ms": 500}}

    Values are YAML-parsed (numbers, booleans, lists).
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue

        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue

        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value

        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "mintsaga.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (MINTSAGA_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (mintsaga.yaml)
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("MINTSAGA_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("channel.max_retries", cfg, 5)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class BackendSettings:
    base_url: str = "http://localhost:8000"
    timeout_s: float = 10.0
    auth_token: str | None = None


@dataclass
class LedgerSettings:
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 50312
    token_address: str = ""        # fungible token the grant is denominated in
    collection_address: str = ""   # conversion contract (spender of the grant)
    timeout_s: float = 10.0
    receipt_poll_s: float = 2.0


@dataclass
class ChannelSettings:
    url: str = "ws://localhost:8000/ws"
    base_delay_ms: float = 3000.0
    cap_ms: float = 30000.0
    max_retries: int = 5
    ping_interval_s: float = 30.0


@dataclass
class CoordinatorSettings:
    signature_timeout_s: float = 30.0
    sweep_interval_s: float = 1.0
    max_workers: int = 8
    recent_feed_size: int = 20


@dataclass
class ReconcileSettings:
    interval_s: float = 3.0
    max_attempts: int = 60


@dataclass
class SessionSettings:
    required_chain_id: int = 50312
    chain_poll_s: float = 2.0


@dataclass
class Settings:
    backend: BackendSettings = field(default_factory=BackendSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    log_level: str = "INFO"
    active_env: str = "default"


def _section(cls, raw: Any):
    """Build a settings section, ignoring keys the dataclass does not declare."""
    if not isinstance(raw, dict):
        return cls()
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**known)


def load_settings(
    base_path: str | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> Settings:
    """Load the merged config and return it as a typed Settings tree."""
    base_path = base_path or os.environ.get("MINTSAGA_CONFIG", "mintsaga.yaml")
    cfg = load_config(
        base_path=base_path,
        env=env,
        config_dir=config_dir,
        include_env_vars=include_env_vars,
    )
    return Settings(
        backend=_section(BackendSettings, cfg.get("backend")),
        ledger=_section(LedgerSettings, cfg.get("ledger")),
        channel=_section(ChannelSettings, cfg.get("channel")),
        coordinator=_section(CoordinatorSettings, cfg.get("coordinator")),
        reconcile=_section(ReconcileSettings, cfg.get("reconcile")),
        session=_section(SessionSettings, cfg.get("session")),
        log_level=str(get_config_value("logging.level", cfg, "INFO")),
        active_env=cfg["_active_env"],
    )
