"""YAML configuration for the dispatch core.

Example ``botchain.yml``::

    dispatch:
      timeout_seconds: 30
      max_concurrency: 64
    access:
      default: deny
      rules:
        - user_id: 42
          decision: deny
        - any: true
          decision: allow
    ratelimit:
      enabled: true
      capacity: 3
      refill_amount: 1
      refill_interval_seconds: 1
      key: scope
    session:
      backend: sqlite
      path: .botchain/sessions.sqlite3
      sweep_interval_seconds: 60
    dialogue:
      initial_state: start
      ttl_seconds: 86400
    log:
      path: .botchain/botchain.log
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, cast

import yaml

from .exceptions import ConfigError

logger = logging.getLogger("botchain.core.config")

CONFIG_FILENAME = "botchain.yml"
OVERRIDE_FILENAME = "botchain.override.yml"

SESSION_BACKENDS = ("memory", "file", "sqlite")
RATELIMIT_KEYS = ("scope", "chat", "user", "global")

DEFAULT_CONFIG: Dict[str, Any] = {
    "dispatch": {
        "timeout_seconds": None,
        "max_concurrency": None,
    },
    "access": {
        "default": "allow",
        "rules": [],
    },
    "ratelimit": {
        "enabled": False,
        "capacity": 30,
        "refill_amount": 1,
        "refill_interval_seconds": 1.0,
        "key": "scope",
        "max_tracked_keys": None,
    },
    "session": {
        "backend": "memory",
        "path": None,
        "sweep_interval_seconds": 60.0,
    },
    "dialogue": {
        "initial_state": "start",
        "ttl_seconds": None,
        "lock_timeout_seconds": None,
    },
    "log": {
        "path": ".botchain/botchain.log",
        "level": "INFO",
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 3,
    },
}


@dataclasses.dataclass(frozen=True)
class LogConfig:
    path: Path
    level: int
    max_bytes: int
    backup_count: int


@dataclasses.dataclass(frozen=True)
class DispatchConfig:
    timeout_seconds: Optional[float]
    max_concurrency: Optional[int]


@dataclasses.dataclass(frozen=True)
class AccessConfig:
    default: str
    rules: tuple[Dict[str, Any], ...]


@dataclasses.dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool
    capacity: int
    refill_amount: int
    refill_interval_seconds: float
    key: str
    max_tracked_keys: Optional[int]


@dataclasses.dataclass(frozen=True)
class SessionConfig:
    backend: str
    path: Optional[Path]
    sweep_interval_seconds: float


@dataclasses.dataclass(frozen=True)
class DialogueConfig:
    initial_state: str
    ttl_seconds: Optional[float]
    lock_timeout_seconds: Optional[float]


@dataclasses.dataclass(frozen=True)
class BotchainConfig:
    root: Path
    dispatch: DispatchConfig
    access: AccessConfig
    ratelimit: RateLimitConfig
    session: SessionConfig
    dialogue: DialogueConfig
    log: LogConfig


def _merge_defaults(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = cast(Dict[str, Any], json.loads(json.dumps(base)))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    return value


def _positive_int(value: Any, key: str, *, optional: bool = False) -> Optional[int]:
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{key} must be a positive integer")
    return value


def _positive_float(
    value: Any, key: str, *, optional: bool = False
) -> Optional[float]:
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number")
    return float(value)


def _choice(value: Any, key: str, options: tuple[str, ...]) -> str:
    token = str(value or "").strip().lower()
    if token not in options:
        raise ConfigError(f"{key} must be one of {', '.join(options)}")
    return token


def _parse_log_level(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    level = logging.getLevelName(str(value or "").strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"log.level is not a logging level: {value!r}")
    return level


def parse_config(raw: Mapping[str, Any], *, root: Path) -> BotchainConfig:
    """Validate ``raw`` (merged over defaults) into a :class:`BotchainConfig`."""

    cfg = _merge_defaults(DEFAULT_CONFIG, raw)

    dispatch_cfg = _section(cfg, "dispatch")
    dispatch = DispatchConfig(
        timeout_seconds=_positive_float(
            dispatch_cfg.get("timeout_seconds"),
            "dispatch.timeout_seconds",
            optional=True,
        ),
        max_concurrency=_positive_int(
            dispatch_cfg.get("max_concurrency"),
            "dispatch.max_concurrency",
            optional=True,
        ),
    )

    access_cfg = _section(cfg, "access")
    rules_raw = access_cfg.get("rules") or []
    if not isinstance(rules_raw, list):
        raise ConfigError("access.rules must be a list")
    access = AccessConfig(
        default=_choice(access_cfg.get("default"), "access.default", ("allow", "deny")),
        rules=tuple(dict(rule) if isinstance(rule, dict) else rule for rule in rules_raw),
    )

    ratelimit_cfg = _section(cfg, "ratelimit")
    ratelimit = RateLimitConfig(
        enabled=bool(ratelimit_cfg.get("enabled", False)),
        capacity=cast(int, _positive_int(ratelimit_cfg.get("capacity"), "ratelimit.capacity")),
        refill_amount=cast(
            int, _positive_int(ratelimit_cfg.get("refill_amount"), "ratelimit.refill_amount")
        ),
        refill_interval_seconds=cast(
            float,
            _positive_float(
                ratelimit_cfg.get("refill_interval_seconds"),
                "ratelimit.refill_interval_seconds",
            ),
        ),
        key=_choice(ratelimit_cfg.get("key"), "ratelimit.key", RATELIMIT_KEYS),
        max_tracked_keys=_positive_int(
            ratelimit_cfg.get("max_tracked_keys"),
            "ratelimit.max_tracked_keys",
            optional=True,
        ),
    )

    session_cfg = _section(cfg, "session")
    backend = _choice(session_cfg.get("backend"), "session.backend", SESSION_BACKENDS)
    path_value = session_cfg.get("path")
    if backend != "memory":
        if not isinstance(path_value, str) or not path_value.strip():
            raise ConfigError(f"session.path is required for the {backend} backend")
    session = SessionConfig(
        backend=backend,
        path=(root / path_value) if isinstance(path_value, str) and path_value else None,
        sweep_interval_seconds=cast(
            float,
            _positive_float(
                session_cfg.get("sweep_interval_seconds"),
                "session.sweep_interval_seconds",
            ),
        ),
    )

    dialogue_cfg = _section(cfg, "dialogue")
    initial_state = dialogue_cfg.get("initial_state")
    if not isinstance(initial_state, str) or not initial_state.strip():
        raise ConfigError("dialogue.initial_state must be a non-empty string")
    dialogue = DialogueConfig(
        initial_state=initial_state.strip(),
        ttl_seconds=_positive_float(
            dialogue_cfg.get("ttl_seconds"), "dialogue.ttl_seconds", optional=True
        ),
        lock_timeout_seconds=_positive_float(
            dialogue_cfg.get("lock_timeout_seconds"),
            "dialogue.lock_timeout_seconds",
            optional=True,
        ),
    )

    log_cfg = _section(cfg, "log")
    log_path = log_cfg.get("path")
    if not isinstance(log_path, str) or not log_path.strip():
        raise ConfigError("log.path must be a string path")
    log = LogConfig(
        path=root / log_path,
        level=_parse_log_level(log_cfg.get("level")),
        max_bytes=cast(int, _positive_int(log_cfg.get("max_bytes"), "log.max_bytes")),
        backup_count=int(log_cfg.get("backup_count") or 0),
    )

    return BotchainConfig(
        root=root,
        dispatch=dispatch,
        access=access,
        ratelimit=ratelimit,
        session=session,
        dialogue=dialogue,
        log=log,
    )


def load_config(root: Path, *, path: Optional[Path] = None) -> BotchainConfig:
    """Load ``botchain.yml`` (plus ``botchain.override.yml``) from ``root``."""

    root = Path(root)
    base_path = path or (root / CONFIG_FILENAME)
    merged = _load_yaml_dict(base_path)
    override_path = root / OVERRIDE_FILENAME
    try:
        override = _load_yaml_dict(override_path)
    except ConfigError as exc:
        raise ConfigError(
            f"Invalid override config {override_path}; fix or delete it: {exc}"
        ) from exc
    if override:
        logger.info("Applying config overrides from %s", override_path)
        merged = _merge_defaults(merged, override)
    return parse_config(merged, root=root)
