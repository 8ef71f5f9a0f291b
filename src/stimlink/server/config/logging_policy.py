from __future__ import annotations

"""Central debug/logging policy plumbing for the stimlink server."""

import json
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEBUG_ENV = "STIMLINK_DEBUG"


@dataclass(frozen=True)
class LoggingToggles:
    log_ticks: bool = False
    log_sends: bool = False
    log_bindings: bool = False
    log_stop: bool = False


@dataclass(frozen=True)
class DebugPolicy:
    enabled: bool
    logging: LoggingToggles


_LOG_FLAG_MAP: dict[str, Iterable[str]] = {
    "ticks": ("log_ticks",),
    "sends": ("log_sends",),
    "bindings": ("log_bindings",),
    "stop": ("log_stop",),
    "all": ("log_ticks", "log_sends", "log_bindings", "log_stop"),
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _coerce_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        val = value.strip().lower()
        if val in _TRUTHY:
            return True
        if val in _FALSY:
            return False
    return default


def _split_flags(raw: object) -> set[str]:
    result: set[str] = set()
    items: Iterable[object]
    if raw is None:
        return result
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, Iterable):
        items = raw
    else:
        return result
    for item in items:
        token = str(item).strip().lower()
        if token:
            result.add(token)
    return result


def _load_debug_config(env: Mapping[str, str]) -> tuple[bool, dict[str, object]]:
    raw = env.get(DEBUG_ENV)
    if raw is None:
        return False, {}
    raw_str = raw.strip()
    if raw_str.lower() in _FALSY:
        return False, {}
    if raw_str.lower() in _TRUTHY:
        return True, {}
    try:
        parsed = json.loads(raw_str)
        if isinstance(parsed, dict):
            enabled = _coerce_bool(parsed.get("enabled", True), True)
            return enabled, parsed
        if isinstance(parsed, (list, tuple)):
            return True, {"flags": parsed}
    except Exception:
        logger.debug("Failed to parse %s JSON; treating as flag list", DEBUG_ENV, exc_info=True)
    return True, {"flags": raw_str}


def load_debug_policy(env: Optional[Mapping[str, str]] = None) -> DebugPolicy:
    env = os.environ if env is None else env
    enabled, cfg = _load_debug_config(env)

    flag_source = cfg.get("flags") if isinstance(cfg, dict) else []
    flags = _split_flags(flag_source)

    log_kwargs = {name: False for name in LoggingToggles.__annotations__.keys()}
    for flag, attrs in _LOG_FLAG_MAP.items():
        if flag in flags:
            for attr in attrs:
                log_kwargs[attr] = True

    return DebugPolicy(enabled=enabled, logging=LoggingToggles(**log_kwargs))


def apply_debug_policy(policy: DebugPolicy, *, root: str = "stimlink") -> None:
    """Raise the package logger to DEBUG when the policy asks for it."""

    if policy.enabled:
        logging.getLogger(root).setLevel(logging.DEBUG)


__all__ = [
    "DEBUG_ENV",
    "DebugPolicy",
    "LoggingToggles",
    "apply_debug_policy",
    "load_debug_policy",
]
