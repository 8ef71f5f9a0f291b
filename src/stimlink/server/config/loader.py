"""Environment loader for the orchestrator configuration.

The loader reads the environment once and returns frozen dataclasses; it never
mutates the process environment. Individual ``STIMLINK_*`` variables are read
first and the ``STIMLINK_CONFIG`` JSON bundle, when present, overrides them.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Mapping, Optional

from stimlink.server.config.logging_policy import load_debug_policy
from stimlink.server.config.models import OrchestratorConfig, ServerCtx

logger = logging.getLogger(__name__)

PORT_MIN = 1024
PORT_MAX = 65535


# ---- Helpers -----------------------------------------------------------------

def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    if v is None:
        return default
    v = v.strip()
    return v if v != "" else default


def _cfg_bool(value: object, default: bool) -> bool:
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        val = value.strip().lower()
        if val in {"1", "true", "yes", "on"}:
            return True
        if val in {"0", "false", "no", "off", ""}:
            return False
    return bool(default)


def _cfg_int(value: object, default: int) -> int:
    if value is None:
        return int(default)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except Exception:
            return int(default)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except Exception:
            logger.debug("Ignoring malformed integer %r", value)
            return int(default)
    return int(default)


def _cfg_float(value: object, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        return float(int(value))
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except Exception:
            logger.debug("Ignoring malformed float %r", value)
            return float(default)
    return float(default)


def _load_json_config(env: Mapping[str, str], name: str) -> dict[str, object]:
    raw = env.get(name)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except Exception:
        logger.warning("Failed to parse %s; ignoring", name, exc_info=True)
        return {}
    if isinstance(data, dict):
        return data
    logger.warning("%s must be a JSON object; ignoring", name)
    return {}


def _clamp_port(port: int) -> int:
    return min(max(int(port), PORT_MIN), PORT_MAX)


# ---- Loaders -----------------------------------------------------------------

_ENV_FIELDS: dict[str, str] = {
    "STIMLINK_ENABLED": "enabled",
    "STIMLINK_HOST": "host",
    "STIMLINK_PORT": "port",
    "STIMLINK_PORT_SEARCH_END": "port_search_end",
    "STIMLINK_ADVERTISE_HOST": "advertise_host",
    "STIMLINK_DEBOUNCE_MS": "damage_debounce_ms",
    "STIMLINK_CADENCE_HZ": "cadence_hz",
    "STIMLINK_SHUTDOWN_GRACE_S": "shutdown_grace_s",
    "STIMLINK_YIELD_TO_STOP": "dispatch_yields_to_stop",
    "STIMLINK_QUEUE_SIZE": "task_queue_size",
    "STIMLINK_WORKERS": "dispatch_workers",
    "STIMLINK_SEND_TIMEOUT_S": "send_timeout_s",
    "STIMLINK_HEARTBEAT_S": "heartbeat_s",
}


def load_orchestrator_config(env: Optional[Mapping[str, str]] = None) -> OrchestratorConfig:
    env = os.environ if env is None else env
    raw: dict[str, object] = {}
    for name, field_name in _ENV_FIELDS.items():
        value = _env_str(env, name)
        if value is not None:
            raw[field_name] = value
    bundle = _load_json_config(env, "STIMLINK_CONFIG")
    for key, value in bundle.items():
        if key in OrchestratorConfig.__dataclass_fields__:
            raw[key] = value
        else:
            logger.warning("STIMLINK_CONFIG: unknown key %r ignored", key)

    d = OrchestratorConfig()
    port = _clamp_port(_cfg_int(raw.get("port"), d.port))
    search_end = _clamp_port(_cfg_int(raw.get("port_search_end"), max(d.port_search_end, port + 100)))
    advertise = raw.get("advertise_host")
    return OrchestratorConfig(
        enabled=_cfg_bool(raw.get("enabled"), d.enabled),
        host=str(raw.get("host") or d.host),
        port=port,
        port_search_start=port,
        port_search_end=max(port, search_end),
        advertise_host=str(advertise) if advertise else None,
        damage_debounce_ms=max(0, _cfg_int(raw.get("damage_debounce_ms"), d.damage_debounce_ms)),
        cadence_hz=max(1, _cfg_int(raw.get("cadence_hz"), d.cadence_hz)),
        shutdown_grace_s=max(0.0, _cfg_float(raw.get("shutdown_grace_s"), d.shutdown_grace_s)),
        dispatch_yields_to_stop=_cfg_bool(raw.get("dispatch_yields_to_stop"), d.dispatch_yields_to_stop),
        task_queue_size=max(1, _cfg_int(raw.get("task_queue_size"), d.task_queue_size)),
        dispatch_workers=max(1, _cfg_int(raw.get("dispatch_workers"), d.dispatch_workers)),
        send_timeout_s=max(0.0, _cfg_float(raw.get("send_timeout_s"), d.send_timeout_s)),
        heartbeat_s=max(1.0, _cfg_float(raw.get("heartbeat_s"), d.heartbeat_s)),
    )


def load_server_ctx(env: Optional[Mapping[str, str]] = None) -> ServerCtx:
    """Build a `ServerCtx` by reading environment once."""

    env = os.environ if env is None else env
    window = max(16, _cfg_int(_env_str(env, "STIMLINK_METRICS_WINDOW"), 512))
    return ServerCtx(
        cfg=load_orchestrator_config(env),
        debug_policy=load_debug_policy(env),
        metrics_window=window,
    )


def validate_config(cfg: OrchestratorConfig) -> list[str]:
    """Return human-readable problems with ``cfg``; empty when valid."""

    problems: list[str] = []
    if not PORT_MIN <= cfg.port <= PORT_MAX:
        problems.append(f"port must be within {PORT_MIN}-{PORT_MAX} (got {cfg.port})")
    if cfg.port_search_end < cfg.port_search_start:
        problems.append("port search range is empty")
    if cfg.cadence_hz < 1:
        problems.append("cadence must be at least one send per second")
    if cfg.dispatch_workers < 1:
        problems.append("at least one dispatch worker is required")
    if cfg.shutdown_grace_s <= 0:
        problems.append("shutdown grace of 0s cancels in-flight ticks immediately")
    return problems


def config_summary(cfg: OrchestratorConfig) -> str:
    return (
        f"enabled={cfg.enabled} host={cfg.host} port={cfg.port} "
        f"debounce={cfg.damage_debounce_ms}ms cadence={cfg.cadence_hz}/s "
        f"yield_to_stop={cfg.dispatch_yields_to_stop} workers={cfg.dispatch_workers} "
        f"queue={cfg.task_queue_size}"
    )


__all__ = [
    "config_summary",
    "load_orchestrator_config",
    "load_server_ctx",
    "validate_config",
]
