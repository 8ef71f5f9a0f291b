from __future__ import annotations

import json

from stimlink.server.config import load_server_ctx
from stimlink.server.config.loader import config_summary, load_orchestrator_config, validate_config
from stimlink.server.config.models import OrchestratorConfig


def test_defaults_from_empty_env() -> None:
    ctx = load_server_ctx({})
    cfg = ctx.cfg
    assert cfg == OrchestratorConfig()
    assert cfg.damage_debounce_ms == 1000
    assert cfg.cadence_hz == 1
    assert cfg.dispatch_yields_to_stop is False
    assert ctx.metrics_window == 512
    assert ctx.debug_policy.enabled is False
    assert validate_config(cfg) == []


def test_env_values_are_parsed() -> None:
    cfg = load_orchestrator_config(
        {
            "STIMLINK_ENABLED": "off",
            "STIMLINK_HOST": " 127.0.0.1 ",
            "STIMLINK_PORT": "12000",
            "STIMLINK_DEBOUNCE_MS": "250",
            "STIMLINK_YIELD_TO_STOP": "yes",
            "STIMLINK_WORKERS": "2",
            "STIMLINK_SHUTDOWN_GRACE_S": "1.5",
        }
    )
    assert cfg.enabled is False
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 12000
    assert cfg.port_search_start == 12000
    assert cfg.port_search_end == 12100
    assert cfg.damage_debounce_ms == 250
    assert cfg.dispatch_yields_to_stop is True
    assert cfg.dispatch_workers == 2
    assert cfg.shutdown_grace_s == 1.5


def test_json_bundle_overrides_env() -> None:
    env = {
        "STIMLINK_PORT": "12000",
        "STIMLINK_CONFIG": json.dumps(
            {
                "port": 13000,
                "advertise_host": "192.168.1.20",
                "task_queue_size": 4,
                "dispatch_yields_to_stop": True,
                "bogus": 1,
            }
        ),
        "STIMLINK_METRICS_WINDOW": "4",
    }
    ctx = load_server_ctx(env)
    assert ctx.cfg.port == 13000
    assert ctx.cfg.advertise_host == "192.168.1.20"
    assert ctx.cfg.task_queue_size == 4
    assert ctx.cfg.dispatch_yields_to_stop is True
    assert ctx.metrics_window == 16


def test_malformed_values_fall_back() -> None:
    cfg = load_orchestrator_config(
        {
            "STIMLINK_PORT": "not-a-port",
            "STIMLINK_CADENCE_HZ": "0",
            "STIMLINK_QUEUE_SIZE": "-3",
            "STIMLINK_SEND_TIMEOUT_S": "soon",
            "STIMLINK_CONFIG": "{not json",
        }
    )
    assert cfg.port == 9999
    assert cfg.cadence_hz == 1
    assert cfg.task_queue_size == 1
    assert cfg.send_timeout_s == 5.0


def test_out_of_range_port_is_clamped() -> None:
    assert load_orchestrator_config({"STIMLINK_PORT": "80"}).port == 1024
    assert load_orchestrator_config({"STIMLINK_PORT": "70000"}).port == 65535


def test_validate_config_reports_problems() -> None:
    cfg = OrchestratorConfig(port=80, port_search_start=200, port_search_end=100, shutdown_grace_s=0.0)
    problems = validate_config(cfg)
    assert any("port must be within" in p for p in problems)
    assert any("search range is empty" in p for p in problems)
    assert any("shutdown grace" in p for p in problems)


def test_config_summary_mentions_key_values() -> None:
    summary = config_summary(OrchestratorConfig(port=12345, dispatch_yields_to_stop=True))
    assert "port=12345" in summary
    assert "debounce=1000ms" in summary
    assert "yield_to_stop=True" in summary
