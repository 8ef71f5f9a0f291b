"""Shared configuration for the stimlink server."""

from .loader import config_summary, load_orchestrator_config, load_server_ctx, validate_config
from .logging_policy import DebugPolicy, LoggingToggles, load_debug_policy
from .models import OrchestratorConfig, ServerCtx

__all__ = [
    "DebugPolicy",
    "LoggingToggles",
    "OrchestratorConfig",
    "ServerCtx",
    "config_summary",
    "load_debug_policy",
    "load_orchestrator_config",
    "load_server_ctx",
    "validate_config",
]
