"""Application bootstrap: the orchestrator facade, host adapters and CLI."""

from .orchestrator import Orchestrator, OrchestratorState, OrchestratorStatus

__all__ = ["Orchestrator", "OrchestratorState", "OrchestratorStatus"]
