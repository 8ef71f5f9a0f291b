"""Orchestration core and control-channel transport."""
