"""Provide the public `sdlc_runner` package exports."""

from __future__ import annotations

from .app import Runtime, RunSummary
from .scheduler import assess_state, get_next_action
from .task_executor import run_implementation_tasks

__all__ = ["Runtime", "RunSummary", "assess_state", "get_next_action", "run_implementation_tasks"]
