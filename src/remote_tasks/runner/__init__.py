"""Agent runner: claims one task at a time and keeps the store in sync while it runs."""

from remote_tasks.runner.agent import AgentRunner, RunnerState, RunnerSummary

__all__ = [
    "AgentRunner",
    "RunnerState",
    "RunnerSummary",
]
