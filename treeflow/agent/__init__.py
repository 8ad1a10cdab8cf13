"""Agent process launching."""

from treeflow.agent.spawner import (
    AgentConfig,
    AgentError,
    AgentResult,
    CliAgentSpawner,
    OutputChunk,
    SpawnFailedError,
    Spawner,
)

__all__ = [
    "AgentConfig",
    "AgentError",
    "AgentResult",
    "CliAgentSpawner",
    "OutputChunk",
    "SpawnFailedError",
    "Spawner",
]
