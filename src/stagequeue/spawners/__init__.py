from stagequeue.spawners.base import (
    AgentSpawner,
    SessionInfo,
    SessionMonitor,
    SpawnResult,
    parse_timestamp,
)
from stagequeue.spawners.fallback import CallbackSpawner, FallbackSpawner
from stagequeue.spawners.openai_sdk import OpenAISpawner
from stagequeue.spawners.openclaw import OpenClawSessionMonitor, OpenClawSpawner

__all__ = [
    "AgentSpawner",
    "CallbackSpawner",
    "FallbackSpawner",
    "OpenAISpawner",
    "OpenClawSessionMonitor",
    "OpenClawSpawner",
    "SessionInfo",
    "SessionMonitor",
    "SpawnResult",
    "parse_timestamp",
]
