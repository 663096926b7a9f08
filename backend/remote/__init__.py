"""Client for the remote agent service."""

from remote.client import AgentServiceClient, RunStream

__all__ = [
    "AgentServiceClient",
    "RunStream",
]
