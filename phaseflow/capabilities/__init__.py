"""
Capabilities package - interfaces the engine consumes and default implementations.
"""

from phaseflow.capabilities.base import (
    AgentCapability,
    AgentResponse,
    Capabilities,
    DefinitionSource,
    FileSystemCapability,
    HttpCapability,
    HttpResponse,
    RecordSink,
)
from phaseflow.capabilities.agents import CallableAgent, EchoAgent
from phaseflow.capabilities.filesystem import ProjectFileSystem
from phaseflow.capabilities.http import HttpxClient

__all__ = [
    "AgentCapability",
    "AgentResponse",
    "Capabilities",
    "DefinitionSource",
    "FileSystemCapability",
    "HttpCapability",
    "HttpResponse",
    "RecordSink",
    "CallableAgent",
    "EchoAgent",
    "ProjectFileSystem",
    "HttpxClient",
]
