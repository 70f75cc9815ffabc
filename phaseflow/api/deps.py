"""
Shared runtime objects for the API layer.
"""

from phaseflow.capabilities import Capabilities, EchoAgent, HttpxClient, ProjectFileSystem
from phaseflow.config import settings
from phaseflow.engine.engine import WorkflowEngine
from phaseflow.engine.events import EventBus
from phaseflow.storage.memory import definition_storage, run_record_storage


http_client = HttpxClient()

event_bus = EventBus()

# Global engine instance
engine = WorkflowEngine(
    definitions=definition_storage,
    capabilities=Capabilities(
        agent=EchoAgent(),
        filesystem=ProjectFileSystem(settings.PROJECT_ROOT),
        http=http_client,
    ),
    event_bus=event_bus,
    record_sink=run_record_storage,
)
