"""
Storage package - In-memory storage for definitions and run records.
"""

from phaseflow.storage.memory import (
    DefinitionStorage,
    RunRecordStorage,
    definition_storage,
    run_record_storage,
)

__all__ = [
    "DefinitionStorage",
    "RunRecordStorage",
    "definition_storage",
    "run_record_storage",
]
