"""Storage backends for assessment tasks."""

from assessment_api.app.storage.base import TaskStorage
from assessment_api.app.storage.memory import InMemoryTaskStorage
from assessment_api.app.storage.postgres import PostgresTaskStorage

__all__ = [
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "TaskStorage",
]
