from .base import JobStore
from .memory import InMemoryJobStore
from .postgres import PostgresJobStore

__all__ = ["JobStore", "InMemoryJobStore", "PostgresJobStore"]
