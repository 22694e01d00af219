"""Adapters for external dependencies.

Provides abstraction layers for:
- Database access (SQL-agnostic)
- Artifact storage (filesystem/cloud-agnostic)
- Artifact signing (signature provider-agnostic)
- Outbound notification events
"""

from signing.adapters.database_adapter import DatabaseAdapter
from signing.adapters.sqlite_adapter import SQLiteAdapter
from signing.adapters.storage_adapter import ArtifactStore
from signing.adapters.filesystem_storage_adapter import FilesystemArtifactStore
from signing.adapters.signature_adapter import ArtifactSigner, PassthroughSigner
from signing.adapters.event_sink import EventSink, InMemoryEventSink, LoggingEventSink

__all__ = [
    "DatabaseAdapter",
    "SQLiteAdapter",
    "ArtifactStore",
    "FilesystemArtifactStore",
    "ArtifactSigner",
    "PassthroughSigner",
    "EventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
]
