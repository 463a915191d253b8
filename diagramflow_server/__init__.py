"""
DiagramFlow server - mutation service, persistence and the HTTP API.
"""

from .documents import DocumentHandle, FileDocument, FilePersistence, MemoryDocument, WriteRequest
from .diagram_service import DiagramService, EditSession, MutationResult

__all__ = [
    "DocumentHandle",
    "FileDocument",
    "FilePersistence",
    "MemoryDocument",
    "WriteRequest",
    "DiagramService",
    "EditSession",
    "MutationResult",
]
