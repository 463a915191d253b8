"""
Document handles and the persistence collaborator.

The mutation service never writes a handle directly. It reads the current
text through `get_text()` and hands a WriteRequest (uri + full replacement
text) to a persistence object, which applies it as one atomic replace.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from diagramflow.errors import PersistenceError

logger = logging.getLogger(__name__)


class DocumentHandle(Protocol):
    """Anything with a stable identity and readable text."""
    uri: str

    def get_text(self) -> str: ...


@dataclass(frozen=True)
class WriteRequest:
    """Replace the whole content of the document at `uri`."""
    uri: str
    full_text: str


class Persistence(Protocol):
    def apply(self, request: WriteRequest) -> None:
        """Apply the write or raise PersistenceError."""
        ...


class MemoryDocument:
    """
    In-memory text document.

    Also usable as its own persistence target, which keeps tests and the
    HTTP server free of any filesystem access.
    """

    def __init__(self, text: str, uri: str = "memory://diagram"):
        self.uri = uri
        self._text = text

    def get_text(self) -> str:
        return self._text

    def apply(self, request: WriteRequest) -> None:
        if request.uri != self.uri:
            raise PersistenceError(f"Cannot write {request.uri}: this handle is {self.uri}")
        self._text = request.full_text


class FileDocument:
    """A UTF-8 diagram file on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path).resolve()
        self.uri = self.path.as_uri()

    def get_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e


class FilePersistence:
    """
    Writes FileDocument content atomically.

    The new text goes to a temp file in the same directory and is moved over
    the target with os.replace, so readers never see a half-written file.
    """

    def __init__(self):
        self._paths: dict[str, Path] = {}

    def register(self, document: FileDocument) -> FileDocument:
        self._paths[document.uri] = document.path
        return document

    def apply(self, request: WriteRequest) -> None:
        path = self._paths.get(request.uri)
        if path is None:
            raise PersistenceError(f"Unknown document: {request.uri}")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(request.full_text)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

        logger.debug("Wrote %d bytes to %s", len(request.full_text), path)
