"""
Error taxonomy for the diagram core.

Every expected failure is a subclass of DiagramError. The public entry points
(operations.apply_ops, the mutation service) catch these and report them as
result values; only programmer errors escape as exceptions.
"""


class DiagramError(ValueError):
    """Base class for all expected diagram failures."""


class ParseError(DiagramError):
    """The serialized document is malformed or violates a model invariant."""


class ReferentialIntegrityError(DiagramError):
    """An operation references a node, edge or group id that does not exist
    (or re-uses an id that already does)."""


class OperationError(DiagramError):
    """A semantic operation is malformed (unknown op, unknown patch key)."""


class NoActiveDocumentError(DiagramError):
    """There is no document handle to operate on."""

    def __init__(self, message: str = "No active diagram document"):
        super().__init__(message)


class PersistenceError(DiagramError):
    """The persistence collaborator did not accept a write."""
