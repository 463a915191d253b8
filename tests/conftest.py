"""Shared fixtures: deterministic ids, sample documents and an in-memory service."""

from __future__ import annotations

import itertools

import pytest

from diagramflow.models import (
    DiagramDocument,
    DiagramMeta,
    make_edge,
    make_group,
    make_node,
    serialize_document,
)
from diagramflow_server.diagram_service import DiagramService, EditSession
from diagramflow_server.documents import MemoryDocument

FIXED_TIME = "2025-01-01T00:00:00.000Z"


def make_id_generator(prefix: str = "id"):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


def make_clock():
    counter = itertools.count(1)
    return lambda: f"2025-01-02T00:00:{next(counter):02d}.000Z"


def make_document(nodes=(), edges=(), groups=None, **meta) -> DiagramDocument:
    meta.setdefault("title", "Test Diagram")
    meta.setdefault("created", FIXED_TIME)
    meta.setdefault("modified", FIXED_TIME)
    return DiagramDocument(
        meta=DiagramMeta(**meta),
        nodes=list(nodes),
        edges=list(edges),
        groups=list(groups) if groups is not None else None,
    )


@pytest.fixture
def id_generator():
    return make_id_generator()


@pytest.fixture
def empty_doc() -> DiagramDocument:
    return make_document(groups=[])


@pytest.fixture
def chain_doc() -> DiagramDocument:
    """Three positioned nodes a -> b -> c and one group holding c."""
    return make_document(
        nodes=[
            make_node("a", "API", x=100, y=100),
            make_node("b", "Service", x=100, y=300),
            make_node("c", "Database", x=100, y=500, group="g1"),
        ],
        edges=[
            make_edge("e1", "a", "b"),
            make_edge("e2", "b", "c"),
        ],
        groups=[make_group("g1", "Storage", x=80, y=452)],
    )


@pytest.fixture
def memory_doc(chain_doc) -> MemoryDocument:
    return MemoryDocument(serialize_document(chain_doc))


@pytest.fixture
def session(memory_doc) -> EditSession:
    return EditSession(memory_doc)


@pytest.fixture
def service(memory_doc) -> DiagramService:
    return DiagramService(memory_doc, id_generator=make_id_generator("new"), clock=make_clock())
