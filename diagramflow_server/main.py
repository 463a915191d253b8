"""
DiagramFlow Backend - FastAPI Application

This is the HTTP entry point for the diagram mutation core.
It provides:
- Document lifecycle (new in-memory or file-backed, open from disk)
- Semantic operation batches, the same shape AI-agent tools send
- Moves, reconnects, auto-layout and sort
- Undo/redo and validation
- CORS configuration for local frontend development
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from diagramflow import (
    LayoutDirection,
    ParseError,
    PersistenceError,
    create_empty_document,
    generate_id,
    generate_agent_context,
    parse_document,
    serialize_document,
    validate_document,
    validation_summary,
)
from diagramflow.models import document_to_json_dict

from .config import Settings
from .diagram_service import DiagramService, EditSession, MutationResult
from .documents import FileDocument, FilePersistence, MemoryDocument, WriteRequest

logger = logging.getLogger(__name__)


class ServerState:
    """The open document, its history and the service writing to it."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.session = EditSession()
        self.service: Optional[DiagramService] = None

    def open(self, handle, persistence) -> None:
        self.service = DiagramService(persistence, history_max=self.settings.history_max)
        self.session.set_active(handle)


def get_state(request: Request) -> ServerState:
    return request.app.state.diagram


def require_open(state: ServerState = Depends(get_state)) -> ServerState:
    if state.service is None or state.session.active is None:
        raise HTTPException(status_code=404, detail="No active diagram document")
    return state


def _respond(result: MutationResult) -> dict:
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    response: dict[str, Any] = {"success": True, "changed": result.changed}
    if result.document is not None:
        response["diagram"] = document_to_json_dict(result.document)
    return response


# --- Request models ---

class NewDiagramRequest(BaseModel):
    title: str = "Untitled Diagram"
    file_path: Optional[str] = None


class OpenDiagramRequest(BaseModel):
    file_path: str


class OpsRequest(BaseModel):
    ops: list[dict[str, Any]]


class PositionRequest(BaseModel):
    x: float
    y: float


class NodeMove(BaseModel):
    id: str
    x: float
    y: float


class MoveNodesRequest(BaseModel):
    moves: list[NodeMove] = Field(min_length=1)


class ReconnectRequest(BaseModel):
    source: str
    target: str


class AutoLayoutRequest(BaseModel):
    direction: Optional[LayoutDirection] = None
    force: bool = False  # Also move pinned nodes and unpin them


class SortRequest(BaseModel):
    direction: Optional[LayoutDirection] = None
    group_id: Optional[str] = None


# --- App factory ---

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan handler for startup/shutdown tasks."""
        logger.info("DiagramFlow API ready (history=%d)", settings.history_max)
        yield
        logger.info("DiagramFlow API shutting down")

    app = FastAPI(
        title="DiagramFlow API",
        description="Document mutation and auto-layout API for DiagramFlow diagrams",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.diagram = ServerState(settings)

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Health Check ---

    @app.get("/api/health")
    async def health_check(state: ServerState = Depends(get_state)):
        """Health check endpoint."""
        active = state.session.active
        return {"status": "ok", "document": active.uri if active is not None else None}

    # --- Document lifecycle ---

    @app.post("/api/diagram/new")
    async def new_diagram(request: NewDiagramRequest, state: ServerState = Depends(get_state)):
        """Create a new empty diagram, in memory or at `file_path`."""
        doc = create_empty_document(request.title)
        text = serialize_document(doc)
        if request.file_path:
            persistence = FilePersistence()
            handle = persistence.register(FileDocument(request.file_path))
            try:
                persistence.apply(WriteRequest(uri=handle.uri, full_text=text))
            except PersistenceError as e:
                raise HTTPException(status_code=400, detail=str(e))
        else:
            handle = MemoryDocument(text, uri=f"memory://{generate_id()}")
            persistence = handle
        state.open(handle, persistence)
        return {"success": True, "uri": handle.uri, "diagram": document_to_json_dict(doc)}

    @app.post("/api/diagram/open")
    async def open_diagram(request: OpenDiagramRequest, state: ServerState = Depends(get_state)):
        """Open a diagram from a JSON file."""
        path = Path(request.file_path)
        if not path.is_file():
            raise HTTPException(status_code=404, detail=f"File not found: {request.file_path}")
        persistence = FilePersistence()
        handle = persistence.register(FileDocument(path))
        try:
            doc = parse_document(handle.get_text())
        except (ParseError, PersistenceError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        state.open(handle, persistence)
        return {"success": True, "uri": handle.uri, "diagram": document_to_json_dict(doc)}

    @app.get("/api/diagram")
    async def get_diagram(state: ServerState = Depends(require_open)):
        """Get the current document, with a fresh agent context when it has none."""
        try:
            current = state.service.get_state(state.session)
        except (ParseError, PersistenceError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        doc = current["document"]
        if doc.agent_context is None:
            doc.agent_context = generate_agent_context(doc)
        current["document"] = document_to_json_dict(doc)
        return current

    # --- Semantic operations ---

    @app.post("/api/ops")
    async def apply_ops(request: OpsRequest, state: ServerState = Depends(require_open)):
        """Apply a batch of semantic operations atomically."""
        return _respond(state.service.apply_semantic_ops(state.session, request.ops))

    # --- Moves ---

    @app.post("/api/nodes/move")
    async def move_nodes(request: MoveNodesRequest, state: ServerState = Depends(require_open)):
        """Move several nodes in one write; moved nodes become pinned."""
        moves = [(m.id, m.x, m.y) for m in request.moves]
        return _respond(state.service.move_nodes(state.session, moves))

    @app.post("/api/nodes/{node_id}/move")
    async def move_node(node_id: str, request: PositionRequest, state: ServerState = Depends(require_open)):
        """Move one node; it becomes pinned."""
        return _respond(state.service.move_node(state.session, node_id, request.x, request.y))

    @app.post("/api/groups/{group_id}/move")
    async def move_group(group_id: str, request: PositionRequest, state: ServerState = Depends(require_open)):
        """Move a group and all of its members."""
        return _respond(state.service.move_group(state.session, group_id, request.x, request.y))

    @app.post("/api/edges/{edge_id}/reconnect")
    async def reconnect_edge(edge_id: str, request: ReconnectRequest, state: ServerState = Depends(require_open)):
        """Point an edge at new endpoints."""
        return _respond(state.service.reconnect_edge(state.session, edge_id, request.source, request.target))

    # --- Layout ---

    @app.post("/api/layout/auto")
    async def auto_layout(request: AutoLayoutRequest, state: ServerState = Depends(require_open)):
        """Layered auto-layout; `force` also moves (and unpins) pinned nodes."""
        direction = request.direction.value if request.direction else None
        if request.force:
            result = state.service.auto_layout_force(state.session, direction)
        else:
            result = state.service.auto_layout_all(state.session, direction)
        return _respond(result)

    @app.post("/api/layout/sort")
    async def sort_nodes(request: SortRequest, state: ServerState = Depends(require_open)):
        """Sort top-level nodes, or one group's members, into reading order."""
        direction = request.direction.value if request.direction else None
        return _respond(state.service.sort_nodes(state.session, request.group_id, direction))

    # --- Undo/Redo ---

    @app.post("/api/undo")
    async def undo(state: ServerState = Depends(require_open)):
        """Undo the last action."""
        if not state.session.can_undo:
            return {"success": False, "message": "Nothing to undo"}
        return _respond(state.service.undo(state.session))

    @app.post("/api/redo")
    async def redo(state: ServerState = Depends(require_open)):
        """Redo the last undone action."""
        if not state.session.can_redo:
            return {"success": False, "message": "Nothing to redo"}
        return _respond(state.service.redo(state.session))

    # --- Validation ---

    @app.get("/api/diagram/validate")
    async def validate_current_diagram(state: ServerState = Depends(require_open)):
        """
        Validate the current diagram for structural issues.

        Returns a list of issues (errors, warnings, info) and a summary.
        """
        try:
            doc = parse_document(state.session.active.get_text())
        except (ParseError, PersistenceError) as e:
            return {
                "issues": [{"type": "error", "message": str(e)}],
                "summary": {"total": 1, "errors": 1, "warnings": 0, "info": 0, "valid": False},
            }
        issues = validate_document(doc)
        return {
            "issues": [i.to_dict() for i in issues],
            "summary": validation_summary(issues),
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
