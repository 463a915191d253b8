"""
Layout algorithms for diagram nodes.

All layout entry points are pure functions of a document snapshot that return
a list of LayoutPlacement values; `apply_placements` writes them back:
- Partial: place only unpinned nodes still sitting at the origin
- Full: layered layout of every unpinned node, pinned nodes act as obstacles
- Forced: layered layout of every node, pin state ignored
- Sort: stable reading-order sort packed into a grid

The layered layout is Sugiyama-style:
  1. Cycle removal (greedy-FAS)
  2. Rank assignment (longest path)
  3. Dummy node insertion for edges spanning several ranks
  4. Crossing minimisation (barycenter sweeps)
  5. Coordinate assignment with real node sizes
  6. Direction mapping (TB, BT, LR, RL)
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

import networkx as nx

from .models import (
    DiagramDocument,
    DiagramEdge,
    DiagramGroup,
    DiagramNode,
    LayoutDirection,
    group_origin,
)


# Default layout parameters
DEFAULT_RANKSEP = 120
DEFAULT_NODESEP = 60
DEFAULT_MARGIN = 60
SORT_GRID_GAP = 40

DUMMY_PREFIX = "__dummy__"


@dataclass
class LayoutConfig:
    """Spacing and direction for the layered layout."""
    rankdir: str = LayoutDirection.TB.value
    ranksep: float = DEFAULT_RANKSEP  # Gap between ranks along the rank axis
    nodesep: float = DEFAULT_NODESEP  # Gap between neighbours inside a rank
    marginx: float = DEFAULT_MARGIN
    marginy: float = DEFAULT_MARGIN
    crossing_passes: int = 24


DEFAULT_LAYOUT_CONFIG = LayoutConfig()


@dataclass(frozen=True)
class LayoutPlacement:
    """A computed top-left position for one node."""
    node_id: str
    x: float
    y: float

    def to_dict(self) -> dict:
        return {"nodeId": self.node_id, "x": self.x, "y": self.y}


def config_for(doc: DiagramDocument, direction: Optional[str] = None,
               base: LayoutConfig = DEFAULT_LAYOUT_CONFIG) -> LayoutConfig:
    """Layout config whose rank direction follows the argument, then the document."""
    rankdir = direction or doc.meta.layout_direction or base.rankdir
    return LayoutConfig(
        rankdir=LayoutDirection(rankdir).value,
        ranksep=base.ranksep,
        nodesep=base.nodesep,
        marginx=base.marginx,
        marginy=base.marginy,
        crossing_passes=base.crossing_passes,
    )


def _is_horizontal(rankdir: str) -> bool:
    return rankdir in (LayoutDirection.LR.value, LayoutDirection.RL.value)


# ─── Cycle Removal (Greedy-FAS) ─────────────────────────────────────────────


def greedy_fas_ordering(graph: nx.DiGraph) -> list[str]:
    """Compute a node ordering using the greedy-FAS heuristic.

    Candidates are always scanned in graph insertion order so the result is
    deterministic for a given document.
    """
    order = list(graph.nodes)
    active: set[str] = set(order)
    out_deg = {n: sum(1 for s in graph.successors(n) if s != n) for n in order}
    in_deg = {n: sum(1 for p in graph.predecessors(n) if p != n) for n in order}

    s1: list[str] = []
    s2: list[str] = []

    def take(node: str) -> None:
        active.remove(node)
        for succ in graph.successors(node):
            if succ in active:
                in_deg[succ] -= 1
        for pred in graph.predecessors(node):
            if pred in active:
                out_deg[pred] -= 1

    while active:
        changed = True
        while changed:
            changed = False
            for node in order:
                if node in active and out_deg[node] == 0:
                    take(node)
                    s2.append(node)
                    changed = True

        changed = True
        while changed:
            changed = False
            for node in order:
                if node in active and in_deg[node] == 0:
                    take(node)
                    s1.append(node)
                    changed = True

        if active:
            best = max((n for n in order if n in active), key=lambda n: out_deg[n] - in_deg[n])
            take(best)
            s1.append(best)

    s2.reverse()
    return s1 + s2


def remove_cycles(graph: nx.DiGraph) -> tuple[nx.DiGraph, set[tuple[str, str]]]:
    """Remove cycles using greedy-FAS. Returns (dag, reversed_edges).

    Self loops are counted as reversed and dropped from the DAG.
    """
    if graph.number_of_nodes() == 0:
        return graph.copy(), set()

    position = {node: pos for pos, node in enumerate(greedy_fas_ordering(graph))}

    reversed_edges: set[tuple[str, str]] = set()
    dag: nx.DiGraph = nx.DiGraph()
    dag.add_nodes_from(graph.nodes(data=True))
    for src, tgt in graph.edges():
        if src == tgt:
            reversed_edges.add((src, tgt))
        elif position[src] > position[tgt]:
            reversed_edges.add((src, tgt))
            dag.add_edge(tgt, src)
        else:
            dag.add_edge(src, tgt)
    return dag, reversed_edges


# ─── Rank Assignment ────────────────────────────────────────────────────────


def assign_ranks(dag: nx.DiGraph) -> dict[str, int]:
    """Longest-path ranking: every edge points at least one rank forward."""
    ranks = {node: 0 for node in dag.nodes}
    for node in nx.topological_sort(dag):
        for succ in dag.successors(node):
            if ranks[succ] < ranks[node] + 1:
                ranks[succ] = ranks[node] + 1
    return ranks


def insert_dummy_nodes(dag: nx.DiGraph, ranks: dict[str, int]) -> tuple[nx.DiGraph, dict[str, int]]:
    """Split edges spanning several ranks into chains through dummy nodes."""
    g: nx.DiGraph = nx.DiGraph()
    g.add_nodes_from(dag.nodes(data=True))
    ranks = dict(ranks)

    for index, (src, tgt) in enumerate(list(dag.edges())):
        span = ranks[tgt] - ranks[src]
        if span <= 1:
            g.add_edge(src, tgt)
            continue
        prev = src
        for step in range(1, span):
            dummy = f"{DUMMY_PREFIX}{index}_{step}"
            g.add_node(dummy, dummy=True)
            ranks[dummy] = ranks[src] + step
            g.add_edge(prev, dummy)
            prev = dummy
        g.add_edge(prev, tgt)

    return g, ranks


# ─── Crossing Minimization ───────────────────────────────────────────────────


def count_crossings(ordering: list[list[str]], graph: nx.DiGraph) -> int:
    """Count edge crossings between every pair of adjacent ranks."""
    total = 0
    for idx in range(len(ordering) - 1):
        tgt_pos = {nid: i for i, nid in enumerate(ordering[idx + 1])}
        pairs: list[tuple[int, int]] = []
        for sp, src in enumerate(ordering[idx]):
            for succ in graph.successors(src):
                if succ in tgt_pos:
                    pairs.append((sp, tgt_pos[succ]))
        for i in range(len(pairs)):
            for j in range(i + 1, len(pairs)):
                a, b = pairs[i], pairs[j]
                if (a[0] - b[0]) * (a[1] - b[1]) < 0:
                    total += 1
    return total


def _barycenter(node: str, neighbours: Iterable[str], positions: dict[str, int], fallback: float) -> float:
    values = [positions[nb] for nb in neighbours if nb in positions]
    if not values:
        return fallback
    return sum(values) / len(values)


def minimise_crossings(graph: nx.DiGraph, ranks: dict[str, int], passes: int) -> list[list[str]]:
    """Order nodes inside each rank with alternating barycenter sweeps.

    The initial order is graph insertion order; the best ordering seen is kept.
    """
    rank_count = (max(ranks.values()) + 1) if ranks else 0
    ordering: list[list[str]] = [[] for _ in range(rank_count)]
    for node in graph.nodes:
        ordering[ranks[node]].append(node)

    best = [list(layer) for layer in ordering]
    best_crossings = count_crossings(best, graph)

    for _ in range(passes):
        if best_crossings == 0:
            break
        for idx in range(1, rank_count):
            prev = {nid: i for i, nid in enumerate(ordering[idx - 1])}
            current = {nid: i for i, nid in enumerate(ordering[idx])}
            ordering[idx].sort(
                key=lambda n: _barycenter(n, graph.predecessors(n), prev, current[n])
            )
        for idx in range(rank_count - 2, -1, -1):
            nxt = {nid: i for i, nid in enumerate(ordering[idx + 1])}
            current = {nid: i for i, nid in enumerate(ordering[idx])}
            ordering[idx].sort(
                key=lambda n: _barycenter(n, graph.successors(n), nxt, current[n])
            )

        crossings = count_crossings(ordering, graph)
        if crossings >= best_crossings:
            break
        best = [list(layer) for layer in ordering]
        best_crossings = crossings

    return best


# ─── Coordinate Assignment ───────────────────────────────────────────────────


@dataclass
class _Placed:
    """A node position in document coordinates plus its rank."""
    x: float
    y: float
    width: float
    height: float
    rank: int


def _layered_positions(
    nodes: list[DiagramNode],
    edges: list[DiagramEdge],
    config: LayoutConfig,
) -> dict[str, _Placed]:
    """Run the layered pipeline over `nodes` and the edges between them."""
    ids = {n.id for n in nodes}
    sizes = {n.id: (n.width, n.height) for n in nodes}

    graph: nx.DiGraph = nx.DiGraph()
    graph.add_nodes_from(n.id for n in nodes)
    for edge in edges:
        if edge.source in ids and edge.target in ids:
            graph.add_edge(edge.source, edge.target)

    dag, _ = remove_cycles(graph)
    ranks = assign_ranks(dag)
    augmented, ranks = insert_dummy_nodes(dag, ranks)
    ordering = minimise_crossings(augmented, ranks, config.crossing_passes)

    horizontal = _is_horizontal(config.rankdir)

    def cross_size(node_id: str) -> float:
        if node_id not in sizes:
            return 0.0
        w, h = sizes[node_id]
        return h if horizontal else w

    def rank_size(node_id: str) -> float:
        if node_id not in sizes:
            return 0.0
        w, h = sizes[node_id]
        return w if horizontal else h

    # Rank bands along the rank axis
    thickness = [max((rank_size(n) for n in layer), default=0.0) for layer in ordering]
    band_start: list[float] = []
    cursor = 0.0
    for t in thickness:
        band_start.append(cursor)
        cursor += t + config.ranksep
    rank_extent = cursor - config.ranksep if ordering else 0.0

    # Pack each rank along the cross axis, centred on the widest rank
    cross: dict[str, float] = {}
    widths: list[float] = []
    for layer in ordering:
        pos = 0.0
        for node_id in layer:
            cross[node_id] = pos
            pos += cross_size(node_id) + config.nodesep
        widths.append(pos - config.nodesep if layer else 0.0)
    widest = max(widths, default=0.0)
    for layer, width in zip(ordering, widths):
        shift = (widest - width) / 2
        for node_id in layer:
            cross[node_id] += shift

    # Pull children towards their parents without breaking rank order
    for layer in ordering[1:]:
        frontier = -math.inf
        for node_id in layer:
            parents = list(augmented.predecessors(node_id))
            if parents:
                centre = sum(cross[p] + cross_size(p) / 2 for p in parents) / len(parents)
                cross[node_id] = centre - cross_size(node_id) / 2
            cross[node_id] = max(cross[node_id], frontier)
            frontier = cross[node_id] + cross_size(node_id) + config.nodesep

    real_ids = [nid for nid in cross if nid in sizes]
    min_cross = min((cross[nid] for nid in real_ids), default=0.0)

    placed: dict[str, _Placed] = {}
    for node in nodes:
        rank = ranks[node.id]
        along = band_start[rank] + (thickness[rank] - rank_size(node.id)) / 2
        if config.rankdir in (LayoutDirection.BT.value, LayoutDirection.RL.value):
            along = rank_extent - along - rank_size(node.id)
        c = cross[node.id] - min_cross
        if horizontal:
            x, y = along, c
        else:
            x, y = c, along
        placed[node.id] = _Placed(
            x=x + config.marginx,
            y=y + config.marginy,
            width=node.width,
            height=node.height,
            rank=rank,
        )
    return placed


def _overlaps(a: tuple[float, float, float, float], b: tuple[float, float, float, float],
              clearance: float) -> bool:
    ax, ay, ar, ab = a
    bx, by, br, bb = b
    return (ax < br + clearance and bx < ar + clearance
            and ay < bb + clearance and by < ab + clearance)


def _avoid_obstacles(placed: dict[str, _Placed], obstacles: list[DiagramNode],
                     config: LayoutConfig) -> None:
    """Push placed nodes along the cross axis until they clear every obstacle.

    Works rank by rank in cross-axis order, so a pushed node also pushes its
    later neighbours and the within-rank order survives.
    """
    horizontal = _is_horizontal(config.rankdir)
    gap = config.nodesep
    by_rank: dict[int, list[_Placed]] = defaultdict(list)
    for p in placed.values():
        by_rank[p.rank].append(p)

    boxes = [o.bounds() for o in obstacles]
    for rank in sorted(by_rank):
        layer = sorted(by_rank[rank], key=lambda p: p.y if horizontal else p.x)
        frontier = -math.inf
        for p in layer:
            if horizontal:
                p.y = max(p.y, frontier)
            else:
                p.x = max(p.x, frontier)
            moved = True
            while moved:
                moved = False
                for box in boxes:
                    if _overlaps((p.x, p.y, p.x + p.width, p.y + p.height), box, gap):
                        if horizontal:
                            p.y = box[3] + gap
                        else:
                            p.x = box[2] + gap
                        moved = True
            frontier = (p.y + p.height if horizontal else p.x + p.width) + gap


def _placements(nodes: list[DiagramNode], placed: dict[str, _Placed]) -> list[LayoutPlacement]:
    return [
        LayoutPlacement(node_id=n.id, x=float(round(placed[n.id].x)), y=float(round(placed[n.id].y)))
        for n in nodes
    ]


# ─── Public layouts ──────────────────────────────────────────────────────────


def is_unpositioned(node: DiagramNode) -> bool:
    """An unpinned node still sitting exactly at the origin."""
    return not node.pinned and node.x == 0 and node.y == 0


def compute_partial_layout(
    doc: DiagramDocument,
    config: Optional[LayoutConfig] = None,
    exempt: Iterable[str] = (),
) -> list[LayoutPlacement]:
    """
    Place unpositioned nodes without moving anything else.

    Targets are laid out as their own layered subgraph and the block is set
    beyond the far side (along the rank axis) of the existing drawing, lined
    up with the targets' positioned neighbours when they have any.

    Args:
        doc: Document snapshot
        config: Layout parameters (defaults follow the document direction)
        exempt: Node ids that must stay where they are even at the origin
            (nodes a sort just placed there)

    Returns:
        Placements for the target nodes only; empty when nothing needs placing
    """
    config = config or config_for(doc)
    exempt = set(exempt)
    targets = [n for n in doc.nodes if is_unpositioned(n) and n.id not in exempt]
    if not targets:
        return []

    target_ids = {n.id for n in targets}
    positioned = [n for n in doc.nodes if n.id not in target_ids]

    block_config = LayoutConfig(
        rankdir=config.rankdir, ranksep=config.ranksep, nodesep=config.nodesep,
        marginx=0, marginy=0, crossing_passes=config.crossing_passes,
    )
    placed = _layered_positions(targets, doc.edges, block_config)

    if not positioned:
        for p in placed.values():
            p.x += config.marginx
            p.y += config.marginy
        return _placements(targets, placed)

    neighbour_ids: set[str] = set()
    for edge in doc.edges:
        if edge.source in target_ids and edge.target not in target_ids:
            neighbour_ids.add(edge.target)
        elif edge.target in target_ids and edge.source not in target_ids:
            neighbour_ids.add(edge.source)
    anchors = [n for n in positioned if n.id in neighbour_ids] or positioned

    block_w = max(p.x + p.width for p in placed.values())
    block_h = max(p.y + p.height for p in placed.values())

    if config.rankdir == LayoutDirection.TB.value:
        dx = min(n.x for n in anchors)
        dy = max(n.y + n.height for n in positioned) + config.ranksep
    elif config.rankdir == LayoutDirection.BT.value:
        dx = min(n.x for n in anchors)
        dy = min(n.y for n in positioned) - config.ranksep - block_h
    elif config.rankdir == LayoutDirection.LR.value:
        dx = max(n.x + n.width for n in positioned) + config.ranksep
        dy = min(n.y for n in anchors)
    else:
        dx = min(n.x for n in positioned) - config.ranksep - block_w
        dy = min(n.y for n in anchors)

    for p in placed.values():
        p.x += dx
        p.y += dy
    return _placements(targets, placed)


def compute_full_layout(
    doc: DiagramDocument,
    config: Optional[LayoutConfig] = None,
) -> list[LayoutPlacement]:
    """
    Layered layout of every unpinned node.

    Pinned nodes keep their position and are treated as obstacles: an unpinned
    node that would overlap one is pushed past it along the cross axis.
    """
    config = config or config_for(doc)
    targets = [n for n in doc.nodes if not n.pinned]
    if not targets:
        return []
    placed = _layered_positions(targets, doc.edges, config)
    pinned = [n for n in doc.nodes if n.pinned]
    if pinned:
        _avoid_obstacles(placed, pinned, config)
    return _placements(targets, placed)


def compute_forced_layout(
    doc: DiagramDocument,
    config: Optional[LayoutConfig] = None,
) -> list[LayoutPlacement]:
    """Layered layout of every node, ignoring pin state."""
    config = config or config_for(doc)
    if not doc.nodes:
        return []
    return _placements(doc.nodes, _layered_positions(doc.nodes, doc.edges, config))


def apply_placements(doc: DiagramDocument, placements: Iterable[LayoutPlacement]) -> set[str]:
    """
    Write placements into `doc` (in place) and invalidate group caches.

    A group whose member actually changed position has its cached x/y cleared,
    since its box is re-derived from the members.

    Returns:
        Ids of the nodes whose position changed
    """
    by_id = {n.id: n for n in doc.nodes}
    moved: set[str] = set()
    for placement in placements:
        node = by_id.get(placement.node_id)
        if node is None:
            continue
        if node.x == placement.x and node.y == placement.y:
            continue
        node.x = placement.x
        node.y = placement.y
        moved.add(node.id)
    invalidate_group_caches(doc, moved)
    return moved


def invalidate_group_caches(doc: DiagramDocument, moved_ids: Iterable[str]) -> None:
    """Clear the cached origin of every group containing a moved node."""
    moved_ids = set(moved_ids)
    affected = {n.group for n in doc.nodes if n.id in moved_ids and n.group}
    for group_id in affected:
        group = doc.get_group(group_id)
        if group is not None:
            group.clear_cached_origin()


# ─── Sorting ────────────────────────────────────────────────────────────────


def _position_key(direction: str, x: float, y: float) -> tuple[float, float]:
    # Primary axis first, secondary axis ascending; ties keep array order
    if direction == LayoutDirection.TB.value:
        return (y, x)
    if direction == LayoutDirection.BT.value:
        return (-y, x)
    if direction == LayoutDirection.LR.value:
        return (x, y)
    return (-x, y)


def sort_nodes_by_position(nodes: list[DiagramNode], direction: str) -> list[DiagramNode]:
    """
    Sort nodes into visual reading order (stable).

    - TB: y asc, then x asc
    - BT: y desc, then x asc
    - LR: x asc, then y asc
    - RL: x desc, then y asc
    """
    direction = LayoutDirection(direction).value
    return sorted(nodes, key=lambda n: _position_key(direction, n.x, n.y))


def sort_groups_by_position(doc: DiagramDocument, direction: str) -> list[DiagramGroup]:
    """Sort groups by their cached origin, or the origin derived from members."""
    direction = LayoutDirection(direction).value

    def origin(group: DiagramGroup) -> tuple[float, float]:
        if group.x is not None and group.y is not None:
            return (group.x, group.y)
        return group_origin(doc, group.id)

    return sorted(doc.groups or [], key=lambda g: _position_key(direction, *origin(g)))


def apply_grid_layout(
    sorted_nodes: list[DiagramNode],
    direction: str,
    start_x: float,
    start_y: float,
    gap: float = SORT_GRID_GAP,
) -> list[LayoutPlacement]:
    """
    Pack nodes, already in reading order, into a square-ish grid.

    TB/BT fill rows left to right; LR/RL fill columns top to bottom. Each cell
    is as large as its own node plus `gap`; a row (column) is as tall (wide)
    as its largest node.
    """
    if not sorted_nodes:
        return []

    direction = LayoutDirection(direction).value
    per_line = max(1, math.ceil(math.sqrt(len(sorted_nodes))))
    by_rows = not _is_horizontal(direction)

    placements: list[LayoutPlacement] = []
    line_start = start_y if by_rows else start_x
    for offset in range(0, len(sorted_nodes), per_line):
        line = sorted_nodes[offset:offset + per_line]
        cursor = start_x if by_rows else start_y
        for node in line:
            if by_rows:
                placements.append(LayoutPlacement(node.id, cursor, line_start))
                cursor += node.width + gap
            else:
                placements.append(LayoutPlacement(node.id, line_start, cursor))
                cursor += node.height + gap
        if by_rows:
            line_start += max(n.height for n in line) + gap
        else:
            line_start += max(n.width for n in line) + gap
    return placements
