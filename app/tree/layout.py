"""Positions a branch tree on a 2-D canvas.

Each node gets a depth (distance from the root, mapped to x) and a lane
(vertical slot, mapped to y). Lanes are reserved per depth layer so nodes in
the same layer never sit closer than ``min_lane_gap``; sibling groups are
reserved together so they never interleave with another parent's children.
A small jitter derived from the node id breaks up the grid while keeping
re-renders of an unchanged tree identical.

The layout holds no state between calls: every :func:`build_flow_structure`
call allocates a fresh :class:`LayoutContext`. The service never calls it;
its output is what the canvas renderer draws from a stored session tree.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from app.models.tree import BranchNode

logger = logging.getLogger(__name__)

LANE_EPSILON = 1e-6


class LayoutSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    layer_x_gap: float = 600
    layer_y_gap: float = 280
    depth_x_offset: float = 28
    jitter_x_range: float = 48
    jitter_y_range: float = 60
    child_lane_spacing: float = 1.15
    min_lane_gap: float = 0.9
    max_lane_probes: int = 100
    max_group_probes: int = 200


DEFAULT_SETTINGS = LayoutSettings()


class Position(BaseModel):
    x: float
    y: float


class LayoutNode(BaseModel):
    id: str
    depth: int
    lane: float
    position: Position
    node: BranchNode
    parent_id: Optional[str] = None
    overflowed: bool = False


class LayoutEdge(BaseModel):
    id: str
    source: str
    target: str


class FlowStructure(BaseModel):
    nodes: List[LayoutNode]
    edges: List[LayoutEdge]

    def node(self, node_id: str) -> Optional[LayoutNode]:
        return next((item for item in self.nodes if item.id == node_id), None)


@dataclass
class LayoutContext:
    settings: LayoutSettings = field(default_factory=LayoutSettings)
    nodes: List[LayoutNode] = field(default_factory=list)
    edges: List[LayoutEdge] = field(default_factory=list)
    layer_occupancy: Dict[int, List[float]] = field(default_factory=dict)
    lane_overrides: Dict[str, float] = field(default_factory=dict)
    overflowed: Dict[str, bool] = field(default_factory=dict)


def hash_node_id(value: str) -> int:
    """32-bit ``h * 31 + c`` rolling hash over the UTF-16 code units of ``value``."""
    data = value.encode("utf-16-le")
    hashed = 0
    for index in range(0, len(data), 2):
        unit = data[index] | (data[index + 1] << 8)
        hashed = (hashed * 31 + unit) & 0xFFFFFFFF
    return hashed


def create_node_position(depth: int, lane: float, node_id: str, settings: LayoutSettings = DEFAULT_SETTINGS) -> Position:
    hashed = hash_node_id(node_id)
    x_noise = ((hashed & 0xFFFF) / 0xFFFF - 0.5) * settings.jitter_x_range
    y_noise = (((hashed >> 16) & 0xFFFF) / 0xFFFF - 0.5) * settings.jitter_y_range
    return Position(
        x=depth * settings.layer_x_gap + depth * settings.depth_x_offset + x_noise,
        y=lane * settings.layer_y_gap + y_noise,
    )


def _is_clear(lanes: List[float], candidate: float, gap: float) -> bool:
    return all(abs(lane - candidate) >= gap for lane in lanes)


def reserve_lane(depth: int, desired_lane: float, ctx: LayoutContext) -> Tuple[float, bool]:
    """Reserve a single lane at ``depth`` as close to ``desired_lane`` as possible.

    Returns ``(lane, placed)``; ``placed`` is False when probing ran out and
    the desired lane was taken even though it overlaps.
    """
    lanes = ctx.layer_occupancy.setdefault(depth, [])
    gap = ctx.settings.min_lane_gap

    if _is_clear(lanes, desired_lane, gap):
        lanes.append(desired_lane)
        return desired_lane, True

    for step in range(1, ctx.settings.max_lane_probes):
        for candidate in (desired_lane - step * gap, desired_lane + step * gap):
            if _is_clear(lanes, candidate, gap):
                lanes.append(candidate)
                return candidate, True

    logger.debug("Lane probing exhausted at depth %s around %.3f", depth, desired_lane)
    lanes.append(desired_lane)
    return desired_lane, False


def register_existing_lane(depth: int, lane: float, ctx: LayoutContext) -> float:
    lanes = ctx.layer_occupancy.setdefault(depth, [])
    if not any(abs(existing - lane) < LANE_EPSILON for existing in lanes):
        lanes.append(lane)
    return lane


def reserve_lane_group(depth: int, desired_lanes: List[float], ctx: LayoutContext) -> Tuple[List[float], bool]:
    """Reserve a whole sibling group at ``depth``.

    The group moves as one block, below first and then above, so the
    relative spacing of the siblings is kept.
    """
    if not desired_lanes:
        return [], True

    lanes = ctx.layer_occupancy.setdefault(depth, [])
    gap = ctx.settings.min_lane_gap

    def group_is_clear(positions: List[float]) -> bool:
        return all(_is_clear(lanes, position, gap) for position in positions)

    if group_is_clear(desired_lanes):
        lanes.extend(desired_lanes)
        return list(desired_lanes), True

    for step in range(1, ctx.settings.max_group_probes):
        offset = step * gap
        for shifted in (
            [lane - offset for lane in desired_lanes],
            [lane + offset for lane in desired_lanes],
        ):
            if group_is_clear(shifted):
                lanes.extend(shifted)
                return shifted, True

    logger.debug("Group probing exhausted at depth %s for %d lanes", depth, len(desired_lanes))
    lanes.extend(desired_lanes)
    return list(desired_lanes), False


def desired_child_lanes(parent_lane: float, child_count: int, spacing: float) -> List[float]:
    """Children fan out symmetrically around the parent's lane."""
    return [parent_lane + (index - (child_count - 1) / 2) * spacing for index in range(child_count)]


def _traverse(item: BranchNode, depth: int, desired_lane: float, ctx: LayoutContext, parent_id: Optional[str]) -> None:
    override = ctx.lane_overrides.pop(item.id, None)
    if override is not None:
        lane = register_existing_lane(depth, override, ctx)
        overflowed = ctx.overflowed.pop(item.id, False)
    else:
        lane, placed = reserve_lane(depth, desired_lane, ctx)
        overflowed = not placed

    ctx.nodes.append(
        LayoutNode(
            id=item.id,
            depth=depth,
            lane=lane,
            position=create_node_position(depth, lane, item.id, ctx.settings),
            node=item,
            parent_id=parent_id,
            overflowed=overflowed,
        )
    )

    desired = desired_child_lanes(lane, len(item.children), ctx.settings.child_lane_spacing)
    resolved, placed = reserve_lane_group(depth + 1, desired, ctx)

    for index, child in enumerate(item.children):
        ctx.lane_overrides[child.id] = resolved[index]
        if not placed:
            ctx.overflowed[child.id] = True
        ctx.edges.append(LayoutEdge(id=f"{item.id}=>{child.id}", source=item.id, target=child.id))
        _traverse(child, depth + 1, resolved[index], ctx, item.id)


def build_flow_structure(root: BranchNode, settings: Optional[LayoutSettings] = None) -> FlowStructure:
    """Lay out ``root`` and return positioned nodes plus parent->child edges."""
    ctx = LayoutContext(settings=settings or DEFAULT_SETTINGS)
    _traverse(root, 0, 0.0, ctx, None)
    return FlowStructure(nodes=ctx.nodes, edges=ctx.edges)
