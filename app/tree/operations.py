"""Structural primitives over a branch tree.

Everything here works on plain ``BranchNode`` values and never raises for a
missing node: lookups return ``None`` and callers decide what to surface.
"""
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional

from app.models.tree import BranchNode

SpecifyFactory = Callable[[str], BranchNode]


@dataclass
class NodeTrail:
    node: BranchNode
    parent: Optional[BranchNode]
    breadcrumb: List[BranchNode] = field(default_factory=list)


def clone_tree(root: BranchNode) -> BranchNode:
    return root.model_copy(deep=True)


def find_node_with_trail(root: BranchNode, node_id: str) -> Optional[NodeTrail]:
    """Depth-first search for ``node_id``.

    ``breadcrumb`` holds the ancestors from the root down to the parent of
    the match; it is empty when the match is the root itself.
    """
    return _search(root, node_id, [])


def _search(current: BranchNode, node_id: str, trail: List[BranchNode]) -> Optional[NodeTrail]:
    if current.id == node_id:
        return NodeTrail(node=current, parent=trail[-1] if trail else None, breadcrumb=trail)

    for child in current.children:
        found = _search(child, node_id, trail + [current])
        if found:
            return found
    return None


def ensure_specify_child(target: BranchNode, make_specify: SpecifyFactory) -> None:
    """Normalise ``target.children`` so the specify invariant holds.

    The first existing specify child is kept (it may carry state); extra ones
    are dropped. Running this twice is the same as running it once.
    """
    if target.variant == "specify":
        target.children = []
        return

    rest = [child for child in target.children if child.variant != "specify"]
    if not rest:
        target.children = []
        return

    existing = next((child for child in target.children if child.variant == "specify"), None)
    target.children = rest + [existing if existing is not None else make_specify(target.id)]


def walk_tree(
    root: BranchNode,
    visit: Callable[[BranchNode, Optional[BranchNode]], None],
    parent: Optional[BranchNode] = None,
) -> None:
    visit(root, parent)
    for child in root.children:
        walk_tree(child, visit, root)


def normalize_tree(root: BranchNode, make_specify: SpecifyFactory) -> BranchNode:
    """Apply :func:`ensure_specify_child` to every node, in place."""
    walk_tree(root, lambda node, _parent: ensure_specify_child(node, make_specify))
    return root


def iter_nodes(root: BranchNode) -> Iterator[BranchNode]:
    yield root
    for child in root.children:
        yield from iter_nodes(child)


def count_nodes(root: BranchNode) -> int:
    return sum(1 for _ in iter_nodes(root))


def breadcrumb_titles(trail: NodeTrail, include_node: bool = False) -> List[str]:
    """Titles of the non-specify ancestors, empty titles skipped.

    With ``include_node`` the matched node's own title is appended too, which
    is the context a custom branch is generated under.
    """
    nodes = list(trail.breadcrumb)
    if include_node:
        nodes.append(trail.node)
    return [node.title for node in nodes if node.variant != "specify" and node.title]
