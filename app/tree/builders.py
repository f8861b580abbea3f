import uuid
from typing import List, Optional

from app.models.tree import BranchNode


def create_specify_node(parent_id: str) -> BranchNode:
    return BranchNode(id=f"{parent_id}::specify", variant="specify")


def create_option_node(parent_id: str, index: int, title: str) -> BranchNode:
    return BranchNode(id=f"{parent_id}::opt-{index + 1}", title=title, variant="option")


def create_option_children(parent_id: str, options: List[str]) -> List[BranchNode]:
    """Option nodes in generation order followed by the trailing specify node."""
    children = [create_option_node(parent_id, index, title) for index, title in enumerate(options)]
    children.append(create_specify_node(parent_id))
    return children


def create_root_node(prompt: str, title: str = "", options: Optional[List[str]] = None) -> BranchNode:
    root_id = f"session-root-{uuid.uuid4()}"
    root = BranchNode(id=root_id, title=title, prompt=prompt, variant="prompt")
    if options:
        root.children = create_option_children(root_id, options)
    return root


def create_specified_node(parent_id: str, prompt: str, options: List[str]) -> BranchNode:
    """A user-written branch under ``parent_id`` with its generated options attached."""
    node_id = f"{parent_id}::spec-{uuid.uuid4()}"
    return BranchNode(
        id=node_id,
        prompt=prompt,
        variant="prompt",
        children=create_option_children(node_id, options),
    )
