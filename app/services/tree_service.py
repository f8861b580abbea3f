import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from app.core import config
from app.core.errors import (
    BranchingTrailError,
    ExpansionFailedError,
    GenerationError,
    InvalidNodeOperationError,
    NodeNotFoundError,
    SessionConflictError,
    StorageError,
    TreeTooLargeError,
)
from app.models.tree import BranchNode, SessionTree
from app.services.prompt_generators import PromptGenerator
from app.services.session_repository import SessionRepository
from app.tree.builders import create_option_children, create_root_node, create_specified_node, create_specify_node
from app.tree.operations import breadcrumb_titles, clone_tree, count_nodes, find_node_with_trail, normalize_tree

logger = logging.getLogger(__name__)

# A mutation receives the private working tree and returns (tokens spent, new session title or None).
Mutation = Callable[[BranchNode], Awaitable[Tuple[int, Optional[str]]]]


class BranchingTreeService:
    """Submit / specify / expand workflows over stored session trees.

    Every workflow fetches the session, keeps the fetched tree as the
    rollback snapshot, and mutates a private clone only once generation has
    succeeded. On a generation failure nothing is written and the caller gets
    the snapshot back with the affected node marked ``error``.
    """

    def __init__(self, repository: SessionRepository, generator: PromptGenerator, max_nodes: Optional[int] = None):
        self.repository = repository
        self.generator = generator
        self.max_nodes = max_nodes or config.MAX_TREE_NODES

    def list_sessions(self, owner_id: str) -> List[SessionTree]:
        return self.repository.list(owner_id)

    def get_session(self, owner_id: str, session_id: str) -> SessionTree:
        return self.repository.fetch(owner_id, session_id)

    def delete_session(self, owner_id: str, session_id: str) -> None:
        self.repository.delete(owner_id, session_id)

    async def create_session(self, owner_id: str, prompt: str) -> SessionTree:
        title, options = await self.generator.generate_session_seed(prompt, user_id=owner_id)
        root = create_root_node(prompt, title=title.title, options=options.options)
        normalize_tree(root, create_specify_node)
        return self.repository.insert(owner_id, title.title, root, token_usage=title.tokens + options.tokens)

    async def submit_prompt(self, owner_id: str, session_id: str, node_id: str, prompt: str, expected_version: Optional[int] = None) -> SessionTree:
        """Set ``prompt`` on a node and replace its children with fresh options."""

        async def mutate(tree: BranchNode):
            match = find_node_with_trail(tree, node_id)
            if not match:
                raise NodeNotFoundError("Target node not found.")
            if match.node.variant == "specify":
                raise InvalidNodeOperationError("Specify nodes cannot hold a prompt; use specify mode instead.")
            return await self._regenerate(match, prompt, owner_id)

        return await self._run(owner_id, session_id, node_id, mutate, expected_version)

    async def expand_option(self, owner_id: str, session_id: str, node_id: str, expected_version: Optional[int] = None) -> SessionTree:
        """Expand a node using its own prompt, or its title when it has none."""

        async def mutate(tree: BranchNode):
            match = find_node_with_trail(tree, node_id)
            if not match:
                raise NodeNotFoundError("Target node not found.")
            if match.node.variant == "specify":
                raise InvalidNodeOperationError("Specify nodes cannot be expanded.")
            prompt = match.node.prompt.strip() or match.node.title.strip()
            if not prompt:
                raise InvalidNodeOperationError("Node has no prompt or title to expand.")
            return await self._regenerate(match, prompt, owner_id)

        return await self._run(owner_id, session_id, node_id, mutate, expected_version)

    async def specify_branch(self, owner_id: str, session_id: str, parent_node_id: str, prompt: str, expected_version: Optional[int] = None) -> SessionTree:
        """Attach a user-written prompt node under ``parent_node_id``."""

        async def mutate(tree: BranchNode):
            match = find_node_with_trail(tree, parent_node_id)
            if not match:
                raise NodeNotFoundError("Parent node not found.")
            parent = match.node
            if parent.variant == "specify":
                raise InvalidNodeOperationError("Specify nodes cannot have children.")

            generated = await self.generator.generate_branch_options(
                prompt,
                breadcrumb=breadcrumb_titles(match, include_node=True),
                user_id=owner_id,
            )
            new_node = create_specified_node(parent.id, prompt, generated.options)
            rest = [child for child in parent.children if child.variant != "specify"]
            specify = next((child for child in parent.children if child.variant == "specify"), None)
            parent.children = rest + [new_node, specify or create_specify_node(parent.id)]
            return generated.tokens, None

        return await self._run(owner_id, session_id, parent_node_id, mutate, expected_version)

    async def _regenerate(self, match, prompt: str, owner_id: str) -> Tuple[int, Optional[str]]:
        node = match.node
        generated = await self.generator.generate_branch_options(
            prompt,
            node_title=node.title or None,
            breadcrumb=breadcrumb_titles(match),
            user_id=owner_id,
        )
        tokens = generated.tokens
        new_title = None

        # The root's prompt names the whole session.
        if match.parent is None:
            title = await self.generator.generate_session_title(prompt, user_id=owner_id)
            tokens += title.tokens
            new_title = title.title

        node.prompt = prompt
        node.status = "idle"
        node.children = create_option_children(node.id, generated.options)
        if new_title:
            node.title = new_title
        return tokens, new_title

    async def _run(self, owner_id: str, session_id: str, node_id: str, mutate: Mutation, expected_version: Optional[int]) -> SessionTree:
        session = self.repository.fetch(owner_id, session_id)
        if expected_version is not None and expected_version != session.version:
            raise SessionConflictError(
                f"Session was modified concurrently (expected version {expected_version}, found {session.version})."
            )

        snapshot = session.root
        working = clone_tree(snapshot)
        try:
            tokens, title = await mutate(working)
        except GenerationError as e:
            logger.warning("Generation failed for node %s in session %s: %s", node_id, session_id, e)
            raise self._failed(session, node_id, e) from e

        normalize_tree(working, create_specify_node)
        size = count_nodes(working)
        if size > self.max_nodes:
            raise TreeTooLargeError(f"Tree would grow to {size} nodes (limit {self.max_nodes}).")

        try:
            return self.repository.update(
                owner_id,
                session_id,
                working,
                token_usage=session.token_usage + tokens,
                title=title,
                expected_version=session.version,
            )
        except StorageError as e:
            logger.warning("Could not store expansion of node %s in session %s: %s", node_id, session_id, e)
            raise self._failed(session, node_id, e) from e

    def _failed(self, session: SessionTree, node_id: str, cause: BranchingTrailError) -> ExpansionFailedError:
        return ExpansionFailedError(
            cause.message,
            session=self._mark_failed(session, node_id),
            node_id=node_id,
            cause=cause,
        )

    def _mark_failed(self, session: SessionTree, node_id: str) -> SessionTree:
        failed = session.model_copy(deep=True)
        match = find_node_with_trail(failed.root, node_id)
        if match:
            match.node.status = "error"
        return failed
