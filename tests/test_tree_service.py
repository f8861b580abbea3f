import json
import pytest
from unittest.mock import AsyncMock, MagicMock
from app.core.errors import (
    ExpansionFailedError,
    InvalidNodeOperationError,
    NodeNotFoundError,
    OptionsParseError,
    SessionConflictError,
    StorageError,
    TreeTooLargeError,
)
from app.models.tree import BranchOptions, SessionTitle
from app.services.session_repository import MemorySessionRepository
from app.services.tree_service import BranchingTreeService
from app.tree.operations import find_node_with_trail, iter_nodes


def options(*titles, tokens=10):
    return BranchOptions(options=list(titles), tokens=tokens)


def make_generator():
    generator = AsyncMock()
    generator.generate_session_seed.return_value = (
        SessionTitle(title="Game Ideas", tokens=3),
        options("Strategy", "Action", "Puzzle", "Story", tokens=20),
    )
    generator.generate_branch_options.return_value = options("One", "Two", "Three", "Four")
    generator.generate_session_title.return_value = SessionTitle(title="Fresh Title", tokens=2)
    return generator


@pytest.fixture
def generator():
    return make_generator()


@pytest.fixture
def service(generator):
    return BranchingTreeService(MemorySessionRepository(), generator)


async def seeded(service):
    return await service.create_session("alice", "Explore browser games")


def dump(session):
    return json.dumps(session.model_dump(), sort_keys=True)


@pytest.mark.asyncio
async def test_create_session_builds_root_with_options(service):
    session = await seeded(service)
    root = session.root
    assert root.id.startswith("session-root-")
    assert root.variant == "prompt"
    assert root.prompt == "Explore browser games"
    assert root.title == session.title == "Game Ideas"
    assert len(root.children) == 5
    assert [c.title for c in root.children[:4]] == ["Strategy", "Action", "Puzzle", "Story"]
    assert [c.variant for c in root.children] == ["option"] * 4 + ["specify"]
    assert [c.id for c in root.children] == [f"{root.id}::opt-{i}" for i in range(1, 5)] + [f"{root.id}::specify"]
    assert session.token_usage == 23


@pytest.mark.asyncio
async def test_expand_option_replaces_children_only(service, generator):
    session = await seeded(service)
    target = session.root.children[1]
    siblings_before = [c.model_dump() for i, c in enumerate(session.root.children) if i != 1]

    updated = await service.expand_option("alice", session.id, target.id)

    node = find_node_with_trail(updated.root, target.id).node
    assert node.id == target.id
    assert node.variant == "option"
    assert [c.title for c in node.children[:4]] == ["One", "Two", "Three", "Four"]
    assert node.children[-1].variant == "specify"
    assert len(node.children) == 5
    siblings_after = [c.model_dump() for i, c in enumerate(updated.root.children) if i != 1]
    assert siblings_after == siblings_before
    assert updated.token_usage == 33
    assert updated.version == 2

    kwargs = generator.generate_branch_options.call_args.kwargs
    assert generator.generate_branch_options.call_args.args[0] == "Action"
    assert kwargs["node_title"] == "Action"
    assert kwargs["breadcrumb"] == ["Game Ideas"]


@pytest.mark.asyncio
async def test_submit_on_option_sets_prompt(service, generator):
    session = await seeded(service)
    target = session.root.children[0]
    updated = await service.submit_prompt("alice", session.id, target.id, "Focus on city builders")
    node = find_node_with_trail(updated.root, target.id).node
    assert node.prompt == "Focus on city builders"
    assert node.title == "Strategy"
    assert updated.title == "Game Ideas"
    generator.generate_session_title.assert_not_called()


@pytest.mark.asyncio
async def test_submit_on_root_refreshes_title(service, generator):
    session = await seeded(service)
    updated = await service.submit_prompt("alice", session.id, session.root.id, "Explore board games")
    assert updated.title == "Fresh Title"
    assert updated.root.title == "Fresh Title"
    assert updated.root.prompt == "Explore board games"
    assert updated.token_usage == 23 + 10 + 2


@pytest.mark.asyncio
async def test_specify_inserts_before_trailing_specify(service, generator):
    session = await seeded(service)
    root_id = session.root.id
    updated = await service.specify_branch("alice", session.id, root_id, "Cozy farming games")

    children = updated.root.children
    assert len(children) == 6
    custom = children[4]
    assert custom.id.startswith(f"{root_id}::spec-")
    assert custom.variant == "prompt"
    assert custom.prompt == "Cozy farming games"
    assert [c.title for c in custom.children[:4]] == ["One", "Two", "Three", "Four"]
    assert custom.children[-1].id == f"{custom.id}::specify"
    assert children[-1].id == f"{root_id}::specify"

    kwargs = generator.generate_branch_options.call_args.kwargs
    assert kwargs["breadcrumb"] == ["Game Ideas"]
    assert "node_title" not in kwargs


@pytest.mark.asyncio
async def test_specify_under_leaf_option_adds_specify(service):
    session = await seeded(service)
    leaf = session.root.children[2]
    updated = await service.specify_branch("alice", session.id, leaf.id, "Something else")
    node = find_node_with_trail(updated.root, leaf.id).node
    assert [c.variant for c in node.children] == ["prompt", "specify"]


@pytest.mark.asyncio
async def test_every_workflow_leaves_invariants(service):
    session = await seeded(service)
    session = await service.expand_option("alice", session.id, session.root.children[0].id)
    session = await service.specify_branch("alice", session.id, session.root.children[0].id, "custom")
    for node in iter_nodes(session.root):
        content = [c for c in node.children if c.variant != "specify"]
        if content:
            assert [c.variant for c in node.children].count("specify") == 1
            assert node.children[-1].variant == "specify"
        else:
            assert node.children == []


@pytest.mark.asyncio
async def test_unknown_node(service):
    session = await seeded(service)
    with pytest.raises(NodeNotFoundError, match="Target node not found"):
        await service.submit_prompt("alice", session.id, "missing", "x")
    with pytest.raises(NodeNotFoundError, match="Parent node not found"):
        await service.specify_branch("alice", session.id, "missing", "x")


@pytest.mark.asyncio
async def test_specify_nodes_cannot_be_targets(service):
    session = await seeded(service)
    specify_id = session.root.children[-1].id
    with pytest.raises(InvalidNodeOperationError):
        await service.expand_option("alice", session.id, specify_id)
    with pytest.raises(InvalidNodeOperationError):
        await service.submit_prompt("alice", session.id, specify_id, "x")
    with pytest.raises(InvalidNodeOperationError):
        await service.specify_branch("alice", session.id, specify_id, "x")


@pytest.mark.asyncio
async def test_malformed_generation_leaves_store_untouched(service, generator):
    session = await seeded(service)
    before = dump(service.get_session("alice", session.id))
    target = session.root.children[3]
    generator.generate_branch_options.side_effect = OptionsParseError("Expected 4 option strings, got 3.")

    with pytest.raises(ExpansionFailedError) as excinfo:
        await service.expand_option("alice", session.id, target.id)

    assert dump(service.get_session("alice", session.id)) == before
    failed = excinfo.value.session
    assert find_node_with_trail(failed.root, target.id).node.status == "error"
    assert [c.status for c in failed.root.children if c.id != target.id] == ["idle"] * 4
    assert excinfo.value.status_code == 502
    assert isinstance(excinfo.value.cause, OptionsParseError)


@pytest.mark.asyncio
async def test_storage_failure_returns_marked_snapshot(service):
    session = await seeded(service)
    before = dump(service.get_session("alice", session.id))
    target = session.root.children[1]
    service.repository.update = MagicMock(side_effect=StorageError("Could not save sessions: disk full"))

    with pytest.raises(ExpansionFailedError) as excinfo:
        await service.expand_option("alice", session.id, target.id)

    assert dump(service.get_session("alice", session.id)) == before
    assert find_node_with_trail(excinfo.value.session.root, target.id).node.status == "error"
    assert excinfo.value.node_id == target.id
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_stale_expected_version(service):
    session = await seeded(service)
    await service.expand_option("alice", session.id, session.root.children[0].id)
    with pytest.raises(SessionConflictError):
        await service.expand_option("alice", session.id, session.root.children[1].id, expected_version=1)


@pytest.mark.asyncio
async def test_tree_size_limit(generator):
    service = BranchingTreeService(MemorySessionRepository(), generator, max_nodes=8)
    session = await seeded(service)
    before = dump(service.get_session("alice", session.id))
    with pytest.raises(TreeTooLargeError):
        await service.expand_option("alice", session.id, session.root.children[0].id)
    assert dump(service.get_session("alice", session.id)) == before


@pytest.mark.asyncio
async def test_list_and_delete(service):
    session = await seeded(service)
    assert [s.id for s in service.list_sessions("alice")] == [session.id]
    service.delete_session("alice", session.id)
    assert service.list_sessions("alice") == []
