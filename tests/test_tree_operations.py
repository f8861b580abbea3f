import pytest
from app.models.tree import BranchNode
from app.tree.builders import create_option_children, create_specify_node
from app.tree.operations import (
    breadcrumb_titles,
    clone_tree,
    count_nodes,
    ensure_specify_child,
    find_node_with_trail,
    iter_nodes,
    normalize_tree,
    walk_tree,
)


def make_tree():
    """root -> [a (with a1, a2), b, specify]"""
    return BranchNode(
        id="root",
        title="Root",
        prompt="Explore games",
        children=[
            BranchNode(
                id="a",
                title="Option A",
                variant="option",
                children=[
                    BranchNode(id="a1", title="A1", variant="option"),
                    BranchNode(id="a2", title="A2", variant="option"),
                ],
            ),
            BranchNode(id="b", title="Option B", variant="option"),
            create_specify_node("root"),
        ],
    )


def messy_tree():
    return BranchNode(
        id="root",
        children=[
            BranchNode(id="root::specify", variant="specify"),
            BranchNode(id="x", variant="option", children=[
                BranchNode(id="x::specify", variant="specify", children=[BranchNode(id="bogus")]),
            ]),
            BranchNode(id="y", variant="option", children=[
                BranchNode(id="y1", variant="option"),
            ]),
            BranchNode(id="root::specify-2", variant="specify"),
        ],
    )


def assert_invariants(root):
    for node in iter_nodes(root):
        content = [c for c in node.children if c.variant != "specify"]
        specify = [c for c in node.children if c.variant == "specify"]
        if node.variant == "specify":
            assert node.children == []
        elif content:
            assert len(specify) == 1
            assert node.children[-1].variant == "specify"
        else:
            assert node.children == []


def test_find_child_of_root_returns_parent_and_breadcrumb():
    tree = make_tree()
    match = find_node_with_trail(tree, "a")
    assert match is not None
    assert match.node.id == "a"
    assert match.parent is tree
    assert [n.id for n in match.breadcrumb] == ["root"]


def test_find_root_has_no_parent():
    tree = make_tree()
    match = find_node_with_trail(tree, "root")
    assert match.node is tree
    assert match.parent is None
    assert match.breadcrumb == []


def test_find_deep_node_breadcrumb_in_order():
    tree = make_tree()
    match = find_node_with_trail(tree, "a2")
    assert match.parent.id == "a"
    assert [n.id for n in match.breadcrumb] == ["root", "a"]


def test_find_missing_node_returns_none():
    assert find_node_with_trail(make_tree(), "nope") is None


def test_found_node_is_live_reference():
    tree = make_tree()
    find_node_with_trail(tree, "b").node.prompt = "changed"
    assert tree.children[1].prompt == "changed"


def test_clone_is_deep():
    tree = make_tree()
    copy = clone_tree(tree)
    assert copy == tree
    copy.children[0].children.append(BranchNode(id="a3", variant="option"))
    copy.children[1].title = "Edited"
    assert len(tree.children[0].children) == 2
    assert tree.children[1].title == "Option B"


def test_walk_tree_is_preorder_with_parents():
    visited = []
    walk_tree(make_tree(), lambda node, parent: visited.append((node.id, parent.id if parent else None)))
    assert visited == [
        ("root", None),
        ("a", "root"),
        ("a1", "a"),
        ("a2", "a"),
        ("b", "root"),
        ("root::specify", "root"),
    ]


def test_ensure_adds_missing_specify_last():
    node = BranchNode(id="n", children=[BranchNode(id="n::opt-1", variant="option")])
    ensure_specify_child(node, create_specify_node)
    assert [c.id for c in node.children] == ["n::opt-1", "n::specify"]


def test_ensure_drops_specify_on_empty_branch():
    node = BranchNode(id="n", children=[create_specify_node("n")])
    ensure_specify_child(node, create_specify_node)
    assert node.children == []


def test_ensure_keeps_existing_stateful_specify():
    stateful = BranchNode(id="n::specify", variant="specify", prompt="draft", status="loading")
    node = BranchNode(id="n", children=[stateful, BranchNode(id="o", variant="option")])
    ensure_specify_child(node, lambda parent_id: pytest.fail("factory should not be called"))
    assert [c.id for c in node.children] == ["o", "n::specify"]
    assert node.children[-1] is stateful


def test_ensure_clears_children_of_specify_node():
    node = BranchNode(id="s", variant="specify", children=[BranchNode(id="child")])
    ensure_specify_child(node, create_specify_node)
    assert node.children == []


def test_ensure_collapses_duplicate_specify_nodes():
    node = BranchNode(id="n", children=[
        BranchNode(id="first", variant="specify"),
        BranchNode(id="o", variant="option"),
        BranchNode(id="second", variant="specify"),
    ])
    ensure_specify_child(node, create_specify_node)
    assert [c.id for c in node.children] == ["o", "first"]


def test_normalize_establishes_invariants_tree_wide():
    tree = normalize_tree(messy_tree(), create_specify_node)
    assert_invariants(tree)
    assert [c.id for c in tree.children] == ["x", "y", "root::specify"]
    # x only had a specify child, so it ends up empty
    assert tree.children[0].children == []
    assert [c.id for c in tree.children[1].children] == ["y1", "y::specify"]


def test_normalize_is_idempotent():
    once = normalize_tree(messy_tree(), create_specify_node)
    twice = normalize_tree(clone_tree(once), create_specify_node)
    assert twice.model_dump() == once.model_dump()


def test_attaching_options_to_bare_root():
    root = BranchNode(id="R", prompt="start")
    root.children = create_option_children("R", ["one", "two", "three", "four"])[:-1]
    normalize_tree(root, create_specify_node)
    assert len(root.children) == 5
    assert root.children[-1].variant == "specify"
    assert [c.variant for c in root.children[:4]] == ["option"] * 4
    assert [c.title for c in root.children[:4]] == ["one", "two", "three", "four"]


def test_breadcrumb_titles_skip_specify_and_empty():
    tree = BranchNode(id="r", title="Root", children=[
        BranchNode(id="s", variant="prompt", title="", children=[
            BranchNode(id="leaf", title="Leaf", variant="option"),
        ]),
    ])
    match = find_node_with_trail(tree, "leaf")
    assert breadcrumb_titles(match) == ["Root"]
    assert breadcrumb_titles(match, include_node=True) == ["Root", "Leaf"]


def test_count_nodes():
    assert count_nodes(make_tree()) == 6
