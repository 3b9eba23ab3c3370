"""Tests for the node arena and the generic tree walker."""

from docbridge.arena import NodeArena, NodeKind, split_padding, walk


def test_split_padding():
    assert split_padding("  Hello world \n") == ("  ", "Hello world", " \n")
    assert split_padding("tight") == ("", "tight", "")
    assert split_padding("   ") == ("   ", "", "")


def test_walk_yields_text_in_document_order():
    tree = ("root", [("p", ["one", ("b", ["two"]), "three"]), ("br", []), "four"])

    def classify(node):
        if isinstance(node, str):
            return NodeKind.TEXT
        return NodeKind.ELEMENT if node[1] else NodeKind.SELF_CLOSING

    assert list(walk(tree, classify, lambda node: node[1])) == ["one", "two", "three", "four"]


def test_arena_tracks_changes_per_part():
    arena = NodeArena()
    first = arena.add("node-a", " Hello ", part="word/document.xml")
    second = arena.add("node-b", "Footer", part="word/footer1.xml")

    assert arena.assign(first, "Hola") == " Hola "
    assert arena.assign(second, "Footer") == "Footer"
    assert arena.changed_parts() == {"word/document.xml"}

    arena.rebind(first, "node-c")
    assert arena[first].node == "node-c"
    assert arena[first].original == " Hello "
    assert len(arena) == 2
