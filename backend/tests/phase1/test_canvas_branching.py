"""Tests for Canvas branch, delete and edit commands."""

import pytest

from forkchat.generation.coordinator import StreamCoordinator
from forkchat.generation.layout import FollowUpPlacer
from forkchat.models import AnchorNode, MessageNode, Position
from forkchat.tree.store import NotFoundError
from forkchat.trees.canvas import ROOT_ID, Canvas, RootDeletionError
from tests.fixtures import FakeProvider, add_child, make_store_with_root

FOO_CONTEXT = "<context_attachment>\nfoo\n</context_attachment>\n\nUser follow-up: "


@pytest.fixture
def hi_canvas(canvas):
    """Canvas whose root says "Hi"."""
    canvas.store.patch_node(ROOT_ID, {"assistant_message": "Hi"})
    return canvas


class TestEnsureRoot:
    def test_root_created_once(self, canvas, settings):
        root = canvas.store.get_message_node(ROOT_ID)
        assert root.is_root
        assert root.assistant_message == settings.invitation_message
        assert root.user_message == ""
        assert canvas.ensure_root() == root
        assert len(canvas.store) == 1

    def test_root_position_from_settings(self, canvas, settings):
        assert canvas.store.get_node(ROOT_ID).position == settings.layout.root_position


class TestBranch:
    def test_branch_through_anchor(self, hi_canvas):
        result = hi_canvas.branch(ROOT_ID, "foo", position=Position(x=10, y=20))

        child = result.node
        assert child.context_text == "foo"
        assert child.is_isolated is False
        assert child.user_message == ""
        assert isinstance(result.anchor, AnchorNode)
        assert result.anchor.parent_id == ROOT_ID
        assert result.anchor.position == Position(x=10, y=20)
        assert child.position == Position(x=10, y=48)
        assert [(e.source, e.target) for e in result.edges] == [
            (ROOT_ID, result.anchor.id),
            (result.anchor.id, child.id),
        ]
        assert result.edges[1].target_handle == "input"

    def test_branch_without_anchor(self, hi_canvas):
        result = hi_canvas.branch(ROOT_ID, "foo", use_anchor=False)
        assert result.anchor is None
        edge = result.edges[0]
        assert (edge.source, edge.target) == (ROOT_ID, result.node.id)
        assert (edge.source_handle, edge.target_handle) == ("output", "input")

    def test_branch_trims_selection(self, hi_canvas):
        result = hi_canvas.branch(ROOT_ID, "  foo \n")
        assert result.node.context_text == "foo"

    def test_blank_selection_is_a_no_op(self, hi_canvas):
        assert hi_canvas.branch(ROOT_ID, "   ") is None
        assert len(hi_canvas.store) == 1

    def test_source_is_untouched(self, hi_canvas):
        before = hi_canvas.store.get_node(ROOT_ID)
        hi_canvas.branch(ROOT_ID, "foo")
        assert hi_canvas.store.get_node(ROOT_ID) is before

    def test_branch_from_missing_node(self, hi_canvas):
        with pytest.raises(NotFoundError):
            hi_canvas.branch("ghost", "foo")

    def test_history_of_fresh_branch(self, hi_canvas):
        c1 = hi_canvas.branch(ROOT_ID, "foo").node
        assert hi_canvas.history(c1.id, "")[-1] == {"role": "user", "content": FOO_CONTEXT}

    def test_isolated_branch_has_no_history(self, hi_canvas):
        c1 = hi_canvas.branch(ROOT_ID, "foo").node
        hi_canvas.store.patch_node(c1.id, {"user_message": "q", "assistant_message": "a"})
        c2 = hi_canvas.branch(c1.id, "a", isolated=True).node
        assert c2.is_isolated
        assert hi_canvas.history(c2.id) == []


class TestDelete:
    def test_delete_branch_removes_anchor_and_descendants(self, hi_canvas):
        c1 = hi_canvas.branch(ROOT_ID, "foo").node
        hi_canvas.branch(c1.id, "bar", isolated=True)

        hi_canvas.delete(c1.id)

        nodes, edges = hi_canvas.snapshot()
        assert [n.id for n in nodes] == [ROOT_ID]
        assert edges == []

    def test_root_is_protected(self, hi_canvas):
        with pytest.raises(RootDeletionError):
            hi_canvas.delete(ROOT_ID)
        assert hi_canvas.store.has_node(ROOT_ID)

    def test_delete_missing_node(self, hi_canvas):
        with pytest.raises(NotFoundError):
            hi_canvas.delete("ghost")

    def test_delete_clears_pending_follow_up(self, hi_canvas):
        c1 = hi_canvas.branch(ROOT_ID, "foo").node
        hi_canvas.placer.request(c1.id)
        hi_canvas.delete(c1.id)
        assert hi_canvas.placer.pending() == []

    def test_sibling_branches_survive(self, hi_canvas):
        c1 = hi_canvas.branch(ROOT_ID, "foo").node
        c2 = hi_canvas.branch(ROOT_ID, "bar").node
        hi_canvas.delete(c1.id)
        assert hi_canvas.store.has_node(c2.id)
        assert hi_canvas.store.parent_of(c2.id) == f"anchor-{c2.id}"


class TestEdit:
    def test_edit_user_message(self, hi_canvas):
        node = hi_canvas.edit(ROOT_ID, user_message="draft")
        assert isinstance(node, MessageNode)
        assert node.user_message == "draft"

    def test_move_anchor(self, hi_canvas):
        anchor = hi_canvas.branch(ROOT_ID, "foo").anchor
        moved = hi_canvas.edit(anchor.id, position=Position(x=1, y=2))
        assert moved.position == Position(x=1, y=2)

    def test_anchor_has_no_user_message(self, hi_canvas):
        anchor = hi_canvas.branch(ROOT_ID, "foo").anchor
        with pytest.raises(NotFoundError):
            hi_canvas.edit(anchor.id, user_message="nope")

    def test_empty_edit_returns_node(self, hi_canvas):
        assert hi_canvas.edit(ROOT_ID).id == ROOT_ID


class TestSendThroughCanvas:
    async def test_send_then_follow_up_is_pending(self, hi_canvas):
        node = await hi_canvas.send(ROOT_ID, "Tell me about tides")
        assert node.assistant_message == "Hello"
        assert hi_canvas.placer.is_pending(ROOT_ID)


class TestHistoryView:
    def test_history_skips_the_coordinator_placeholder(self):
        store = make_store_with_root("Thinking hard")
        add_child(store, "root", "n")
        coordinator = StreamCoordinator(
            store, FakeProvider(), model="fake-model", placeholder="Thinking hard"
        )
        canvas = Canvas(store, coordinator, FollowUpPlacer(store))

        assert canvas.history("n") == []
        assert canvas.history("n", follow_up="hi") == [{"role": "user", "content": "hi"}]
