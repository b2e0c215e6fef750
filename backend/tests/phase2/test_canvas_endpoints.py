"""Integration tests for the canvas API: trees, send, branch, delete, layout, events."""

from forkchat.providers.base import UpstreamServiceError
from tests.fixtures import create_tree, parse_sse


def _node(detail: dict, node_id: str) -> dict:
    return next(n for n in detail["nodes"] if n["id"] == node_id)


class TestTrees:
    async def test_create_tree_has_invitation_root(self, client, settings):
        tree = await create_tree(client, title="Tides")
        assert tree["title"] == "Tides"
        assert tree["provider"] == "fake"
        assert tree["model"] == "fake-model"
        assert tree["root_id"] == "root"
        root = _node(tree, "root")
        assert root["kind"] == "message"
        assert root["is_root"] is True
        assert root["assistant_message"] == settings.invitation_message
        assert tree["edges"] == []

    async def test_unknown_provider_rejected(self, client):
        resp = await client.post("/api/trees", json={"provider": "nope"})
        assert resp.status_code == 400

    async def test_list_and_get(self, client):
        tree = await create_tree(client)
        listed = (await client.get("/api/trees")).json()
        assert [t["tree_id"] for t in listed] == [tree["tree_id"]]
        resp = await client.get(f"/api/trees/{tree['tree_id']}")
        assert resp.status_code == 200
        assert resp.json()["root_id"] == "root"

    async def test_unknown_tree(self, client):
        assert (await client.get("/api/trees/nope")).status_code == 404
        assert (await client.delete("/api/trees/nope")).status_code == 404

    async def test_delete_tree(self, client):
        tree = await create_tree(client)
        resp = await client.delete(f"/api/trees/{tree['tree_id']}")
        assert resp.status_code == 204
        assert (await client.get(f"/api/trees/{tree['tree_id']}")).status_code == 404


class TestSend:
    async def test_send_returns_completed_node(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/send", json={"text": "Hi"}
        )
        assert resp.status_code == 200
        node = resp.json()
        assert node["user_message"] == "Hi"
        assert node["assistant_message"] == "Hello"
        assert node["stream_finished"] is True

        detail = (await client.get(f"/api/trees/{tree['tree_id']}")).json()
        assert detail["pending_layout_node_ids"] == ["root"]
        assert detail["streaming_node_ids"] == []

    async def test_send_stream_emits_deltas_then_stop(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/send",
            json={"text": "Hi", "stream": True},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(resp.text)
        assert [name for name, _ in events] == ["text_delta", "text_delta", "message_stop"]
        assert [data["text"] for _, data in events[:2]] == ["Hel", "lo"]
        assert events[-1][1]["content"] == "Hello"

    async def test_send_failure_is_reported_in_node(self, client, provider):
        provider.error = UpstreamServiceError("quota exceeded", status_code=429)
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/send", json={"text": "Hi"}
        )
        assert resp.status_code == 200
        node = resp.json()
        assert node["stream_error"] == "quota exceeded"
        assert "quota exceeded" in node["assistant_message"]

    async def test_send_failure_stream_emits_error(self, client, provider):
        provider.error = UpstreamServiceError("quota exceeded")
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/send",
            json={"text": "Hi", "stream": True},
        )
        events = parse_sse(resp.text)
        assert events[-1][0] == "error"
        assert events[-1][1]["error"] == "quota exceeded"

    async def test_empty_send_rejected(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/send", json={"text": "  "}
        )
        assert resp.status_code == 400

    async def test_send_to_missing_node(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/ghost/send", json={"text": "Hi"}
        )
        assert resp.status_code == 404


class TestBranchAndHistory:
    async def test_branch_creates_anchor_and_child(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/branch",
            json={"selection": "curious", "position": {"x": 5, "y": 5}},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["node"]["context_text"] == "curious"
        assert body["anchor"]["kind"] == "anchor"
        assert body["anchor"]["parent_id"] == "root"
        assert len(body["edges"]) == 2

        history = await client.get(
            f"/api/trees/{tree['tree_id']}/nodes/{body['node']['id']}/history",
            params={"follow_up": "why?"},
        )
        messages = history.json()["messages"]
        assert messages[-1]["content"].endswith("User follow-up: why?")
        assert "<context_attachment>\ncurious\n</context_attachment>" in messages[-1]["content"]

    async def test_blank_selection_is_no_content(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/branch", json={"selection": " "}
        )
        assert resp.status_code == 204

    async def test_isolated_branch_history_is_empty(self, client):
        tree = await create_tree(client)
        c1 = (
            await client.post(
                f"/api/trees/{tree['tree_id']}/nodes/root/branch", json={"selection": "foo"}
            )
        ).json()["node"]
        c2 = (
            await client.post(
                f"/api/trees/{tree['tree_id']}/nodes/{c1['id']}/branch",
                json={"selection": "bar", "isolated": True},
            )
        ).json()["node"]
        resp = await client.get(f"/api/trees/{tree['tree_id']}/nodes/{c2['id']}/history")
        assert resp.json()["messages"] == []

    async def test_history_of_missing_node(self, client):
        tree = await create_tree(client)
        resp = await client.get(f"/api/trees/{tree['tree_id']}/nodes/ghost/history")
        assert resp.status_code == 404


class TestDeleteAndEdit:
    async def test_delete_branch(self, client):
        tree = await create_tree(client)
        tree_id = tree["tree_id"]
        c1 = (
            await client.post(f"/api/trees/{tree_id}/nodes/root/branch", json={"selection": "foo"})
        ).json()
        await client.post(
            f"/api/trees/{tree_id}/nodes/{c1['node']['id']}/branch",
            json={"selection": "bar", "isolated": True},
        )

        resp = await client.delete(f"/api/trees/{tree_id}/nodes/{c1['node']['id']}")

        assert resp.status_code == 200
        assert c1["anchor"]["id"] in resp.json()["node_ids"]
        detail = (await client.get(f"/api/trees/{tree_id}")).json()
        assert [n["id"] for n in detail["nodes"]] == ["root"]
        assert detail["edges"] == []

    async def test_delete_root_rejected(self, client):
        tree = await create_tree(client)
        resp = await client.delete(f"/api/trees/{tree['tree_id']}/nodes/root")
        assert resp.status_code == 400

    async def test_edit_node(self, client):
        tree = await create_tree(client)
        resp = await client.patch(
            f"/api/trees/{tree['tree_id']}/nodes/root",
            json={"user_message": "draft", "position": {"x": 1, "y": 2}},
        )
        assert resp.status_code == 200
        assert resp.json()["user_message"] == "draft"
        assert resp.json()["position"] == {"x": 1.0, "y": 2.0}


class TestLayout:
    async def test_follow_up_after_send(self, client):
        tree = await create_tree(client)
        tree_id = tree["tree_id"]
        await client.post(f"/api/trees/{tree_id}/nodes/root/send", json={"text": "Hi"})

        resp = await client.post(f"/api/trees/{tree_id}/nodes/root/layout", json={"height": 100})
        assert resp.status_code == 201
        follow_up = resp.json()
        assert follow_up["user_message"] == ""

        again = await client.post(f"/api/trees/{tree_id}/nodes/root/layout", json={"height": 100})
        assert again.status_code == 204

    async def test_layout_without_completion(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/layout", json={"height": 100}
        )
        assert resp.status_code == 204

    async def test_negative_height_rejected(self, client):
        tree = await create_tree(client)
        resp = await client.post(
            f"/api/trees/{tree['tree_id']}/nodes/root/layout", json={"height": -1}
        )
        assert resp.status_code == 422


class TestEvents:
    async def test_backlog_replayed_with_limit(self, client):
        tree = await create_tree(client)
        tree_id = tree["tree_id"]
        await client.post(f"/api/trees/{tree_id}/nodes/root/branch", json={"selection": "foo"})

        resp = await client.get(f"/api/trees/{tree_id}/events", params={"limit": 3})

        events = parse_sse(resp.text)
        assert [name for name, _ in events] == ["NodeCreated", "NodeCreated", "NodeCreated"]
        assert [data["sequence_num"] for _, data in events] == [1, 2, 3]
        assert "id: 1\n" in resp.text

    async def test_since_skips_seen_events(self, client):
        tree = await create_tree(client)
        tree_id = tree["tree_id"]
        await client.post(f"/api/trees/{tree_id}/nodes/root/branch", json={"selection": "foo"})

        resp = await client.get(f"/api/trees/{tree_id}/events", params={"since": 3, "limit": 2})

        events = parse_sse(resp.text)
        assert [name for name, _ in events] == ["EdgeCreated", "EdgeCreated"]


class TestMeta:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.json()["status"] == "ok"

    async def test_providers(self, client):
        resp = await client.get("/api/providers")
        assert resp.json() == [{"name": "fake", "available": True, "models": ["fake-model"]}]
