"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Routes run against the in-memory SQLite engine via dependency
overrides.  Checks status codes, the camelCase contract and the
``{"error", "detail"}`` error body.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from starling.api.deps import get_config, get_engine, get_fanout, get_hub
from starling.config import StarlingConfig
from starling.engine.realtime import RealtimeHub


@pytest.fixture
def client(db_engine, fanout):
    from starling.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_fanout] = lambda: fanout
    app.dependency_overrides[get_config] = lambda: StarlingConfig(fanout_backend="local")
    app.dependency_overrides[get_hub] = RealtimeHub
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _create_post(client, author, **body):
    payload = {"authorId": author, "selfRating": 4, "text": "hello", **body}
    resp = client.post("/api/posts", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()["postId"]


# ===========================================================================
# Health
# ===========================================================================
class TestHealth:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_fanout_health(self, client):
        body = client.get("/api/health/fanout").json()
        assert body["backend"] == "local"
        assert body["listening"] is False


# ===========================================================================
# Posts & votes
# ===========================================================================
class TestPostRoutes:
    def test_create_and_rate(self, client, alice, bob):
        post_id = _create_post(client, alice)

        resp = client.post(f"/api/posts/{post_id}/votes", json={"voterId": bob, "stars": 5})
        assert resp.status_code == 200
        assert resp.json() == {"averageRating": 5.0}

        rating = client.get(f"/api/posts/{post_id}/rating").json()
        assert rating == {"postId": post_id, "averageRating": 5.0, "voteCount": 1}

    def test_invalid_self_rating_is_400(self, client, alice):
        resp = client.post("/api/posts", json={"authorId": alice, "selfRating": 9})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_input"

    def test_missing_field_is_422(self, client):
        resp = client.post("/api/posts", json={"selfRating": 3})
        assert resp.status_code == 422

    def test_self_vote_is_403(self, client, alice):
        post_id = _create_post(client, alice)
        resp = client.post(f"/api/posts/{post_id}/votes", json={"voterId": alice, "stars": 3})
        assert resp.status_code == 403
        assert resp.json()["error"] == "self_vote_forbidden"

    def test_vote_unknown_post_is_404(self, client, bob):
        resp = client.post("/api/posts/999/votes", json={"voterId": bob, "stars": 3})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_delete_by_author(self, client, alice):
        post_id = _create_post(client, alice)
        resp = client.request("DELETE", f"/api/posts/{post_id}", json={"actingUserId": alice})
        assert resp.status_code == 200
        assert client.get(f"/api/posts/{post_id}/rating").status_code == 404

    def test_delete_by_other_is_403(self, client, alice, bob):
        post_id = _create_post(client, alice)
        resp = client.request("DELETE", f"/api/posts/{post_id}", json={"actingUserId": bob})
        assert resp.status_code == 403

    def test_feed(self, client, alice, bob):
        post_id = _create_post(client, alice, kind="story")
        client.post(f"/api/posts/{post_id}/votes", json={"voterId": bob, "stars": 2})

        resp = client.get("/api/feed", params={"viewerId": bob, "scope": "stories"})
        assert resp.status_code == 200
        items = resp.json()
        assert len(items) == 1
        assert items[0]["postId"] == post_id
        assert items[0]["userVote"] == 2
        assert items[0]["kind"] == "story"

    def test_feed_bad_scope_is_400(self, client, bob):
        resp = client.get("/api/feed", params={"viewerId": bob, "scope": "everything"})
        assert resp.status_code == 400


# ===========================================================================
# Friendships
# ===========================================================================
class TestFriendshipRoutes:
    def test_request_accept_unfriend(self, client, alice, bob):
        resp = client.post("/api/friendships", json={"senderId": alice, "receiverId": bob})
        assert resp.status_code == 201
        fid = resp.json()["friendshipId"]

        requests = client.get(f"/api/users/{bob}/friend-requests").json()
        assert [r["senderId"] for r in requests] == [alice]

        resp = client.patch(f"/api/friendships/{fid}", json={"actingUserId": bob, "action": "accept"})
        assert resp.json() == {"ok": True}

        rel = client.get(f"/api/users/{alice}/relationship/{bob}").json()
        assert rel["status"] == "accepted"
        assert [f["username"] for f in client.get(f"/api/users/{alice}/friends").json()] == ["bob"]

        resp = client.request("DELETE", f"/api/friendships/{fid}", json={"actingUserId": alice})
        assert resp.status_code == 200
        assert client.get(f"/api/users/{bob}/relationship/{alice}").json()["status"] == "none"

    def test_duplicate_is_409(self, client, alice, bob):
        client.post("/api/friendships", json={"senderId": alice, "receiverId": bob})
        resp = client.post("/api/friendships", json={"senderId": bob, "receiverId": alice})
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    def test_self_request_is_400(self, client, alice):
        resp = client.post("/api/friendships", json={"senderId": alice, "receiverId": alice})
        assert resp.status_code == 400

    def test_sender_accept_is_403(self, client, alice, bob):
        fid = client.post(
            "/api/friendships", json={"senderId": alice, "receiverId": bob},
        ).json()["friendshipId"]
        resp = client.patch(f"/api/friendships/{fid}", json={"actingUserId": alice, "action": "accept"})
        assert resp.status_code == 403

    def test_unknown_action_is_400(self, client, alice, bob):
        fid = client.post(
            "/api/friendships", json={"senderId": alice, "receiverId": bob},
        ).json()["friendshipId"]
        resp = client.patch(f"/api/friendships/{fid}", json={"actingUserId": bob, "action": "maybe"})
        assert resp.status_code == 400


# ===========================================================================
# Per-user reads
# ===========================================================================
class TestUserRoutes:
    def test_daily_progress_for_date(self, client, alice):
        resp = client.get(f"/api/users/{alice}/daily-progress", params={"date": "2026-01-01"})
        assert resp.status_code == 200
        assert resp.json() == {
            "userId": alice,
            "date": "2026-01-01",
            "postCount": 0,
            "voteCount": 0,
            "completed": False,
            "needsPost": True,
            "needsVotes": True,
            "votesRemaining": 3,
        }

    def test_daily_progress_today_counts_post(self, client, alice):
        _create_post(client, alice)
        body = client.get(f"/api/users/{alice}/daily-progress").json()
        assert body["postCount"] == 1
        assert body["needsPost"] is False

    def test_streak(self, client, alice):
        body = client.get(f"/api/users/{alice}/streak").json()
        assert body == {
            "userId": alice,
            "currentStreak": 0,
            "longestStreak": 0,
            "lastCompletedDate": None,
        }

    def test_stats(self, client, alice):
        _create_post(client, alice)
        assert client.get(f"/api/users/{alice}/stats").json() == {
            "userId": alice, "posts": 1, "votes": 0, "friends": 0,
        }

    def test_unknown_user_is_404(self, client):
        assert client.get("/api/users/404/streak").status_code == 404
        assert client.get("/api/users/404/friends").status_code == 404

    def test_activity_log(self, client, alice):
        _create_post(client, alice)
        events = client.get(f"/api/users/{alice}/activity").json()
        assert [e["eventType"] for e in events] == ["post_created"]
