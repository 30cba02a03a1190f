"""Tests for the audit HTTP surface: ingestion, scoping and admin-only views."""
from tests.conftest import ADMIN_HEADERS, auth_headers

STUDENT = auth_headers("s-1", "STUDENT", name="Sam", email="sam@lab.test")
LABO = auth_headers("l-1", "LABORANTIN", name="Lea")
ADMINLABO = auth_headers("al-1", "ADMINLABO", name="Alan")


def _log(client, headers, module="CHEMICALS", action="CREATE", entity="chemical", entity_id="42", **extra):
    body = {"action": {"type": action, "module": module, "entity": entity, "entityId": entity_id}}
    body.update(extra)
    return client.post("/api/audit/logs", json=body, headers=headers)


class TestIngestion:

    def test_caller_becomes_the_actor(self, client):
        resp = _log(client, LABO)
        assert resp.status_code == 201
        assert resp.json()["success"] is True

        entries = client.get("/api/audit/logs", headers=LABO).json()["entries"]
        assert len(entries) == 1
        assert entries[0]["user"]["id"] == "l-1"
        assert entries[0]["user"]["role"] == "LABORANTIN"
        assert entries[0]["action"]["entityId"] == "42"
        assert entries[0]["context"]["method"] == "POST"

    def test_client_context_is_merged(self, client):
        _log(client, LABO, context={"sessionId": "sess-9", "durationMs": 12})
        entry = client.get("/api/audit/logs", headers=LABO).json()["entries"][0]
        assert entry["context"]["sessionId"] == "sess-9"
        assert entry["context"]["durationMs"] == 12
        assert entry["context"]["path"] == "/api/audit/logs"

    def test_anonymous_is_unauthorized(self, client):
        assert _log(client, {}).status_code == 401

    def test_guest_is_unauthorized(self, client):
        assert _log(client, auth_headers("guest", "GUEST")).status_code == 401

    def test_cannot_log_for_someone_else(self, client):
        resp = _log(client, STUDENT, user={"id": "l-1", "role": "LABORANTIN"})
        assert resp.status_code == 403

    def test_admin_may_log_for_someone_else(self, client):
        resp = _log(client, ADMIN_HEADERS, user={"id": "l-1", "role": "LABORANTIN"})
        assert resp.status_code == 201

    def test_actor_role_is_optional(self, client):
        resp = _log(client, ADMIN_HEADERS, user={"id": "7"})
        assert resp.status_code == 201

        entries = client.get("/api/audit/logs", params={"userId": "7"}, headers=ADMIN_HEADERS).json()["entries"]
        assert len(entries) == 1
        assert entries[0]["user"]["id"] == "7"
        assert entries[0]["user"]["role"] is None

    def test_invalid_action_is_rejected(self, client):
        resp = _log(client, LABO, action="EXPLODE")
        assert resp.status_code == 422


class TestScoping:

    def test_non_admin_sees_only_own_history(self, client):
        _log(client, LABO)
        _log(client, STUDENT, module="CALENDAR", entity="event")
        entries = client.get("/api/audit/logs", headers=STUDENT).json()["entries"]
        assert {e["user"]["id"] for e in entries} == {"s-1"}

    def test_non_admin_cannot_ask_for_another_user(self, client):
        resp = client.get("/api/audit/logs", params={"userId": "l-1"}, headers=STUDENT)
        assert resp.status_code == 403
        resp = client.get("/api/audit/users/l-1/activity", headers=STUDENT)
        assert resp.status_code == 403

    def test_admin_sees_everyone(self, client):
        _log(client, LABO)
        _log(client, STUDENT, module="CALENDAR", entity="event")
        body = client.get("/api/audit/logs", headers=ADMINLABO).json()
        assert body["total"] == 2

    def test_module_activity_is_admin_only(self, client):
        assert client.get("/api/audit/modules/CHEMICALS/activity", headers=LABO).status_code == 403
        _log(client, LABO)
        resp = client.get("/api/audit/modules/CHEMICALS/activity", headers=ADMINLABO)
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    def test_stats_are_admin_only(self, client):
        assert client.get("/api/audit/stats", headers=STUDENT).status_code == 403
        _log(client, LABO)
        stats = client.get("/api/audit/stats", headers=ADMIN_HEADERS).json()
        assert stats["totalEntries"] == 1
        assert stats["byUser"] == {"l-1": 1}


class TestQueries:

    def test_filters_and_pagination(self, client):
        for i in range(5):
            _log(client, LABO, entity_id=str(i))
        _log(client, LABO, module="ROOMS", entity="room")
        body = client.get(
            "/api/audit/logs", params={"module": "CHEMICALS", "limit": 2}, headers=LABO,
        ).json()
        assert body["total"] == 5
        assert len(body["entries"]) == 2

    def test_feed_cursor(self, client):
        for i in range(3):
            _log(client, LABO, entity_id=str(i))
        page1 = client.get("/api/audit/logs/feed", params={"limit": 2}, headers=LABO).json()
        assert len(page1["items"]) == 2
        assert page1["nextCursor"] == page1["items"][-1]["id"]
        page2 = client.get(
            "/api/audit/logs/feed", params={"limit": 2, "cursor": page1["nextCursor"]}, headers=LABO,
        ).json()
        assert len(page2["items"]) == 1
        assert page2["nextCursor"] is None

    def test_search(self, client):
        _log(client, LABO, entity="chemical", details={"reason": "Quarterly RESTOCK"})
        _log(client, LABO, entity="chemical")
        body = client.get("/api/audit/logs", params={"search": "restock"}, headers=LABO).json()
        assert body["total"] == 1

    def test_bad_date_is_422(self, client):
        resp = client.get("/api/audit/logs", params={"start": "not-a-date"}, headers=LABO)
        assert resp.status_code == 422

    def test_own_activity(self, client):
        _log(client, LABO)
        resp = client.get("/api/audit/users/l-1/activity", headers=LABO)
        assert resp.status_code == 200
        assert len(resp.json()) == 1


class TestRetention:

    def test_purge_requires_admin(self, client):
        assert client.delete("/api/audit/logs", headers=ADMINLABO).status_code == 403

    def test_purge_keeps_recent_events(self, client):
        _log(client, LABO)
        resp = client.delete("/api/audit/logs", params={"olderThanDays": 30}, headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["deleted"] == 0
        assert client.get("/api/audit/logs", headers=LABO).json()["total"] == 1


class TestRecordAndNotify:

    def test_logged_action_reaches_target_role_inbox(self, client, audit_logger):
        _log(client, LABO, module="CHEMICALS", action="CREATE", entity_id="99")
        assert audit_logger.force_flush(timeout=5)
        inbox = client.get("/api/notifications/", headers=ADMINLABO).json()
        assert inbox["total"] == 1
        assert inbox["unread"] == 1
        assert inbox["notifications"][0]["data"]["entityId"] == "99"
        student_inbox = client.get("/api/notifications/", headers=STUDENT).json()
        assert student_inbox["total"] == 0
