"""Tests for CMS masters, content, dashboard and the audit trail."""

from unittest.mock import patch
from uuid import uuid4

from tatami.models.tables import AdminLog, Content, Interest, Master

MASTER_BODY = {
    "name": "佐藤",
    "name_en": "Sato",
    "title": "陶芸家",
    "title_en": "Potter",
    "top_clips": [{"url": "/api/media/videos/sato.mp4"}],
    "has_trip_product": True,
    "trip_booking_url": "https://tatamilabs.com/trips/sato",
    "priority": 5,
}


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class TestGate:
    MUTATIONS = [
        ("post", "/api/cms/masters", MASTER_BODY),
        ("post", "/api/cms/content", {"title": "t", "slug": "t", "body": "b"}),
        ("post", "/api/cms/users", {"email": "new@example.com"}),
    ]

    def test_anonymous_gets_401(self, client, rows):
        for method, path, body in self.MUTATIONS:
            assert getattr(client, method)(path, json=body).status_code == 401
        assert rows(Master) == []
        assert rows(Content) == []

    def test_plain_user_gets_403(self, client, make_user, auth, rows):
        user = make_user()
        for method, path, body in self.MUTATIONS:
            resp = getattr(client, method)(path, json=body, headers=auth(user))
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "FORBIDDEN"
        assert rows(Master) == []
        assert rows(Content) == []
        assert rows(AdminLog) == []

    def test_override_grants_permission(self, client, make_user, auth):
        user = make_user(permissions=["VIEW_LOGS"])
        assert client.get("/api/cms/logs", headers=auth(user)).status_code == 200
        assert client.get("/api/cms/dashboard", headers=auth(user)).status_code == 403


# ---------------------------------------------------------------------------
# Masters
# ---------------------------------------------------------------------------

class TestCmsMasters:
    def test_create_and_audit(self, client, make_user, auth, rows):
        admin = make_user(role="ADMIN")
        resp = client.post("/api/cms/masters", headers=auth(admin), json=MASTER_BODY)
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["name_en"] == "Sato"
        assert data["top_clips"] == [{"url": "/api/media/videos/sato.mp4"}]
        assert data["interest_count"] == 0

        [log] = rows(AdminLog)
        assert log.action == "CREATE_MASTER"
        assert log.user_id == admin.id
        assert log.entity_id == data["id"]

    def test_empty_json_fields_round_trip(self, client, make_user, auth, rows):
        admin = make_user(role="ADMIN")
        body = {**MASTER_BODY, "top_clips": [], "story_content": {}}
        data = client.post("/api/cms/masters", headers=auth(admin), json=body).json()["data"]
        assert data["top_clips"] == []
        assert data["story_content"] == {}
        assert data["mission_card"] is None

        [row] = rows(Master)
        assert row.top_clips == "[]"
        assert row.story_content == "{}"
        assert row.mission_card is None

    def test_rejects_internal_booking_url(self, client, make_user, auth, rows):
        admin = make_user(role="ADMIN")
        body = {**MASTER_BODY, "trip_booking_url": "http://localhost/book"}
        assert client.post("/api/cms/masters", headers=auth(admin), json=body).status_code == 400
        assert rows(Master) == []

    def test_update_records_changes(self, client, make_user, make_master, auth, rows):
        admin = make_user(role="ADMIN")
        master = make_master(name="Old", title="Potter")
        resp = client.put(f"/api/cms/masters/{master.id}", headers=auth(admin),
                          json={"name": "New", "title": "Potter"})
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "New"
        [log] = rows(AdminLog)
        assert log.action == "UPDATE_MASTER"
        assert "name" in log.details["changes"]
        assert "title" not in log.details["changes"]

    def test_list_includes_inactive_and_is_audited(self, client, make_user, make_master, auth, rows):
        admin = make_user(role="ADMIN")
        make_master(name="On")
        make_master(name="Off", is_active=False)

        data = client.get("/api/cms/masters", headers=auth(admin)).json()["data"]
        assert {m["name"] for m in data["masters"]} == {"On", "Off"}
        data = client.get("/api/cms/masters?status=inactive", headers=auth(admin)).json()["data"]
        assert [m["name"] for m in data["masters"]] == ["Off"]
        assert [log.action for log in rows(AdminLog)] == ["VIEW_MASTERS", "VIEW_MASTERS"]

    def test_bad_sort_rejected(self, client, make_user, auth):
        admin = make_user(role="ADMIN")
        assert client.get("/api/cms/masters?sort_by=password", headers=auth(admin)).status_code == 400

    def test_delete_needs_permission(self, client, make_user, make_master, auth):
        # ADMIN's base set has no DELETE_MASTERS
        master = make_master()
        assert client.delete(f"/api/cms/masters/{master.id}", headers=auth(make_user(role="ADMIN"))).status_code == 403

    def test_delete_blocked_by_interests(self, client, make_user, make_master, add, auth, rows):
        master = make_master()
        add(Interest(user_id=make_user().id, master_id=master.id))
        root = make_user(role="SUPER_ADMIN")

        resp = client.delete(f"/api/cms/masters/{master.id}", headers=auth(root))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "HAS_INTERESTS"
        assert rows(Master)[0].is_active is True
        assert rows(AdminLog) == []

    def test_delete_is_soft(self, client, make_user, make_master, auth, rows):
        master = make_master()
        root = make_user(role="SUPER_ADMIN")

        resp = client.delete(f"/api/cms/masters/{master.id}", headers=auth(root))
        assert resp.status_code == 200
        [row] = rows(Master)
        assert row.is_active is False
        assert client.get(f"/api/masters/{master.id}").status_code == 404

    def test_unknown_master(self, client, make_user, auth):
        admin = make_user(role="ADMIN")
        assert client.get(f"/api/cms/masters/{uuid4()}", headers=auth(admin)).status_code == 404


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

class TestCmsContent:
    def test_create_draft(self, client, make_user, auth):
        admin = make_user(role="ADMIN")
        resp = client.post("/api/cms/content", headers=auth(admin),
                           json={"title": "Kintsugi", "slug": "kintsugi", "body": "Gold."})
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["status"] == "draft"
        assert data["published_at"] is None
        assert data["author_id"] == str(admin.id)

    def test_publish_on_create_sets_published_at(self, client, make_user, auth):
        admin = make_user(role="ADMIN")
        data = client.post("/api/cms/content", headers=auth(admin), json={
            "title": "Live", "slug": "live", "body": "x", "status": "published",
        }).json()["data"]
        assert data["published_at"] is not None

    def test_publish_needs_publish_permission(self, client, make_user, auth, rows):
        editor = make_user(permissions=["CREATE_CONTENT"])
        resp = client.post("/api/cms/content", headers=auth(editor), json={
            "title": "Live", "slug": "live", "body": "x", "status": "published",
        })
        assert resp.status_code == 403
        assert rows(Content) == []

    def test_duplicate_slug(self, client, make_user, make_content, auth):
        admin = make_user(role="ADMIN")
        make_content(slug="taken")
        resp = client.post("/api/cms/content", headers=auth(admin),
                           json={"title": "x", "slug": "taken", "body": "x"})
        assert resp.status_code == 409

    def test_bad_slug(self, client, make_user, auth):
        admin = make_user(role="ADMIN")
        resp = client.post("/api/cms/content", headers=auth(admin),
                           json={"title": "x", "slug": "Not A Slug", "body": "x"})
        assert resp.status_code == 400

    def test_status_transitions_manage_published_at(self, client, make_user, make_content, auth, rows):
        admin = make_user(role="ADMIN")
        content = make_content()

        published = client.patch(f"/api/cms/content/{content.id}/status", headers=auth(admin),
                                 json={"status": "published"}).json()["data"]
        assert published["published_at"] is not None

        again = client.put(f"/api/cms/content/{content.id}", headers=auth(admin), json={
            "title": "Renamed", "slug": content.slug, "body": "x", "status": "published",
        }).json()["data"]
        assert again["published_at"] == published["published_at"]

        archived = client.patch(f"/api/cms/content/{content.id}/status", headers=auth(admin),
                                json={"status": "archived"}).json()["data"]
        assert archived["published_at"] is None

        actions = [log.action for log in rows(AdminLog)]
        assert actions.count("CHANGE_CONTENT_STATUS") == 2
        assert "UPDATE_CONTENT" in actions

    def test_status_change_permission_checked_first(self, client, make_user, auth):
        resp = client.patch(f"/api/cms/content/{uuid4()}/status", headers=auth(make_user()),
                            json={"status": "review"})
        assert resp.status_code == 403

    def test_delete_archives(self, client, make_user, make_content, auth, rows):
        admin = make_user(role="ADMIN")
        content = make_content(status="published")
        resp = client.delete(f"/api/cms/content/{content.id}", headers=auth(admin))
        assert resp.status_code == 200
        [row] = rows(Content)
        assert row.status == "archived"
        assert row.published_at is None

    def test_list_filters(self, client, make_user, make_content, auth):
        admin = make_user(role="ADMIN")
        make_content(title="Draft one")
        make_content(title="Published one", status="published")
        data = client.get("/api/cms/content?status=published", headers=auth(admin)).json()["data"]
        assert [c["title"] for c in data["content"]] == ["Published one"]
        assert "body" not in data["content"][0]


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class TestAudit:
    def test_failed_audit_write_keeps_mutation(self, client, make_user, auth, rows):
        admin = make_user(role="ADMIN")

        def unwritable_entry(**kwargs):
            # action is NOT NULL, so the audit INSERT fails
            return AdminLog(**{**kwargs, "action": None})

        with patch("tatami.core.audit.AdminLog", unwritable_entry):
            resp = client.post("/api/cms/masters", headers=auth(admin), json=MASTER_BODY)

        assert resp.status_code == 201
        assert len(rows(Master)) == 1
        assert rows(AdminLog) == []

    def test_log_captures_request_metadata(self, client, make_user, auth, rows):
        admin = make_user(role="ADMIN")
        client.post("/api/cms/masters", json=MASTER_BODY,
                    headers={**auth(admin), "User-Agent": "cms-test", "X-Forwarded-For": "198.51.100.20"})
        [log] = rows(AdminLog)
        assert log.ip_address == "198.51.100.20"
        assert log.user_agent == "cms-test"


# ---------------------------------------------------------------------------
# Dashboard and logs
# ---------------------------------------------------------------------------

class TestDashboard:
    def test_dashboard(self, client, make_user, make_master, make_content, auth):
        admin = make_user(role="ADMIN")
        make_master()
        make_master(is_active=False)
        make_content()

        resp = client.get("/api/cms/dashboard", headers=auth(admin))
        assert resp.status_code == 200
        stats = resp.json()["data"]["stats"]
        assert stats["total_users"] == 1
        assert stats["total_masters"] == 1
        assert stats["total_content"] == 1
        assert stats["user_growth"] == 0.0

    def test_logs_need_view_logs(self, client, make_user, auth):
        # ADMIN's base set does not include VIEW_LOGS
        assert client.get("/api/cms/logs", headers=auth(make_user(role="ADMIN"))).status_code == 403

    def test_logs_filter(self, client, make_user, make_master, auth):
        root = make_user(role="SUPER_ADMIN")
        client.post("/api/cms/masters", headers=auth(root), json=MASTER_BODY)
        client.get("/api/cms/masters", headers=auth(root))

        data = client.get("/api/cms/logs?action=CREATE_MASTER", headers=auth(root)).json()["data"]
        assert [log["action"] for log in data["logs"]] == ["CREATE_MASTER"]
        assert data["logs"][0]["user"] == root.name
        assert data["pagination"]["total"] == 1
