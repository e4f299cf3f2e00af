"""Tests for per-link stats, the owner summary and conversion ingestion."""

from datetime import datetime, timedelta, timezone

from tatami.api.tracking import conversion_rate
from tatami.models.tables import Conversion, ReferralClick

INTERNAL_KEY = {"X-Internal-Key": "test-internal-key"}


def _days_ago(n):
    return datetime.now(timezone.utc) - timedelta(days=n)


class TestConversionRate:
    def test_no_clicks(self):
        assert conversion_rate(0, 0) == "0.00"
        assert conversion_rate(3, 0) == "0.00"

    def test_two_decimals(self):
        assert conversion_rate(1, 3) == "33.33"
        assert conversion_rate(2, 3) == "66.67"
        assert conversion_rate(5, 5) == "100.00"


class TestLinkStats:
    def _seed(self, add, link):
        add(ReferralClick(referral_id=link.id, device="desktop", country="Japan"))
        add(ReferralClick(referral_id=link.id, device="desktop", country="Japan"))
        add(ReferralClick(referral_id=link.id, device="mobile", country="Taiwan"))
        add(ReferralClick(referral_id=link.id, device="mobile"))
        add(ReferralClick(referral_id=link.id, device="desktop", created_at=_days_ago(60)))
        add(Conversion(referral_id=link.id, order_id="o-1", order_value_cents=20000,
                       commission_cents=2000, status="CONFIRMED"))
        add(Conversion(referral_id=link.id, order_id="o-2", order_value_cents=9900,
                       commission_cents=990, status="PENDING"))

    def test_by_code(self, client, make_user, make_link, add, auth):
        owner = make_user()
        link = make_link(owner)
        self._seed(add, link)

        resp = client.get(f"/api/referrals/stats?code={link.code}", headers=auth(owner))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["code"] == link.code
        assert data["period_days"] == 30
        assert data["total_clicks"] == 4
        assert data["total_conversions"] == 2
        assert data["conversion_rate"] == "50.00"
        assert data["total_earnings_cents"] == 2000
        assert sum(day["clicks"] for day in data["daily_clicks"]) == 4
        assert data["clicks_by_country"] == [
            {"country": "Japan", "clicks": 2},
            {"country": "Taiwan", "clicks": 1},
        ]
        assert {d["device"]: d["clicks"] for d in data["clicks_by_device"]} == {"desktop": 2, "mobile": 2}

    def test_wider_window(self, client, make_user, make_link, add, auth):
        owner = make_user()
        link = make_link(owner)
        self._seed(add, link)
        data = client.get(f"/api/referrals/stats?code={link.code}&days=90", headers=auth(owner)).json()["data"]
        assert data["total_clicks"] == 5

    def test_no_clicks_rate(self, client, make_user, make_link, auth):
        owner = make_user()
        link = make_link(owner)
        data = client.get(f"/api/referrals/stats?code={link.code}", headers=auth(owner)).json()["data"]
        assert data["total_clicks"] == 0
        assert data["conversion_rate"] == "0.00"
        assert data["daily_clicks"] == []

    def test_stranger_forbidden(self, client, make_user, make_link, auth):
        link = make_link(make_user())
        resp = client.get(f"/api/referrals/stats?code={link.code}", headers=auth(make_user()))
        assert resp.status_code == 403

    def test_analytics_permission_sees_any(self, client, make_user, make_link, auth):
        link = make_link(make_user())
        analyst = make_user(role="ADMIN")
        assert client.get(f"/api/referrals/stats?code={link.code}", headers=auth(analyst)).status_code == 200
        assert client.get(f"/api/referrals/{link.id}/stats", headers=auth(analyst)).status_code == 200

    def test_by_id_hidden_from_stranger(self, client, make_user, make_link, auth):
        link = make_link(make_user())
        assert client.get(f"/api/referrals/{link.id}/stats", headers=auth(make_user())).status_code == 404

    def test_unknown_code(self, client, make_user, auth):
        assert client.get("/api/referrals/stats?code=REFNONE00", headers=auth(make_user())).status_code == 404

    def test_requires_session(self, client):
        assert client.get("/api/referrals/stats?code=REFX").status_code == 401


class TestSummary:
    def test_rollup(self, client, make_user, make_link, add, auth):
        owner = make_user()
        busy = make_link(owner, name="busy")
        quiet = make_link(owner, name="quiet")
        make_link(owner, name="off", is_active=False)
        make_link(make_user(), name="not mine")

        for _ in range(3):
            add(ReferralClick(referral_id=busy.id))
        add(ReferralClick(referral_id=quiet.id))
        add(Conversion(referral_id=busy.id, order_id="o-1", order_value_cents=10000,
                       commission_cents=1000, status="CONFIRMED"))
        add(Conversion(referral_id=quiet.id, order_id="o-2", order_value_cents=5000,
                       commission_cents=500, status="PENDING"))

        data = client.get("/api/referrals/summary", headers=auth(owner)).json()["data"]
        assert data["total_links"] == 3
        assert data["active_links"] == 2
        assert data["total_clicks"] == 4
        assert data["total_conversions"] == 2
        assert data["conversion_rate"] == "50.00"
        assert data["total_earnings_cents"] == 1000
        assert data["pending_earnings_cents"] == 500
        assert [link["name"] for link in data["top_links"]] == ["busy", "quiet"]

    def test_empty(self, client, make_user, auth):
        data = client.get("/api/referrals/summary", headers=auth(make_user())).json()["data"]
        assert data["total_links"] == 0
        assert data["total_clicks"] == 0
        assert data["conversion_rate"] == "0.00"
        assert data["top_links"] == []


class TestConversionIngestion:
    def test_requires_internal_key(self, client, make_user, make_link):
        link = make_link(make_user())
        body = {"referral_code": link.code, "order_id": "o-1", "order_value_cents": 1000}
        assert client.post("/api/referrals/conversions", json=body).status_code == 401
        assert client.post("/api/referrals/conversions", json=body,
                           headers={"X-Internal-Key": "wrong"}).status_code == 401

    def test_record_with_default_commission(self, client, make_user, make_link, rows):
        link = make_link(make_user())
        resp = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": link.code, "order_id": "o-1", "order_value_cents": 12340,
        })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["status"] == "PENDING"
        assert data["commission_cents"] == 1234
        assert len(rows(Conversion)) == 1

    def test_replay_is_idempotent(self, client, make_user, make_link, rows):
        link = make_link(make_user())
        body = {"referral_code": link.code, "order_id": "o-1", "order_value_cents": 1000, "commission_cents": 50}
        first = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json=body)
        second = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json=body)
        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["data"]["id"] == second.json()["data"]["id"]
        assert len(rows(Conversion)) == 1

    def test_click_attribution(self, client, make_user, make_link, add, rows):
        link = make_link(make_user())
        other = make_link(make_user())
        click = add(ReferralClick(referral_id=link.id))
        foreign = add(ReferralClick(referral_id=other.id))

        client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": link.code, "order_id": "o-1", "order_value_cents": 1000, "click_id": str(click.id),
        })
        client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": link.code, "order_id": "o-2", "order_value_cents": 1000, "click_id": str(foreign.id),
        })

        assert rows(ReferralClick, ReferralClick.id == click.id)[0].converted_at is not None
        assert rows(ReferralClick, ReferralClick.id == foreign.id)[0].converted_at is None

    def test_unknown_code(self, client):
        resp = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": "REFNONE00", "order_id": "o-1", "order_value_cents": 1000,
        })
        assert resp.status_code == 404

    def test_negative_value_rejected(self, client, make_user, make_link):
        link = make_link(make_user())
        resp = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": link.code, "order_id": "o-1", "order_value_cents": -5,
        })
        assert resp.status_code == 400

    def test_confirming_counts_toward_earnings(self, client, make_user, make_link, auth):
        owner = make_user()
        link = make_link(owner)
        created = client.post("/api/referrals/conversions", headers=INTERNAL_KEY, json={
            "referral_code": link.code, "order_id": "o-1", "order_value_cents": 10000,
        }).json()["data"]

        stats = client.get(f"/api/referrals/stats?code={link.code}", headers=auth(owner)).json()["data"]
        assert stats["total_earnings_cents"] == 0

        resp = client.patch(f"/api/referrals/conversions/{created['id']}", headers=INTERNAL_KEY,
                            json={"status": "CONFIRMED"})
        assert resp.status_code == 200

        stats = client.get(f"/api/referrals/stats?code={link.code}", headers=auth(owner)).json()["data"]
        assert stats["total_earnings_cents"] == 1000

    def test_invalid_status(self, client, make_user, make_link, add):
        link = make_link(make_user())
        conversion = add(Conversion(referral_id=link.id, order_id="o-1", order_value_cents=100))
        resp = client.patch(f"/api/referrals/conversions/{conversion.id}", headers=INTERNAL_KEY,
                            json={"status": "PAID"})
        assert resp.status_code == 400
