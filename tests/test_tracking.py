"""Tests for click tracking, the /r/ redirect, and the per-IP rate limit."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from tatami.config import get_settings
from tatami.middleware import rate_limit
from tatami.models.tables import Contribution, ReferralClick, ReferralLink

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _ip(n: int) -> dict:
    return {"X-Forwarded-For": f"198.51.100.{n}"}


def _link_row(rows, link):
    return rows(ReferralLink, ReferralLink.id == link.id)[0]


class TestTrack:
    def test_records_click(self, client, make_user, make_link, rows):
        owner = make_user()
        link = make_link(owner, target_url="https://tatamilabs.com/masters")

        resp = client.post("/api/referrals/track", headers={**_ip(1), "User-Agent": DESKTOP_UA,
                                                            "Referer": "https://instagram.com/"},
                           json={"referral_code": link.code})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["redirect_url"] == "https://tatamilabs.com/masters"

        [click] = rows(ReferralClick)
        assert str(click.id) == data["click_id"]
        assert click.ip_address == "198.51.100.1"
        assert click.referer == "https://instagram.com/"
        assert click.device == "desktop"
        assert click.browser.startswith("Chrome")
        assert click.country is None

        assert _link_row(rows, link).click_count == 1

        [credit] = rows(Contribution)
        assert credit.user_id == owner.id
        assert credit.type == "REFERRAL_CLICK"
        assert credit.value == 1
        assert credit.referral_id == link.id
        assert credit.metadata_["referral_code"] == link.code

    def test_three_visitors(self, client, make_user, auth, rows):
        owner = make_user()
        created = client.post("/api/referrals", headers=auth(owner), json={"target_url": "/masters"}).json()["data"]
        assert created["click_count"] == 0

        for n in (1, 2, 3):
            resp = client.post("/api/referrals/track", headers=_ip(n), json={"referral_code": created["code"]})
            assert resp.status_code == 200
            assert resp.json()["data"]["redirect_url"] == "/masters"

        link = rows(ReferralLink)[0]
        assert link.click_count == 3
        clicks = rows(ReferralClick, ReferralClick.referral_id == link.id)
        assert sorted(c.ip_address for c in clicks) == ["198.51.100.1", "198.51.100.2", "198.51.100.3"]
        credits = rows(Contribution, Contribution.type == "REFERRAL_CLICK")
        assert len(credits) == 3
        assert all(c.value == 1 and c.user_id == owner.id for c in credits)

    def test_target_override(self, client, make_user, make_link):
        link = make_link(make_user())
        resp = client.post("/api/referrals/track", json={"referral_code": link.code, "target_url": "/trips/42"})
        assert resp.json()["data"]["redirect_url"] == "/trips/42"

    def test_unsafe_override_rejected(self, client, make_user, make_link, rows):
        link = make_link(make_user())
        resp = client.post("/api/referrals/track",
                           json={"referral_code": link.code, "target_url": "//evil.example.com"})
        assert resp.status_code == 400
        assert rows(ReferralClick) == []

    def test_unknown_code(self, client):
        resp = client.post("/api/referrals/track", json={"referral_code": "REFNOPE00"})
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Invalid referral code"

    def test_inactive_link_never_records(self, client, make_user, make_link, rows):
        link = make_link(make_user(), is_active=False)
        for _ in range(3):
            resp = client.post("/api/referrals/track", json={"referral_code": link.code})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "LINK_INACTIVE"
        assert rows(ReferralClick) == []
        assert rows(Contribution) == []
        assert _link_row(rows, link).click_count == 0

    def test_expired_link_rejected(self, client, make_user, make_link, rows):
        link = make_link(make_user(), expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        resp = client.post("/api/referrals/track", json={"referral_code": link.code})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "LINK_EXPIRED"
        assert rows(ReferralClick) == []

    def test_future_expiry_accepted(self, client, make_user, make_link):
        link = make_link(make_user(), expires_at=datetime.now(timezone.utc) + timedelta(days=1))
        assert client.post("/api/referrals/track", json={"referral_code": link.code}).status_code == 200

    def test_no_store(self, client, make_user, make_link):
        link = make_link(make_user())
        resp = client.post("/api/referrals/track", json={"referral_code": link.code})
        assert "no-store" in resp.headers["cache-control"]


class TestShortRedirect:
    def test_redirects_and_records(self, client, make_user, make_link, rows):
        link = make_link(make_user(), target_url="/masters/7")
        resp = client.get(f"/r/{link.code}", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/masters/7"
        assert resp.headers["referrer-policy"] == "no-referrer"
        assert len(rows(ReferralClick)) == 1

    def test_to_override(self, client, make_user, make_link):
        link = make_link(make_user())
        resp = client.get(f"/r/{link.code}?to=/trips", follow_redirects=False)
        assert resp.headers["location"] == "/trips"

    def test_inactive(self, client, make_user, make_link):
        link = make_link(make_user(), is_active=False)
        resp = client.get(f"/r/{link.code}", follow_redirects=False)
        assert resp.status_code == 400


class TestRateLimit:
    def test_per_ip_limit(self, client, make_user, make_link, monkeypatch):
        monkeypatch.setattr(get_settings(), "rate_limit_track_per_ip_per_minute", 2)
        link = make_link(make_user())

        for _ in range(2):
            assert client.post("/api/referrals/track", headers=_ip(1),
                               json={"referral_code": link.code}).status_code == 200
        blocked = client.post("/api/referrals/track", headers=_ip(1), json={"referral_code": link.code})
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMITED"
        assert blocked.headers["retry-after"] == "60"

        # Other visitors are unaffected
        assert client.post("/api/referrals/track", headers=_ip(2),
                           json={"referral_code": link.code}).status_code == 200

    def test_store_forgets_idle_clients(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr(rate_limit, "time", SimpleNamespace(time=lambda: clock[0]))
        monkeypatch.setattr(rate_limit, "MAX_TRACKED_KEYS", 3)
        rate_limit.reset_rate_limits()

        for n in range(4):
            rate_limit.check_rate_limit(f"track:198.51.100.{n}", 5)
        assert len(rate_limit._memory_store) == 4

        # Past the window, the next check sweeps every idle key
        clock[0] += 61
        rate_limit.check_rate_limit("track:203.0.113.9", 5)
        assert set(rate_limit._memory_store) == {"track:203.0.113.9"}

    def test_zero_limit_leaves_no_entry(self):
        rate_limit.reset_rate_limits()
        assert rate_limit._sliding_window_check("magic:198.51.100.1", 0) == (False, 0)
        assert rate_limit._memory_store == {}


class TestConcurrency:
    def test_no_lost_updates(self, client, make_user, make_link, rows):
        link = make_link(make_user())
        n = 20

        def hit(i):
            return client.post("/api/referrals/track", headers=_ip(i + 1),
                               json={"referral_code": link.code}).status_code

        with ThreadPoolExecutor(max_workers=5) as pool:
            statuses = list(pool.map(hit, range(n)))

        assert statuses == [200] * n
        clicks = rows(ReferralClick, ReferralClick.referral_id == link.id)
        assert len(clicks) == n
        assert _link_row(rows, link).click_count == len(clicks)
