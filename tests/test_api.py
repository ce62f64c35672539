"""
tests/test_api.py
"""
from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from portfolio import security
from portfolio.site import load_config

PAPER = {
    "title": "Attention Is All You Need",
    "authors": "Vaswani et al.",
    "date": "2017-06-12",
    "url": "https://arxiv.org/abs/1706.03762",
    "type": "paper",
}

READ = {
    "title": "The Bitter Lesson",
    "authors": "Rich Sutton",
    "url": "http://www.incompleteideas.net/IncIdeas/BitterLesson.html",
    "category": "article",
    "readDate": "2024-03-01",
}

CONTACT = {
    "name": "Ada Lovelace",
    "email": "ada@example.com",
    "message": "I would like to talk about engines.",
}


# ───────────────────────── helpers ────────────────────────────────────
def _new_paper(client, **overrides):
    rv = client.post("/api/papers", json={**PAPER, **overrides})
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["paper"]


# ───────────────────────── papers ─────────────────────────────────────
def test_write_requires_session(client):
    rv = client.post("/api/papers", json=PAPER)
    assert rv.status_code == 401
    assert client.put("/api/papers/1", json=PAPER).status_code == 401
    assert client.delete("/api/papers/1").status_code == 401


def test_cross_origin_write_rejected_before_auth(client, login):
    login()
    rv = client.post(
        "/api/papers", json=PAPER, headers={"Origin": "https://evil.example"}
    )
    assert rv.status_code == 403
    assert "CSRF" in rv.get_json()["error"]

    rv = client.post("/api/papers", json=PAPER, headers={"Origin": "http://localhost"})
    assert rv.status_code == 201


def test_paper_round_trip(client, login):
    login()
    paper = _new_paper(client)
    for key, val in PAPER.items():
        assert paper[key] == val
    assert paper["description"] is None

    rv = client.get(f"/api/papers/{paper['id']}")
    assert rv.get_json()["paper"] == paper

    rv = client.put(f"/api/papers/{paper['id']}", json={**PAPER, "title": "Renamed"})
    assert rv.status_code == 200
    updated = rv.get_json()["paper"]
    assert updated["title"] == "Renamed"
    assert updated["updatedAt"] != paper["updatedAt"]

    rv = client.delete(f"/api/papers/{paper['id']}")
    assert rv.get_json() == {"success": True, "message": "Paper deleted successfully."}
    assert client.get(f"/api/papers/{paper['id']}").status_code == 404
    assert client.delete(f"/api/papers/{paper['id']}").status_code == 404
    assert client.put(f"/api/papers/{paper['id']}", json=PAPER).status_code == 404


def test_missing_title_is_rejected(client, login, services):
    login()
    rv = client.post(
        "/api/papers",
        json={"title": "", "authors": "A", "date": "2024-01-01", "url": "https://x.com", "type": "paper"},
    )
    assert rv.status_code == 400
    body = rv.get_json()
    assert body["error"] == "Validation failed. Please check your input."
    assert "title" in body["details"]
    assert services.papers.count() == 0


def test_paper_field_errors(client, login):
    login()
    rv = client.post(
        "/api/papers",
        json={"title": "T", "authors": "A", "date": "01/02/2024", "url": "javascript:alert(1)", "type": "book"},
    )
    details = rv.get_json()["details"]
    assert set(details) == {"date", "url", "type"}


def test_paper_text_is_escaped(client, login):
    login()
    paper = _new_paper(client, title="<script>x</script>", description="a & b")
    assert paper["title"] == "&lt;script&gt;x&lt;&#x2F;script&gt;"
    assert paper["description"] == "a &amp; b"


def test_invalid_json_body(client, login):
    login()
    rv = client.post("/api/papers", data="{not json", content_type="application/json")
    assert rv.status_code == 400
    assert rv.get_json() == {"error": "Invalid JSON in request body."}


@pytest.mark.parametrize("bad", ["0", "-3", "abc"])
def test_bad_paper_ids(client, login, bad):
    login()
    assert client.get(f"/api/papers/{bad}").status_code == 400
    assert client.delete(f"/api/papers/{bad}").status_code == 400


def test_paper_listing(client, login):
    login()
    for i in range(3):
        _new_paper(client, date=f"2024-01-0{i + 1}")
    _new_paper(client, type="blog", date="2023-12-31")

    body = client.get("/api/papers").get_json()
    assert body["total"] == 4
    assert body["hasMore"] is False
    assert [p["date"] for p in body["papers"]] == ["2024-01-03", "2024-01-02", "2024-01-01", "2023-12-31"]

    body = client.get("/api/papers?limit=2&offset=0").get_json()
    assert len(body["papers"]) == 2
    assert body["hasMore"] is True

    body = client.get("/api/papers?type=blog").get_json()
    assert body["total"] == 1
    assert body["papers"][0]["type"] == "blog"


@pytest.mark.parametrize("qs", ["limit=0", "limit=x", "offset=-1", "offset=y", "type=book"])
def test_paper_listing_bad_query(client, qs):
    assert client.get(f"/api/papers?{qs}").status_code == 400


def test_storage_failure_is_generic_500(client, services, monkeypatch):
    from portfolio.db import DatabaseError

    def boom(*a, **kw):
        raise DatabaseError("disk on fire")

    monkeypatch.setattr(services.papers, "list_all", boom)
    rv = client.get("/api/papers")
    assert rv.status_code == 500
    assert "disk" not in rv.get_data(as_text=True)


# ───────────────────────── weekly reads ───────────────────────────────
def test_weekly_read_lifecycle(client, login):
    login()
    rv = client.post("/api/weekly-reads", json={**READ, "source": "blog"})
    assert rv.status_code == 201
    read = rv.get_json()["read"]
    assert read["source"] == "blog"

    body = client.get("/api/weekly-reads").get_json()
    assert body["total"] == 1
    assert body["reads"][0]["id"] == read["id"]

    rv = client.put(f"/api/weekly-reads/{read['id']}", json={**READ, "category": "research"})
    assert rv.get_json()["read"]["category"] == "research"
    assert client.get(f"/api/weekly-reads/{read['id']}").status_code == 200
    assert client.delete(f"/api/weekly-reads/{read['id']}").status_code == 200
    assert client.get(f"/api/weekly-reads/{read['id']}").status_code == 404


def test_weekly_read_validation(client, login):
    login()
    rv = client.post("/api/weekly-reads", json={**READ, "category": "novel", "readDate": "2024-3-1"})
    assert rv.status_code == 400
    assert set(rv.get_json()["details"]) == {"category", "readDate"}


def test_weekly_read_writes_require_session(client):
    assert client.post("/api/weekly-reads", json=READ).status_code == 401
    assert client.get("/api/weekly-reads").status_code == 200


# ───────────────────────── blog views ─────────────────────────────────
def test_view_tracking(client):
    for expected in (1, 2, 3):
        rv = client.post("/api/blog/my-post/view")
        assert rv.get_json() == {"success": True, "slug": "my-post", "viewCount": expected}


def test_view_slug_is_sanitised(client, services):
    rv = client.post("/api/blog/../../etc/passwd/view")
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Blog post not found"}
    assert services.views.get_all_view_counts() == {}
    rv = client.post("/api/blog/$$$/view")
    assert rv.status_code == 400
    assert rv.get_json() == {"error": "Invalid slug format"}


def test_view_unknown_post(client, services):
    rv = client.post("/api/blog/no-such-post/view")
    assert rv.status_code == 404
    assert services.views.get_all_view_counts() == {}


def test_concurrent_first_views(app, services):
    services.views.get_view_count("warm")
    results = []

    def hit():
        with app.test_client() as c:
            results.append(c.post("/api/blog/my-post/view").status_code)

    threads = [threading.Thread(target=hit) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results == [200, 200]
    assert services.views.get_view_count("my-post") == 2


def test_blog_listing(client):
    client.post("/api/blog/my-post/view")
    body = client.get("/api/blogs").get_json()
    assert body["total"] == 2
    first = body["blogs"][0]
    assert first["slug"] == "my-post"
    assert first["viewCount"] == 1
    assert "content" not in first

    post = client.get("/api/blogs/my-post").get_json()
    assert "<strong>world</strong>" in post["content"]
    assert client.get("/api/blogs/missing").status_code == 404


# ───────────────────────── contact ────────────────────────────────────
def test_contact_success(client, mailer):
    rv = client.post("/api/contact", json=CONTACT)
    assert rv.status_code == 200
    assert rv.get_json()["success"] is True
    assert rv.headers["X-RateLimit-Limit"] == "3"
    assert rv.headers["X-RateLimit-Remaining"] == "2"
    assert mailer.sent[0].email == "ada@example.com"


def test_contact_validation(client, mailer):
    rv = client.post("/api/contact", json={"name": "A", "email": "x", "message": "hi"})
    assert rv.status_code == 400
    assert len(rv.get_json()["errors"]) == 3
    assert mailer.sent == []


def test_contact_rate_limit(client, mailer):
    for _ in range(3):
        assert client.post("/api/contact", json=CONTACT).status_code == 200
    rv = client.post("/api/contact", json={**CONTACT, "email": "ADA@example.com"})
    assert rv.status_code == 429
    body = rv.get_json()
    assert body["success"] is False
    assert "Rate limit exceeded" in body["message"]
    assert int(rv.headers["Retry-After"]) > 23 * 3600
    assert len(mailer.sent) == 3


def test_contact_window_expires(client, monkeypatch):
    now = security.utc_now()
    monkeypatch.setattr(security, "utc_now", lambda: now)
    for _ in range(3):
        client.post("/api/contact", json=CONTACT)
    later = now + timedelta(hours=24, seconds=1)
    monkeypatch.setattr(security, "utc_now", lambda: later)
    rv = client.post("/api/contact", json=CONTACT)
    assert rv.status_code == 200
    assert rv.headers["X-RateLimit-Remaining"] == "2"


def test_failed_send_uses_no_quota(client, mailer, services):
    mailer.ok = False
    rv = client.post("/api/contact", json=CONTACT)
    assert rv.status_code == 500
    assert services.contact_limiter.get_info("ada@example.com") is None


# ───────────────────────── auth ───────────────────────────────────────
def test_login_sets_cookie_and_session(client, login):
    rv = login()
    assert rv.status_code == 200
    assert rv.get_json()["user"]["email"] == "admin@example.com"
    cookie = rv.headers["Set-Cookie"]
    assert "session-token=" in cookie
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie
    assert "Path=/" in cookie

    info = client.get("/api/auth/session").get_json()
    assert info["user"]["email"] == "admin@example.com"
    assert "expiresAt" in info["user"]


def test_bad_credentials_are_indistinguishable(client, admin):
    wrong = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "wrong-password"})
    ghost = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "correct-horse-battery"})
    assert wrong.status_code == ghost.status_code == 401
    assert wrong.get_json() == ghost.get_json() == {"error": "Invalid email or password."}


def test_login_rate_limited_per_ip(client, admin):
    headers = {"X-Forwarded-For": "203.0.113.9"}
    bad = {"email": "admin@example.com", "password": "wrong-password"}
    for _ in range(5):
        assert client.post("/api/auth/login", json=bad, headers=headers).status_code == 401
    rv = client.post("/api/auth/login", json=bad, headers=headers)
    assert rv.status_code == 429
    assert 0 < int(rv.headers["Retry-After"]) <= 15 * 60
    assert rv.headers["X-RateLimit-Limit"] == "5"
    assert rv.headers["X-RateLimit-Remaining"] == "0"
    assert "resetTime" in rv.get_json()["details"]

    other = client.post("/api/auth/login", json=bad, headers={"X-Forwarded-For": "198.51.100.1"})
    assert other.status_code == 401


def test_successful_login_resets_counter(client, login, services):
    headers = {"X-Forwarded-For": "203.0.113.10"}
    bad = {"email": "admin@example.com", "password": "wrong-password"}
    for _ in range(4):
        client.post("/api/auth/login", json=bad, headers=headers)
    good = {"email": "admin@example.com", "password": "correct-horse-battery"}
    assert client.post("/api/auth/login", json=good, headers=headers).status_code == 200
    for _ in range(4):
        assert client.post("/api/auth/login", json=bad, headers=headers).status_code == 401


def test_form_login_redirects_to_callback(client, admin):
    rv = client.post(
        "/api/auth/login",
        data={
            "email": "admin@example.com",
            "password": "correct-horse-battery",
            "callbackUrl": "/admin/dashboard/papers",
        },
    )
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/admin/dashboard/papers")


def test_form_login_rejects_offsite_callback(client, admin):
    rv = client.post(
        "/api/auth/login",
        data={
            "email": "admin@example.com",
            "password": "correct-horse-battery",
            "callbackUrl": "https://evil.example/",
        },
    )
    assert rv.headers["Location"].endswith("/admin/dashboard")


def test_logout_clears_cookie(client, login):
    login()
    rv = client.post("/api/auth/logout")
    assert rv.get_json() == {"success": True}
    assert client.get("/api/auth/session").get_json() == {"user": None}


def test_expired_session_is_rejected(client, login, monkeypatch):
    login()
    later = time.time() + 24 * 60 * 60 + 5
    monkeypatch.setattr(time, "time", lambda: later)
    assert client.post("/api/papers", json=PAPER).status_code == 401


# ───────────────────────── admin pages ────────────────────────────────
def test_dashboard_redirects_to_login(client):
    rv = client.get("/admin/dashboard/papers")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith(
        "/admin/login?callbackUrl=%2Fadmin%2Fdashboard%2Fpapers"
    )


def test_dashboard_after_login(client, login):
    login()
    _new_paper(client)
    rv = client.get("/admin/dashboard")
    assert rv.status_code == 200
    page = rv.get_data(as_text=True)
    assert "admin@example.com" in page
    assert "Attention Is All You Need" in page


def test_login_page(client, login):
    rv = client.get("/admin/login")
    assert rv.status_code == 200
    assert 'name="password"' in rv.get_data(as_text=True)
    login()
    assert client.get("/admin/login").status_code == 302


def test_database_info(client, login):
    assert client.get("/api/admin/database-info").status_code == 401
    login()
    _new_paper(client)
    client.post("/api/blog/my-post/view")
    info = client.get("/api/admin/database-info").get_json()
    assert info["database"] == "SQLite (Local)"
    assert info["papers"]["total"] == 1
    assert info["papers"]["byType"] == {"paper": 1, "blog": 0}
    assert info["adminUsers"]["emails"] == ["admin@example.com"]
    assert info["blogViews"]["topPosts"] == [{"slug": "my-post", "views": 1}]


# ───────────────────────── plumbing ───────────────────────────────────
def test_security_headers(client):
    rv = client.get("/api/papers")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"
    assert rv.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


def test_api_404_is_json(client):
    rv = client.get("/api/nothing-here")
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Not found."}


def test_load_config_reads_environment():
    cfg = load_config(
        {
            "DATABASE_URL": "/tmp/x.db",
            "SESSION_SECRET": "s",
            "APP_ENV": "production",
            "LOGIN_SWEEP_INTERVAL": "0",
        }
    )
    assert cfg["DATABASE"] == "/tmp/x.db"
    assert cfg["SECRET_KEY"] == "s"
    assert cfg["SESSION_COOKIE_SECURE"] is True
    assert cfg["LOGIN_SWEEP_INTERVAL"] == 0
    assert cfg["TURSO_DATABASE_URL"] is None


def test_cli_create_admin(app, services):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["create-admin", "--email", "New@Example.com", "--password", "long-enough-pw"])
    assert result.exit_code == 0, result.output
    assert services.admins.get_by_email("new@example.com") is not None

    dup = runner.invoke(args=["create-admin", "--email", "new@example.com", "--password", "long-enough-pw"])
    assert dup.exit_code == 1
    assert "already exists" in dup.output

    short = runner.invoke(args=["create-admin", "--email", "x@example.com", "--password", "short"])
    assert short.exit_code != 0


def test_cli_init_db_and_cleanup(app):
    runner = app.test_cli_runner()
    assert "Database ready" in runner.invoke(args=["init-db"]).output
    assert "Removed 0" in runner.invoke(args=["cleanup-contact-limits"]).output


def test_rejected_url_never_stored_on_update(client, login, services):
    login()
    paper = _new_paper(client)
    rv = client.put(f"/api/papers/{paper['id']}", json={**PAPER, "url": "javascript:alert(1)"})
    assert rv.status_code == 400
    assert "url" in rv.get_json()["details"]
    assert services.papers.get(paper["id"])["url"] == PAPER["url"]


def test_blog_html_is_scrubbed(client, blog_dir):
    (blog_dir / "sneaky.md").write_text(
        "title: Sneaky\ndate: 2024-06-01\n\n"
        "<script>alert(1)</script >\n\n"
        "[click](javascript:alert(1))\n",
        encoding="utf-8",
    )
    content = client.get("/api/blogs/sneaky").get_json()["content"].lower()
    assert "<script" not in content
    assert "javascript:" not in content
