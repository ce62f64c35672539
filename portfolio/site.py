#!/usr/bin/env python3
"""
Portfolio site: JSON API for papers, weekly reads, blog view counts and
the contact form, plus the admin login/dashboard pages.

Run locally with ``flask --app portfolio.site run``.
"""

import atexit
import math
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from pathlib import Path

import click
from flask import (
    Blueprint,
    Flask,
    current_app,
    g,
    make_response,
    redirect,
    render_template_string,
    request,
)
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import generate_password_hash

from portfolio.content import BlogPosts
from portfolio.db import (
    PAPER_TYPES,
    READ_CATEGORIES,
    AdminUsers,
    BlogViews,
    ContactLimits,
    Database,
    DatabaseError,
    DuplicateRecord,
    Papers,
    RecordNotFound,
    WeeklyReads,
    connect,
    utc_now,
)
from portfolio.mail import mailer_from_config, validate_contact_form
from portfolio.security import (
    MAX_LOGIN_ATTEMPTS,
    MAX_SUBMISSIONS,
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    WINDOW_HOURS,
    ContactRateLimiter,
    LoginLimit,
    LoginRateLimiter,
    SessionTokens,
    client_ip,
    is_protected,
    login_redirect_url,
    safe_callback,
    sanitize_description,
    sanitize_paper_form,
    sanitize_slug,
    sanitize_text,
    sanitize_url,
    validate_csrf_headers,
    verify_credentials,
)

################################################################################
# Configuration
################################################################################
ROOT = Path(__file__).resolve().parent.parent
SECRET_FILE = ROOT / ".secret_key"
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _secret_key() -> str:
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


def load_config(environ=None) -> dict:
    """Seed app.config from environment variables."""
    env = os.environ if environ is None else environ
    production = (env.get("APP_ENV") or env.get("FLASK_ENV") or "").lower() == (
        "production"
    )
    return {
        "TURSO_DATABASE_URL": env.get("TURSO_DATABASE_URL"),
        "TURSO_AUTH_TOKEN": env.get("TURSO_AUTH_TOKEN"),
        "DATABASE": env.get("DATABASE_URL") or str(ROOT / "database" / "blog.db"),
        "REMOTE_DB_TIMEOUT": float(env.get("REMOTE_DB_TIMEOUT", "10")),
        "SECRET_KEY": env.get("SESSION_SECRET"),
        "SITE_URL": env.get("SITE_URL"),
        "SESSION_COOKIE_SECURE": production,
        "BLOG_DIR": env.get("BLOG_DIR") or str(ROOT / "content" / "blog"),
        "EMAIL_SERVICE": env.get("EMAIL_SERVICE"),
        "RESEND_API_KEY": env.get("RESEND_API_KEY"),
        "SENDGRID_API_KEY": env.get("SENDGRID_API_KEY"),
        "CONTACT_EMAIL": env.get("CONTACT_EMAIL"),
        "FROM_EMAIL": env.get("FROM_EMAIL"),
        "LOGIN_SWEEP_INTERVAL": float(env.get("LOGIN_SWEEP_INTERVAL", "300")),
    }


@dataclass
class Services:
    """Everything a request needs, built once per app."""

    db: Database
    papers: Papers
    weekly_reads: WeeklyReads
    admins: AdminUsers
    views: BlogViews
    login_limiter: LoginRateLimiter
    contact_limiter: ContactRateLimiter
    tokens: SessionTokens
    posts: BlogPosts
    mailer: object


def build_services(config) -> Services:
    db = connect(config)
    return Services(
        db=db,
        papers=Papers(db),
        weekly_reads=WeeklyReads(db),
        admins=AdminUsers(db),
        views=BlogViews(db),
        login_limiter=LoginRateLimiter(),
        contact_limiter=ContactRateLimiter(ContactLimits(db)),
        tokens=SessionTokens(config["SECRET_KEY"]),
        posts=BlogPosts(config["BLOG_DIR"]),
        mailer=mailer_from_config(config),
    )


def services() -> Services:
    return current_app.extensions["portfolio"]


bp = Blueprint("site", __name__, cli_group=None)


def create_app(config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(load_config())
    app.config.update(
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_HTTPONLY=True,
    )
    if config:
        app.config.update(config)
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _secret_key()
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    svc = build_services(app.config)
    app.extensions["portfolio"] = svc

    interval = float(app.config.get("LOGIN_SWEEP_INTERVAL") or 0)
    if interval > 0:
        svc.login_limiter.start_sweeper(interval)
        atexit.register(svc.login_limiter.stop_sweeper)

    app.register_blueprint(bp)
    return app


###############################################################################
# Session cookie + guards
###############################################################################
def session_cookie_name() -> str:
    if current_app.config.get("SESSION_COOKIE_SECURE"):
        return "__Secure-" + SESSION_COOKIE
    return SESSION_COOKIE


def _set_session_cookie(resp, token: str) -> None:
    resp.set_cookie(
        session_cookie_name(),
        token,
        max_age=SESSION_MAX_AGE,
        path="/",
        httponly=True,
        samesite="Lax",
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
    )


@bp.before_app_request
def load_admin():
    g.admin = services().tokens.read(request.cookies.get(session_cookie_name()))
    if g.admin is None and is_protected(request.path):
        target = login_redirect_url(request.path)
        site_url = current_app.config.get("SITE_URL")
        if site_url:
            target = site_url.rstrip("/") + target
        return redirect(target)


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


def same_origin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not validate_csrf_headers(request.headers):
            current_app.logger.warning(
                "Cross-origin %s %s rejected", request.method, request.path
            )
            return {"error": "Invalid request origin. CSRF validation failed."}, 403
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if getattr(g, "admin", None) is None:
            return {"error": "Unauthorized. Please log in."}, 401
        return view(*args, **kwargs)

    return wrapped


###############################################################################
# Request validation
###############################################################################
def _json_body() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _parse_id(raw: str) -> int | None:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value >= 1 else None


def _paging_args() -> tuple[int | None, int, str | None]:
    """Return ``(limit, offset, error)`` from the query string."""
    limit_raw = request.args.get("limit")
    offset_raw = request.args.get("offset")
    limit = None
    offset = 0
    if limit_raw:
        try:
            limit = int(limit_raw)
        except ValueError:
            limit = 0
        if limit < 1:
            return None, 0, "Invalid limit parameter. Must be a positive integer."
    if offset_raw:
        try:
            offset = int(offset_raw)
        except ValueError:
            offset = -1
        if offset < 0:
            return None, 0, "Invalid offset parameter. Must be a non-negative integer."
    return limit, offset, None


def _text(data: dict, key: str, label: str, errors: dict, *, max_len: int | None = 500):
    val = data.get(key)
    if not isinstance(val, str) or not val.strip():
        errors[key] = f"{label} required"
        return ""
    if max_len and len(val) > max_len:
        errors[key] = f"{label.split()[0]} must be {max_len} characters or less"
        return ""
    return sanitize_text(val)


def _optional(data: dict, key: str, errors: dict, *, max_len: int, label: str):
    val = data.get(key)
    if val in (None, ""):
        return None
    if not isinstance(val, str):
        errors[key] = f"{label} must be text"
        return None
    if len(val) > max_len:
        errors[key] = f"{label} must be {max_len} characters or less"
        return None
    return sanitize_description(val, max_len) or None


def _url(data: dict, errors: dict) -> str:
    val = data.get("url")
    clean = sanitize_url(val) if isinstance(val, str) else None
    if clean is None:
        errors["url"] = "Must be a valid URL (e.g., https://example.com)"
        return ""
    return clean


def _date(data: dict, key: str, errors: dict) -> str:
    val = data.get(key)
    if not isinstance(val, str) or not DATE_RE.match(val.strip()):
        errors[key] = "Date must be in YYYY-MM-DD format (e.g., 2024-01-15)"
        return ""
    return val.strip()


def validate_paper(data: dict) -> tuple[dict, dict[str, str]]:
    errors: dict[str, str] = {}
    _text(data, "title", "Title is", errors)
    _text(data, "authors", "Authors are", errors)
    _date(data, "date", errors)
    _url(data, errors)
    _optional(data, "description", errors, max_len=2000, label="Description")
    if data.get("type") not in PAPER_TYPES:
        errors["type"] = 'Type must be either "paper" or "blog"'
    if errors:
        return {}, errors
    return sanitize_paper_form(data), errors


def validate_weekly_read(data: dict) -> tuple[dict, dict[str, str]]:
    errors: dict[str, str] = {}
    clean = {
        "title": _text(data, "title", "Title is", errors),
        "authors": _text(data, "authors", "Authors are", errors, max_len=None),
        "source": _optional(data, "source", errors, max_len=500, label="Source"),
        "url": _url(data, errors),
        "description": _optional(
            data, "description", errors, max_len=2000, label="Description"
        ),
        "category": data.get("category"),
        "readDate": _date(data, "readDate", errors),
    }
    if clean["category"] not in READ_CATEGORIES:
        errors["category"] = "Category must be one of " + ", ".join(READ_CATEGORIES)
    return clean, errors


def _validation_failed(errors: dict):
    return {"error": "Validation failed. Please check your input.", "details": errors}, 400


def _server_error(what: str, message: str):
    current_app.logger.exception("Error in %s %s: %s", request.method, request.path, what)
    return {"error": message}, 500


###############################################################################
# Papers
###############################################################################
@bp.route("/api/papers", methods=["GET"])
def list_papers():
    limit, offset, error = _paging_args()
    if error:
        return {"error": error}, 400
    type_ = request.args.get("type") or None
    if type_ and type_ not in PAPER_TYPES:
        return {"error": 'Invalid type parameter. Must be "paper" or "blog".'}, 400

    s = services()
    try:
        papers = s.papers.list_all(limit, offset, type_)
        total = s.papers.count(type_)
    except DatabaseError:
        return _server_error("list papers", "Failed to fetch papers. Please try again later.")
    has_more = (offset + limit) < total if limit else False
    return {"papers": papers, "total": total, "hasMore": has_more}


@bp.route("/api/papers", methods=["POST"])
@same_origin_required
@admin_required
def create_paper():
    body = _json_body()
    if body is None:
        return {"error": "Invalid JSON in request body."}, 400
    clean, errors = validate_paper(body)
    if errors:
        return _validation_failed(errors)
    try:
        paper = services().papers.create(clean)
    except DatabaseError:
        return _server_error("create paper", "Failed to create paper. Please try again later.")
    return {"paper": paper}, 201


@bp.route("/api/papers/<paper_id>", methods=["GET"])
def get_paper(paper_id):
    pid = _parse_id(paper_id)
    if pid is None:
        return {"error": "Invalid paper ID. Must be a positive integer."}, 400
    try:
        paper = services().papers.get(pid)
    except DatabaseError:
        return _server_error("get paper", "Failed to fetch paper. Please try again later.")
    if paper is None:
        return {"error": "Paper not found."}, 404
    return {"paper": paper}


@bp.route("/api/papers/<paper_id>", methods=["PUT"])
@same_origin_required
@admin_required
def update_paper(paper_id):
    pid = _parse_id(paper_id)
    if pid is None:
        return {"error": "Invalid paper ID. Must be a positive integer."}, 400
    body = _json_body()
    if body is None:
        return {"error": "Invalid JSON in request body."}, 400
    clean, errors = validate_paper(body)
    if errors:
        return _validation_failed(errors)
    try:
        paper = services().papers.update(pid, clean)
    except RecordNotFound:
        return {"error": "Paper not found."}, 404
    except DatabaseError:
        return _server_error("update paper", "Failed to update paper. Please try again later.")
    return {"paper": paper}


@bp.route("/api/papers/<paper_id>", methods=["DELETE"])
@same_origin_required
@admin_required
def delete_paper(paper_id):
    pid = _parse_id(paper_id)
    if pid is None:
        return {"error": "Invalid paper ID. Must be a positive integer."}, 400
    try:
        deleted = services().papers.delete(pid)
    except DatabaseError:
        return _server_error("delete paper", "Failed to delete paper. Please try again later.")
    if not deleted:
        return {"error": "Paper not found."}, 404
    return {"success": True, "message": "Paper deleted successfully."}


###############################################################################
# Weekly reads
###############################################################################
@bp.route("/api/weekly-reads", methods=["GET"])
def list_weekly_reads():
    limit, offset, error = _paging_args()
    if error:
        return {"error": error}, 400
    s = services()
    try:
        reads = s.weekly_reads.list_all(limit, offset)
        total = s.weekly_reads.count()
    except DatabaseError:
        return _server_error("list weekly reads", "Failed to fetch weekly reads")
    has_more = (offset + limit) < total if limit else False
    return {"reads": reads, "total": total, "hasMore": has_more}


@bp.route("/api/weekly-reads", methods=["POST"])
@same_origin_required
@admin_required
def create_weekly_read():
    body = _json_body()
    if body is None:
        return {"error": "Invalid JSON in request body."}, 400
    clean, errors = validate_weekly_read(body)
    if errors:
        return _validation_failed(errors)
    try:
        read = services().weekly_reads.create(clean)
    except DatabaseError:
        return _server_error("create weekly read", "Failed to create weekly read")
    return {"read": read}, 201


@bp.route("/api/weekly-reads/<read_id>", methods=["GET"])
def get_weekly_read(read_id):
    rid = _parse_id(read_id)
    if rid is None:
        return {"error": "Invalid weekly read ID. Must be a positive integer."}, 400
    try:
        read = services().weekly_reads.get(rid)
    except DatabaseError:
        return _server_error("get weekly read", "Failed to fetch weekly read")
    if read is None:
        return {"error": "Weekly read not found."}, 404
    return {"read": read}


@bp.route("/api/weekly-reads/<read_id>", methods=["PUT"])
@same_origin_required
@admin_required
def update_weekly_read(read_id):
    rid = _parse_id(read_id)
    if rid is None:
        return {"error": "Invalid weekly read ID. Must be a positive integer."}, 400
    body = _json_body()
    if body is None:
        return {"error": "Invalid JSON in request body."}, 400
    clean, errors = validate_weekly_read(body)
    if errors:
        return _validation_failed(errors)
    try:
        read = services().weekly_reads.update(rid, clean)
    except RecordNotFound:
        return {"error": "Weekly read not found."}, 404
    except DatabaseError:
        return _server_error("update weekly read", "Failed to update weekly read")
    return {"read": read}


@bp.route("/api/weekly-reads/<read_id>", methods=["DELETE"])
@same_origin_required
@admin_required
def delete_weekly_read(read_id):
    rid = _parse_id(read_id)
    if rid is None:
        return {"error": "Invalid weekly read ID. Must be a positive integer."}, 400
    try:
        deleted = services().weekly_reads.delete(rid)
    except DatabaseError:
        return _server_error("delete weekly read", "Failed to delete weekly read")
    if not deleted:
        return {"error": "Weekly read not found."}, 404
    return {"success": True, "message": "Weekly read deleted successfully."}


###############################################################################
# Blog posts + view counts
###############################################################################
@bp.route("/api/blogs", methods=["GET"])
def list_blogs():
    s = services()
    counts = s.views.get_all_view_counts()
    blogs = [
        {**{k: v for k, v in post.items() if k != "content"}, "viewCount": counts.get(post["slug"], 0)}
        for post in s.posts.all()
    ]
    return {"blogs": blogs, "total": len(blogs)}


@bp.route("/api/blogs/<slug>", methods=["GET"])
def get_blog(slug):
    s = services()
    post = s.posts.get(sanitize_slug(slug))
    if post is None:
        return {"error": "Blog post not found"}, 404
    return {**post, "viewCount": s.views.get_view_count(post["slug"])}


@bp.route("/api/blog/<path:slug>/view", methods=["POST"])
def track_view(slug):
    if not slug or not slug.strip():
        return {"error": "Invalid slug parameter"}, 400
    clean = sanitize_slug(slug)
    if not clean:
        return {"error": "Invalid slug format"}, 400

    s = services()
    if not s.posts.exists(clean):
        return {"error": "Blog post not found"}, 404
    try:
        count = s.views.increment(clean)
    except DatabaseError:
        return _server_error("track view", "Failed to track view")
    return {"success": True, "slug": clean, "viewCount": count}


###############################################################################
# Contact form
###############################################################################
def _contact_headers(remaining: int, reset_at: datetime | None) -> dict:
    headers = {
        "X-RateLimit-Limit": str(MAX_SUBMISSIONS),
        "X-RateLimit-Remaining": str(max(remaining, 0)),
    }
    if reset_at is not None:
        headers["X-RateLimit-Reset"] = reset_at.isoformat()
    return headers


@bp.route("/api/contact", methods=["POST"])
def contact():
    body = _json_body()
    if body is None:
        return {"success": False, "message": "Invalid request body"}, 400

    msg, errors = validate_contact_form(body)
    if errors:
        return {"success": False, "message": "Validation failed", "errors": errors}, 400

    s = services()
    limit = s.contact_limiter.check(msg.email)
    if not limit.allowed:
        retry_after = max(
            0, math.ceil((limit.reset_at - utc_now()).total_seconds())
        )
        headers = _contact_headers(0, limit.reset_at)
        headers["Retry-After"] = str(retry_after)
        return (
            {
                "success": False,
                "message": limit.message
                or f"You can only send {MAX_SUBMISSIONS} messages per "
                f"{WINDOW_HOURS} hours. Please try again later.",
                "resetAt": limit.reset_at.isoformat(),
                "retryAfter": retry_after,
            },
            429,
            headers,
        )

    if not s.mailer.send(msg):
        current_app.logger.error("Contact email to site owner could not be sent")
        return (
            {
                "success": False,
                "message": "Failed to send email. Please try again later or contact me directly.",
            },
            500,
            _contact_headers(limit.remaining, None),
        )

    s.contact_limiter.record(msg.email)
    return (
        {
            "success": True,
            "message": "Thank you for your message! I'll get back to you soon.",
        },
        200,
        _contact_headers(limit.remaining, limit.reset_at),
    )


###############################################################################
# Authentication
###############################################################################
def _login_headers(limit: LoginLimit) -> dict:
    return {
        "X-RateLimit-Limit": str(MAX_LOGIN_ATTEMPTS),
        "X-RateLimit-Remaining": str(limit.remaining),
        "X-RateLimit-Reset": limit.reset_at().isoformat(),
    }


@bp.route("/api/auth/login", methods=["POST"])
def login():
    s = services()
    ip = client_ip(request.headers)
    limit = s.login_limiter.check(ip)
    headers = _login_headers(limit)

    if limit.is_limited:
        wait = limit.seconds_until_reset()
        minutes = max(1, math.ceil(wait / 60))
        current_app.logger.warning("Login rate limit hit for %s", ip)
        headers["Retry-After"] = str(wait)
        return (
            {
                "error": "Too many login attempts. Please try again later.",
                "details": {
                    "message": f"Rate limit exceeded. Please try again in {minutes} minute(s).",
                    "resetTime": limit.reset_at().isoformat(),
                },
            },
            429,
            headers,
        )

    wants_json = request.is_json
    form = (request.get_json(silent=True) if wants_json else request.form) or {}
    if not hasattr(form, "get"):
        form = {}
    callback = safe_callback(form.get("callbackUrl"))

    subject = verify_credentials(s.admins, form.get("email"), form.get("password"))
    if subject is None:
        if wants_json:
            return {"error": "Invalid email or password."}, 401, headers
        page = render_template_string(
            TEMPL_LOGIN, error="Invalid email or password.", callback=callback
        )
        return page, 401, headers

    s.login_limiter.reset(ip)
    if wants_json:
        resp = make_response({"user": subject, "url": callback})
    else:
        resp = redirect(callback)
    resp.headers.update(headers)
    _set_session_cookie(resp, s.tokens.issue(subject))
    return resp


@bp.route("/api/auth/logout", methods=["POST"])
def logout():
    resp = make_response({"success": True})
    resp.delete_cookie(session_cookie_name(), path="/")
    return resp


@bp.route("/api/auth/session", methods=["GET"])
def session_info():
    return {"user": g.admin}


###############################################################################
# Admin
###############################################################################
def database_stats(s: Services) -> dict:
    papers = s.papers.list_all()
    users = s.admins.list_users()
    counts = s.views.get_all_view_counts()
    return {
        "database": s.db.name,
        "papers": {
            "total": len(papers),
            "byType": {t: sum(1 for p in papers if p["type"] == t) for t in PAPER_TYPES},
            "recent": [
                {k: p[k] for k in ("id", "title", "type", "date")} for p in papers[:5]
            ],
        },
        "adminUsers": {"total": len(users), "emails": [u["email"] for u in users]},
        "blogViews": {
            "total": len(counts),
            "topPosts": [
                {"slug": slug, "views": n}
                for slug, n in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:5]
            ],
        },
    }


@bp.route("/api/admin/database-info", methods=["GET"])
@admin_required
def database_info():
    try:
        return database_stats(services())
    except DatabaseError:
        return _server_error("database info", "Failed to fetch database info")


@bp.route("/admin/login", methods=["GET"])
def admin_login():
    callback = safe_callback(request.args.get("callbackUrl"))
    if g.admin is not None:
        return redirect(callback)
    return render_template_string(TEMPL_LOGIN, error=None, callback=callback)


@bp.route("/admin/dashboard")
def admin_dashboard():
    try:
        stats = database_stats(services())
    except DatabaseError:
        current_app.logger.exception("Dashboard statistics failed")
        stats = None
    return render_template_string(TEMPL_DASHBOARD, stats=stats, admin=g.admin)


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'Admin' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:38em;margin:auto;padding:13px;color:#c9c9c9;background:#222}
input{width:100%;padding:6px 10px;margin-bottom:10px;background:#4a4a4a;color:#c9c9c9;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}
button{padding:.55rem 1rem;background:#fff;color:#222;border:1px solid #fff;cursor:pointer}
table{width:100%;border-collapse:collapse}td,th{padding:.4em;border-bottom:1px solid #4a4a4a;text-align:left}
.error{color:#f9c0c0}
</style>
<body>
"""

TEMPL_EPILOG = """
</body>
</html>
"""

TEMPL_LOGIN = wrap("""
<h2>Admin sign in</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="/api/auth/login">
  <input type="hidden" name="callbackUrl" value="{{ callback }}">
  <label for="email">Email</label>
  <input id="email" name="email" type="email" autocomplete="username" required>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" required>
  <button type="submit">Sign in</button>
</form>
""")

TEMPL_DASHBOARD = wrap("""
<h2>Dashboard</h2>
<p>Signed in as {{ admin.email }}.</p>
<form method="post" action="/api/auth/logout"><button type="submit">Sign out</button></form>
{% if stats %}
<h3>Database</h3>
<p>{{ stats.database }}</p>
<h3>Papers ({{ stats.papers.total }})</h3>
<p>{{ stats.papers.byType.paper }} papers, {{ stats.papers.byType.blog }} blog links</p>
<table>
{% for p in stats.papers.recent %}
  <tr><td>{{ p.date }}</td><td>{{ p.title }}</td><td>{{ p.type }}</td></tr>
{% endfor %}
</table>
<h3>Most viewed posts</h3>
<table>
{% for row in stats.blogViews.topPosts %}
  <tr><td>{{ row.slug }}</td><td>{{ row.views }}</td></tr>
{% else %}
  <tr><td>No views yet.</td></tr>
{% endfor %}
</table>
{% else %}
<p class="error">Statistics are unavailable right now.</p>
{% endif %}
""")


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@bp.app_errorhandler(404)
def not_found(exc):
    if _wants_json():
        return {"error": "Not found."}, 404
    return render_template_string(wrap("<h2>Page not found</h2>"), title="Not found"), 404


@bp.app_errorhandler(405)
def method_not_allowed(exc):
    if _wants_json():
        return {"success": False, "message": "Method not allowed"}, 405
    return render_template_string(wrap("<h2>Method not allowed</h2>")), 405


@bp.app_errorhandler(500)
def internal_error(exc):
    current_app.logger.error("Unhandled error on %s %s", request.method, request.path)
    if _wants_json():
        return {"error": "An unexpected error occurred. Please try again later."}, 500
    return render_template_string(wrap("<h2>Internal Server Error</h2>")), 500


###############################################################################
# CLI – schema + admin accounts
###############################################################################
@bp.cli.command("init-db")
def cli_init_db():
    """Create every table and index (safe to re-run)."""
    services().db.ensure_schema()
    click.secho("✅  Database ready.", fg="green")


@bp.cli.command("create-admin")
@click.option("--email", prompt=True, help="Admin e-mail address")
@click.password_option(help="At least 8 characters")
def cli_create_admin(email: str, password: str):
    """Create an admin account with a hashed password."""
    password = password.strip()
    if len(password) < 8:
        raise click.BadParameter(
            "Password must be at least 8 characters", param_hint="--password"
        )
    try:
        user = services().admins.create_user(email, generate_password_hash(password))
    except DuplicateRecord:
        click.secho(f"⚠️   {email.strip().lower()} already exists.", fg="yellow")
        raise SystemExit(1)
    click.secho(f"\n✅  Admin {user['email']} created.", fg="green")


@bp.cli.command("cleanup-contact-limits")
def cli_cleanup_contact_limits():
    """Delete contact-form quota rows whose window has passed."""
    removed = services().contact_limiter.cleanup_expired()
    click.echo(f"Removed {removed} expired rate-limit record(s).")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    create_app().run(debug=True)
