"""
Storage for the portfolio site.

One query interface (`query`, `query_one`, `update`, `batch`) over either a
local SQLite file or a remote libSQL (Turso) database, chosen once by
`connect()`.  The record stores below it are the only code that writes SQL.
"""

import base64
import logging
import sqlite3
import threading
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple

import requests

log = logging.getLogger(__name__)

SCHEMA = """
------------------------------------------------------------
-- Papers & blog links
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS papers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    authors     TEXT NOT NULL,
    date        TEXT NOT NULL,
    url         TEXT NOT NULL,
    description TEXT,
    type        TEXT NOT NULL CHECK(type IN ('paper', 'blog')),
    created_at  TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at  TEXT DEFAULT CURRENT_TIMESTAMP
);

------------------------------------------------------------
-- Accounts
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS admin_users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    email         TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    created_at    TEXT DEFAULT CURRENT_TIMESTAMP
);

------------------------------------------------------------
-- Blog view counters
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS blog_views (
    slug           TEXT PRIMARY KEY,
    view_count     INTEGER NOT NULL DEFAULT 0,
    last_viewed_at TEXT DEFAULT CURRENT_TIMESTAMP,
    created_at     TEXT DEFAULT CURRENT_TIMESTAMP
);

------------------------------------------------------------
-- Weekly reading list
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS weekly_reads (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    authors     TEXT NOT NULL,
    source      TEXT,
    url         TEXT NOT NULL,
    description TEXT,
    category    TEXT CHECK(category IN ('research', 'article', 'blog', 'documentation')),
    read_date   TEXT NOT NULL,
    created_at  TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at  TEXT DEFAULT CURRENT_TIMESTAMP
);

------------------------------------------------------------
-- Contact form quota (one row per sender)
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS contact_rate_limit (
    email               TEXT PRIMARY KEY,
    submission_count    INTEGER NOT NULL DEFAULT 0,
    first_submission_at TEXT NOT NULL,
    last_submission_at  TEXT NOT NULL,
    window_reset_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_papers_date ON papers(date DESC);
CREATE INDEX IF NOT EXISTS idx_papers_type ON papers(type);
CREATE INDEX IF NOT EXISTS idx_papers_created_at ON papers(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_papers_type_date ON papers(type, date DESC);
CREATE INDEX IF NOT EXISTS idx_blog_views_count ON blog_views(view_count DESC);
CREATE INDEX IF NOT EXISTS idx_admin_users_email ON admin_users(email);
CREATE INDEX IF NOT EXISTS idx_weekly_reads_date ON weekly_reads(read_date DESC);
CREATE INDEX IF NOT EXISTS idx_weekly_reads_category ON weekly_reads(category);
CREATE INDEX IF NOT EXISTS idx_contact_rate_limit_reset ON contact_rate_limit(window_reset_at);
"""

PAPER_TYPES = ("paper", "blog")
READ_CATEGORIES = ("research", "article", "blog", "documentation")


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _stamp() -> str:
    return utc_now().isoformat(timespec="microseconds")


###############################################################################
# Errors
###############################################################################
class DatabaseError(Exception):
    """Storage failed; the message is safe to log, not to show."""


class ConstraintViolation(DatabaseError):
    """The engine rejected a write because of a table constraint."""


class RecordNotFound(DatabaseError):
    """An update or lookup by id touched no row."""


class DuplicateRecord(DatabaseError):
    """A unique column already holds the value being written."""


class UpdateResult(NamedTuple):
    changes: int
    last_insert_id: int | None = None


def split_statements(script: str) -> list[str]:
    """Split a DDL script on `;`, dropping `--` comment lines."""
    lines = [ln for ln in script.splitlines() if not ln.strip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


###############################################################################
# Backends
###############################################################################
class Database:
    """Common interface; subclasses talk to an actual engine."""

    name = "database"

    def __init__(self) -> None:
        self._initialized = False
        self._init_lock = threading.Lock()

    def query(self, sql: str, params=()) -> list[dict]:
        raise NotImplementedError

    def query_one(self, sql: str, params=()) -> dict | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def update(self, sql: str, params=()) -> UpdateResult:
        raise NotImplementedError

    def batch(self, statements) -> None:
        """Run ``[(sql, params), ...]`` atomically: all or nothing."""
        raise NotImplementedError

    def ensure_schema(self) -> None:
        """Apply SCHEMA once per instance (every statement is IF NOT EXISTS)."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            for stmt in split_statements(SCHEMA):
                self.update(stmt)
            self._initialized = True

    def close(self) -> None:
        pass


def _translate_sqlite(exc: sqlite3.Error) -> DatabaseError:
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolation(str(exc))
    return DatabaseError(str(exc))


class LocalDatabase(Database):
    """SQLite file in WAL mode; one short-lived connection per call."""

    name = "SQLite (Local)"

    def __init__(self, path: str | Path, *, timeout: float = 10.0) -> None:
        super().__init__()
        self.path = str(path)
        self.timeout = timeout
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with closing(self._connect()) as conn:
                conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error as exc:
            raise _translate_sqlite(exc) from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def query(self, sql: str, params=()) -> list[dict]:
        try:
            with closing(self._connect()) as conn:
                return [dict(r) for r in conn.execute(sql, tuple(params)).fetchall()]
        except sqlite3.Error as exc:
            raise _translate_sqlite(exc) from exc

    def update(self, sql: str, params=()) -> UpdateResult:
        try:
            with closing(self._connect()) as conn, conn:
                cur = conn.execute(sql, tuple(params))
                return UpdateResult(max(cur.rowcount, 0), cur.lastrowid or None)
        except sqlite3.Error as exc:
            raise _translate_sqlite(exc) from exc

    def batch(self, statements) -> None:
        try:
            with closing(self._connect()) as conn, conn:
                for sql, params in statements:
                    conn.execute(sql, tuple(params or ()))
        except sqlite3.Error as exc:
            raise _translate_sqlite(exc) from exc


# ── libSQL wire values ────────────────────────────────────────────────
def _encode_value(value) -> dict:
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": str(int(value))}
    if isinstance(value, int):
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, bytes):
        return {"type": "blob", "base64": base64.b64encode(value).decode()}
    return {"type": "text", "value": str(value)}


def _decode_value(cell: dict):
    kind = cell.get("type")
    if kind == "null":
        return None
    if kind == "integer":
        return int(cell["value"])
    if kind == "float":
        return float(cell["value"])
    if kind == "blob":
        raw = cell.get("base64", "")
        return base64.b64decode(raw + "=" * (-len(raw) % 4))
    return cell.get("value")


def _stmt(sql: str, params=()) -> dict:
    return {"sql": sql, "args": [_encode_value(p) for p in params or ()]}


def _remote_error(err: dict) -> DatabaseError:
    message = err.get("message") or "remote database error"
    code = err.get("code") or ""
    if "CONSTRAINT" in code or "constraint failed" in message:
        return ConstraintViolation(message)
    return DatabaseError(message)


class RemoteDatabase(Database):
    """libSQL/Turso over the HTTP pipeline API (`/v2/pipeline`)."""

    name = "Turso (Production)"

    def __init__(
        self,
        url: str,
        auth_token: str,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__()
        base = url.strip()
        if base.startswith("libsql://"):
            base = "https://" + base[len("libsql://") :]
        self.endpoint = base.rstrip("/") + "/v2/pipeline"
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {auth_token}"})

    def _pipeline(self, request: dict) -> dict:
        body = {"baton": None, "requests": [request, {"type": "close"}]}
        try:
            resp = self.http.post(self.endpoint, json=body, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise DatabaseError(f"remote database request failed: {exc}") from exc

        results = data.get("results") or []
        if not results:
            raise DatabaseError("remote database returned no results")
        first = results[0]
        if first.get("type") != "ok":
            raise _remote_error(first.get("error") or {})
        return first.get("response") or {}

    def _execute(self, sql: str, params=()) -> dict:
        response = self._pipeline({"type": "execute", "stmt": _stmt(sql, params)})
        return response.get("result") or {}

    def query(self, sql: str, params=()) -> list[dict]:
        result = self._execute(sql, params)
        cols = [c.get("name") for c in result.get("cols") or []]
        return [
            dict(zip(cols, (_decode_value(cell) for cell in row)))
            for row in result.get("rows") or []
        ]

    def update(self, sql: str, params=()) -> UpdateResult:
        result = self._execute(sql, params)
        last = result.get("last_insert_rowid")
        return UpdateResult(
            int(result.get("affected_row_count") or 0),
            int(last) if last is not None else None,
        )

    def batch(self, statements) -> None:
        # BEGIN, each statement gated on the previous one, COMMIT, and a
        # ROLLBACK that only fires when COMMIT did not succeed.
        steps = [{"stmt": {"sql": "BEGIN"}}]
        for sql, params in statements:
            steps.append(
                {
                    "stmt": _stmt(sql, params),
                    "condition": {"type": "ok", "step": len(steps) - 1},
                }
            )
        commit = len(steps)
        steps.append(
            {"stmt": {"sql": "COMMIT"}, "condition": {"type": "ok", "step": commit - 1}}
        )
        steps.append(
            {
                "stmt": {"sql": "ROLLBACK"},
                "condition": {"type": "not", "cond": {"type": "ok", "step": commit}},
            }
        )
        response = self._pipeline({"type": "batch", "batch": {"steps": steps}})
        for err in (response.get("result") or {}).get("step_errors") or []:
            if err:
                raise _remote_error(err)

    def close(self) -> None:
        self.http.close()


def connect(config) -> Database:
    """Pick the backend once: remote when both Turso values are set."""
    url = config.get("TURSO_DATABASE_URL")
    token = config.get("TURSO_AUTH_TOKEN")
    if url and token:
        log.info("Using remote database at %s", url)
        return RemoteDatabase(
            url, token, timeout=float(config.get("REMOTE_DB_TIMEOUT", 10))
        )
    log.info("Using local database at %s", config["DATABASE"])
    return LocalDatabase(config["DATABASE"])


###############################################################################
# Record stores
###############################################################################
class Store:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _ready(self) -> None:
        self.db.ensure_schema()


def _paper(row: dict) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "authors": row["authors"],
        "date": row["date"],
        "url": row["url"],
        "description": row["description"],
        "type": row["type"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


class Papers(Store):
    """Papers and blog links shown on the reading page."""

    def list_all(
        self, limit: int | None = None, offset: int = 0, type: str | None = None
    ) -> list[dict]:
        sql = "SELECT * FROM papers"
        params: list = []
        if type in PAPER_TYPES:
            sql += " WHERE type = ?"
            params.append(type)
        sql += " ORDER BY date DESC"
        if limit:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        try:
            self._ready()
            return [_paper(r) for r in self.db.query(sql, params)]
        except DatabaseError as exc:
            log.error("Error fetching papers: %s", exc)
            raise DatabaseError("Failed to fetch papers from database") from exc

    def get(self, paper_id: int) -> dict | None:
        try:
            self._ready()
            row = self.db.query_one("SELECT * FROM papers WHERE id = ?", (paper_id,))
        except DatabaseError as exc:
            log.error("Error fetching paper %s: %s", paper_id, exc)
            raise DatabaseError("Failed to fetch paper from database") from exc
        return _paper(row) if row else None

    def create(self, data: dict) -> dict:
        now = _stamp()
        try:
            self._ready()
            res = self.db.update(
                "INSERT INTO papers "
                "(title, authors, date, url, description, type, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (
                    data["title"],
                    data["authors"],
                    data["date"],
                    data["url"],
                    data.get("description") or None,
                    data["type"],
                    now,
                    now,
                ),
            )
        except DatabaseError as exc:
            log.error("Error creating paper: %s", exc)
            raise DatabaseError("Failed to create paper in database") from exc
        paper = self.get(res.last_insert_id) if res.last_insert_id else None
        if paper is None:
            raise DatabaseError("Failed to retrieve created paper")
        return paper

    def update(self, paper_id: int, data: dict) -> dict:
        try:
            self._ready()
            res = self.db.update(
                "UPDATE papers SET title=?, authors=?, date=?, url=?, description=?, "
                "type=?, updated_at=? WHERE id=?",
                (
                    data["title"],
                    data["authors"],
                    data["date"],
                    data["url"],
                    data.get("description") or None,
                    data["type"],
                    _stamp(),
                    paper_id,
                ),
            )
        except DatabaseError as exc:
            log.error("Error updating paper %s: %s", paper_id, exc)
            raise DatabaseError("Failed to update paper in database") from exc
        if res.changes == 0:
            raise RecordNotFound("Paper not found")
        paper = self.get(paper_id)
        if paper is None:
            raise DatabaseError("Failed to retrieve updated paper")
        return paper

    def delete(self, paper_id: int) -> bool:
        try:
            self._ready()
            res = self.db.update("DELETE FROM papers WHERE id = ?", (paper_id,))
        except DatabaseError as exc:
            log.error("Error deleting paper %s: %s", paper_id, exc)
            raise DatabaseError("Failed to delete paper from database") from exc
        return res.changes > 0

    def count(self, type: str | None = None) -> int:
        sql = "SELECT COUNT(*) AS count FROM papers"
        params: tuple = ()
        if type in PAPER_TYPES:
            sql += " WHERE type = ?"
            params = (type,)
        try:
            self._ready()
            row = self.db.query_one(sql, params)
        except DatabaseError as exc:
            log.error("Error counting papers: %s", exc)
            raise DatabaseError("Failed to get paper count from database") from exc
        return int(row["count"]) if row else 0


class AdminUsers(Store):
    def get_by_email(self, email: str) -> dict | None:
        """Return the user *with* its password hash, or None."""
        try:
            self._ready()
            row = self.db.query_one(
                "SELECT * FROM admin_users WHERE email = ?", (email,)
            )
        except DatabaseError as exc:
            log.error("Error fetching admin user %s: %s", email, exc)
            raise DatabaseError("Failed to fetch admin user from database") from exc
        if not row:
            return None
        return {
            "id": row["id"],
            "email": row["email"],
            "passwordHash": row["password_hash"],
            "createdAt": row["created_at"],
        }

    def create_user(self, email: str, password_hash: str) -> dict:
        email = email.strip().lower()
        now = _stamp()
        try:
            self._ready()
            res = self.db.update(
                "INSERT INTO admin_users (email, password_hash, created_at) VALUES (?,?,?)",
                (email, password_hash, now),
            )
        except ConstraintViolation as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateRecord(
                    "Admin user with this email already exists"
                ) from exc
            raise DatabaseError("Failed to create admin user in database") from exc
        except DatabaseError as exc:
            log.error("Error creating admin user: %s", exc)
            raise DatabaseError("Failed to create admin user in database") from exc
        return {"id": res.last_insert_id, "email": email, "createdAt": now}

    def list_users(self) -> list[dict]:
        try:
            self._ready()
            rows = self.db.query(
                "SELECT id, email, created_at FROM admin_users ORDER BY id"
            )
        except DatabaseError as exc:
            log.error("Error fetching admin users: %s", exc)
            raise DatabaseError("Failed to fetch admin users from database") from exc
        return [
            {"id": r["id"], "email": r["email"], "createdAt": r["created_at"]}
            for r in rows
        ]


class BlogViews(Store):
    """Per-slug view counters.  Reads degrade to 0 / empty on failure."""

    def get_view_count(self, slug: str) -> int:
        try:
            self._ready()
            row = self.db.query_one(
                "SELECT view_count FROM blog_views WHERE slug = ?", (slug,)
            )
        except DatabaseError as exc:
            log.error("Error fetching view count for %s: %s", slug, exc)
            return 0
        return int(row["view_count"]) if row else 0

    def increment(self, slug: str) -> int:
        """Bump the counter in one upsert and return the new total."""
        now = _stamp()
        try:
            self._ready()
            self.db.update(
                "INSERT INTO blog_views (slug, view_count, last_viewed_at, created_at) "
                "VALUES (?, 1, ?, ?) "
                "ON CONFLICT(slug) DO UPDATE SET "
                "view_count = view_count + 1, last_viewed_at = excluded.last_viewed_at",
                (slug, now, now),
            )
            row = self.db.query_one(
                "SELECT view_count FROM blog_views WHERE slug = ?", (slug,)
            )
        except DatabaseError as exc:
            log.error("Error incrementing view count for %s: %s", slug, exc)
            raise DatabaseError("Failed to increment view count in database") from exc
        if row is None:
            raise DatabaseError("Failed to retrieve updated view count")
        return int(row["view_count"])

    def get_all_view_counts(self) -> dict[str, int]:
        try:
            self._ready()
            rows = self.db.query("SELECT slug, view_count FROM blog_views")
        except DatabaseError as exc:
            log.error("Error fetching all view counts: %s", exc)
            return {}
        return {r["slug"]: int(r["view_count"]) for r in rows}

    def get_top_viewed(self, limit: int = 10) -> list[dict]:
        try:
            self._ready()
            rows = self.db.query(
                "SELECT slug, view_count FROM blog_views "
                "ORDER BY view_count DESC LIMIT ?",
                (limit,),
            )
        except DatabaseError as exc:
            log.error("Error fetching top viewed posts: %s", exc)
            return []
        return [{"slug": r["slug"], "viewCount": int(r["view_count"])} for r in rows]


def _weekly_read(row: dict) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "authors": row["authors"],
        "source": row["source"],
        "url": row["url"],
        "description": row["description"],
        "category": row["category"],
        "readDate": row["read_date"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


class WeeklyReads(Store):
    def list_all(self, limit: int | None = None, offset: int = 0) -> list[dict]:
        sql = "SELECT * FROM weekly_reads ORDER BY read_date DESC, updated_at DESC"
        params: list = []
        if limit:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        try:
            self._ready()
            return [_weekly_read(r) for r in self.db.query(sql, params)]
        except DatabaseError as exc:
            log.error("Error fetching weekly reads: %s", exc)
            raise DatabaseError("Failed to fetch weekly reads from database") from exc

    def get(self, read_id: int) -> dict | None:
        try:
            self._ready()
            row = self.db.query_one(
                "SELECT * FROM weekly_reads WHERE id = ?", (read_id,)
            )
        except DatabaseError as exc:
            log.error("Error fetching weekly read %s: %s", read_id, exc)
            raise DatabaseError("Failed to fetch weekly read from database") from exc
        return _weekly_read(row) if row else None

    def create(self, data: dict) -> dict:
        now = _stamp()
        try:
            self._ready()
            res = self.db.update(
                "INSERT INTO weekly_reads (title, authors, source, url, description, "
                "category, read_date, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    data["title"],
                    data["authors"],
                    data.get("source") or None,
                    data["url"],
                    data.get("description") or None,
                    data["category"],
                    data["readDate"],
                    now,
                    now,
                ),
            )
        except DatabaseError as exc:
            log.error("Error creating weekly read: %s", exc)
            raise DatabaseError("Failed to create weekly read in database") from exc
        read = self.get(res.last_insert_id) if res.last_insert_id else None
        if read is None:
            raise DatabaseError("Failed to retrieve created weekly read")
        return read

    def update(self, read_id: int, data: dict) -> dict:
        try:
            self._ready()
            res = self.db.update(
                "UPDATE weekly_reads SET title=?, authors=?, source=?, url=?, "
                "description=?, category=?, read_date=?, updated_at=? WHERE id=?",
                (
                    data["title"],
                    data["authors"],
                    data.get("source") or None,
                    data["url"],
                    data.get("description") or None,
                    data["category"],
                    data["readDate"],
                    _stamp(),
                    read_id,
                ),
            )
        except DatabaseError as exc:
            log.error("Error updating weekly read %s: %s", read_id, exc)
            raise DatabaseError("Failed to update weekly read in database") from exc
        if res.changes == 0:
            raise RecordNotFound("Weekly read not found")
        read = self.get(read_id)
        if read is None:
            raise DatabaseError("Failed to retrieve updated weekly read")
        return read

    def delete(self, read_id: int) -> bool:
        try:
            self._ready()
            res = self.db.update("DELETE FROM weekly_reads WHERE id = ?", (read_id,))
        except DatabaseError as exc:
            log.error("Error deleting weekly read %s: %s", read_id, exc)
            raise DatabaseError("Failed to delete weekly read from database") from exc
        return res.changes > 0

    def count(self) -> int:
        try:
            self._ready()
            row = self.db.query_one("SELECT COUNT(*) AS count FROM weekly_reads")
        except DatabaseError as exc:
            log.error("Error counting weekly reads: %s", exc)
            raise DatabaseError(
                "Failed to get weekly reads count from database"
            ) from exc
        return int(row["count"]) if row else 0


class ContactLimits(Store):
    """
    Rows behind the contact-form quota.  Errors propagate untouched so the
    limiter can decide what a failure means.
    """

    def get(self, email: str) -> dict | None:
        self._ready()
        return self.db.query_one(
            "SELECT * FROM contact_rate_limit WHERE email = ?", (email,)
        )

    def start(self, email: str, now: datetime, reset_at: datetime) -> None:
        """Insert a first submission, or restart an expired window."""
        self._ready()
        self.db.update(
            "INSERT INTO contact_rate_limit "
            "(email, submission_count, first_submission_at, last_submission_at, "
            "window_reset_at) VALUES (?, 1, ?, ?, ?) "
            "ON CONFLICT(email) DO UPDATE SET submission_count = 1, "
            "first_submission_at = excluded.first_submission_at, "
            "last_submission_at = excluded.last_submission_at, "
            "window_reset_at = excluded.window_reset_at",
            (email, now.isoformat(), now.isoformat(), reset_at.isoformat()),
        )

    def increment(self, email: str, now: datetime) -> None:
        self._ready()
        self.db.update(
            "UPDATE contact_rate_limit SET submission_count = submission_count + 1, "
            "last_submission_at = ? WHERE email = ?",
            (now.isoformat(), email),
        )

    def delete_expired(self, now: datetime) -> int:
        self._ready()
        return self.db.update(
            "DELETE FROM contact_rate_limit WHERE window_reset_at < ?",
            (now.isoformat(),),
        ).changes
