"""
Guards in front of the admin and contact surfaces.

• input sanitising (HTML escaping, URL allow-listing, slug cleanup)
• same-origin check for state-changing admin calls
• admin credential check + signed 24 h session tokens
• login limiter (in memory, per IP) and contact limiter (stored, per e-mail)
"""

import logging
import math
import random
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from html import escape
from time import time
from urllib.parse import urlencode, urlparse

import bleach
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from portfolio.db import AdminUsers, ContactLimits, DatabaseError, utc_now

log = logging.getLogger(__name__)

###############################################################################
# Sanitising
###############################################################################
_DANGEROUS_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")
_SLUG_STRIP_RE = re.compile(r"[^A-Za-z0-9_-]")
_TAG_RE = re.compile(r"<[^>]*>")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# rendered markdown: prose, code blocks, tables, footnotes
HTML_TAGS = frozenset(bleach.sanitizer.ALLOWED_TAGS) | {
    "p", "br", "hr", "pre", "span", "div", "img", "sup", "sub", "del", "ins",
    "h1", "h2", "h3", "h4", "h5", "h6", "dl", "dt", "dd",
    "table", "thead", "tbody", "tr", "th", "td",
}
HTML_ATTRIBUTES = {
    "*": ["class", "id"],
    "a": ["href", "title", "rel"],
    "abbr": ["title"],
    "img": ["src", "alt", "title"],
    "th": ["align"],
    "td": ["align"],
}
HTML_PROTOCOLS = frozenset({"http", "https", "mailto"})


def escape_html(text: str) -> str:
    return escape(text, quote=True).replace("/", "&#x2F;")


def sanitize_text(text: str | None) -> str:
    """Drop NULs, normalise newlines, trim, then escape."""
    if not text:
        return ""
    text = text.replace("\0", "").replace("\r\n", "\n").replace("\r", "\n")
    return escape_html(text.strip())


def sanitize_description(text: str | None, max_length: int = 2000) -> str:
    return sanitize_text(text)[:max_length]


def sanitize_url(url: str | None) -> str | None:
    """Return the trimmed URL if it is plain http(s), else None."""
    if not url:
        return None
    url = url.strip()
    if url.lower().startswith(_DANGEROUS_SCHEMES):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        return None
    return url


def sanitize_slug(raw: str | None) -> str:
    """Keep only letters, digits, `-` and `_` (``../x`` → ``x``)."""
    return _SLUG_STRIP_RE.sub("", raw or "")


def strip_html_tags(text: str | None) -> str:
    return _TAG_RE.sub("", text or "")


def sanitize_html(html: str | None) -> str:
    """
    Allow-list scrub of rendered HTML.  Tags outside HTML_TAGS are dropped
    with their markup; their text stays.
    """
    if not html:
        return ""
    return bleach.clean(
        html,
        tags=HTML_TAGS,
        attributes=HTML_ATTRIBUTES,
        protocols=HTML_PROTOCOLS,
        strip=True,
        strip_comments=True,
    )


def sanitize_paper_form(data: dict) -> dict:
    """
    Escape the text fields of an already validated paper form.  A URL that
    fails the allow-list comes back as None, never as the raw input.
    """
    return {
        "title": sanitize_text(data["title"]),
        "authors": sanitize_text(data["authors"]),
        "date": data["date"].strip(),
        "url": sanitize_url(data["url"]),
        "description": sanitize_description(data["description"])
        if data.get("description")
        else None,
        "type": data["type"],
    }


###############################################################################
# Same-origin check
###############################################################################
_DEFAULT_PORTS = {"http": 80, "https": 443}


def _url_host(url: str) -> str | None:
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None
    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS.get(parsed.scheme.lower()):
        host = f"{host}:{port}"
    return host


def validate_csrf_headers(headers) -> bool:
    """
    Origin (or, failing that, Referer) must name the same host as Host.
    With neither header present the request passes; SameSite=Lax on the
    session cookie is what protects that case.
    """
    host = headers.get("Host")
    origin = headers.get("Origin")
    if origin and host:
        return _url_host(origin) == host
    referer = headers.get("Referer")
    if referer and host:
        return _url_host(referer) == host
    return True


###############################################################################
# Credentials + session tokens
###############################################################################
SESSION_MAX_AGE = 24 * 60 * 60
SESSION_COOKIE = "session-token"
PROTECTED_PREFIXES = ("/admin/dashboard",)
LOGIN_PATH = "/admin/login"
DEFAULT_CALLBACK = "/admin/dashboard"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_login(email, password) -> tuple[dict, dict[str, str]]:
    """Return ``(clean, errors)`` for a login form."""
    errors: dict[str, str] = {}
    if not isinstance(email, str) or not email.strip():
        errors["email"] = "Email is required"
    elif not EMAIL_RE.match(email.strip()):
        errors["email"] = "Invalid email address"
    if not isinstance(password, str) or len(password) < 8:
        errors["password"] = "Password must be at least 8 characters"
    if errors:
        return {}, errors
    return {"email": normalize_email(email), "password": password.strip()}, {}


@lru_cache(maxsize=1)
def _decoy_hash() -> str:
    return generate_password_hash("decoy-password-never-matches")


def verify_credentials(users: AdminUsers, email, password) -> dict | None:
    """
    Return ``{"id", "email"}`` for a valid admin login, else None.

    Every failure (bad input, unknown user, wrong password, storage error)
    returns the same None so callers cannot tell them apart.
    """
    clean, errors = validate_login(email, password)
    if errors:
        log.info("Rejected login with malformed credentials: %s", sorted(errors))
        return None
    try:
        user = users.get_by_email(clean["email"])
    except DatabaseError:
        log.exception("Admin lookup failed during login")
        return None
    if user is None:
        # unknown users still pay for one hash check
        check_password_hash(_decoy_hash(), clean["password"])
        log.info("Login failed for %s", clean["email"])
        return None
    if not check_password_hash(user["passwordHash"], clean["password"]):
        log.info("Login failed for %s", clean["email"])
        return None
    return {"id": str(user["id"]), "email": user["email"]}


class SessionTokens:
    """Stateless signed session: payload + timestamp, valid for max_age."""

    def __init__(self, secret_key: str, max_age: int = SESSION_MAX_AGE) -> None:
        self.max_age = max_age
        self.serializer = URLSafeTimedSerializer(secret_key, salt="admin-session")

    def issue(self, subject: dict) -> str:
        return self.serializer.dumps({"id": subject["id"], "email": subject["email"]})

    def read(self, token: str | None) -> dict | None:
        if not token:
            return None
        try:
            data, issued = self.serializer.loads(
                token, max_age=self.max_age, return_timestamp=True
            )
        except SignatureExpired:
            return None  # too old
        except BadSignature:
            return None  # forged
        if not isinstance(data, dict) or "id" not in data or "email" not in data:
            return None
        expires = issued + timedelta(seconds=self.max_age)
        return {
            "id": str(data["id"]),
            "email": data["email"],
            "expiresAt": expires.isoformat(),
        }


def is_protected(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES)


def login_redirect_url(path: str) -> str:
    return f"{LOGIN_PATH}?{urlencode({'callbackUrl': path})}"


def safe_callback(url: str | None, default: str = DEFAULT_CALLBACK) -> str:
    """Only local absolute paths are allowed as post-login targets."""
    if not url or not url.startswith("/") or url.startswith(("//", "/\\")):
        return default
    return url


###############################################################################
# Login rate limiter (in memory, per client IP)
###############################################################################
MAX_LOGIN_ATTEMPTS = 5
LOGIN_WINDOW_SEC = 15 * 60
SWEEP_CHANCE = 0.1


def client_ip(headers) -> str:
    """
    First X-Forwarded-For entry, else X-Real-IP, else "unknown".  Clients
    arriving without either header all share the "unknown" bucket.
    """
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("X-Real-IP") or "").strip()
    return real_ip or "unknown"


@dataclass
class LoginAttempts:
    count: int
    reset_time: float


@dataclass(frozen=True)
class LoginLimit:
    is_limited: bool
    remaining: int
    reset_time: float

    def seconds_until_reset(self) -> int:
        return max(0, math.ceil(self.reset_time - time()))

    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time, timezone.utc)


class LoginRateLimiter:
    """
    Fixed window per identifier: the first attempt opens a window, the
    next ones count up, and at `max_attempts` further attempts are refused
    until the window closes or `reset()` is called.
    """

    def __init__(
        self, max_attempts: int = MAX_LOGIN_ATTEMPTS, window: int = LOGIN_WINDOW_SEC
    ) -> None:
        self.max_attempts = max_attempts
        self.window = window
        self._entries: dict[str, LoginAttempts] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def check(self, identifier: str) -> LoginLimit:
        if random.random() < SWEEP_CHANCE:
            self.sweep()

        now = time()
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_time:
                reset_time = now + self.window
                self._entries[identifier] = LoginAttempts(1, reset_time)
                return LoginLimit(False, self.max_attempts - 1, reset_time)

            if entry.count >= self.max_attempts:
                return LoginLimit(True, 0, entry.reset_time)

            entry.count += 1
            return LoginLimit(
                False, self.max_attempts - entry.count, entry.reset_time
            )

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def sweep(self) -> int:
        """Drop expired windows; returns how many were removed."""
        now = time()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now > e.reset_time]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    # ── background sweeper ──────────────────────────────────────────
    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,), name="login-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            removed = self.sweep()
            if removed:
                log.debug("Swept %d expired login windows", removed)


###############################################################################
# Contact rate limiter (stored, per sender e-mail)
###############################################################################
MAX_SUBMISSIONS = 3
WINDOW_HOURS = 24


@dataclass(frozen=True)
class ContactLimit:
    allowed: bool
    remaining: int
    reset_at: datetime | None
    message: str | None = None


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class ContactRateLimiter:
    """
    `check()` before sending, `record()` only after the send succeeded, so
    a failed send never uses up quota.
    """

    def __init__(
        self,
        store: ContactLimits,
        max_submissions: int = MAX_SUBMISSIONS,
        window_hours: int = WINDOW_HOURS,
    ) -> None:
        self.store = store
        self.max_submissions = max_submissions
        self.window_hours = window_hours

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)

    def check(self, email: str) -> ContactLimit:
        key = normalize_email(email)
        now = utc_now()
        try:
            record = self.store.get(key)
        except DatabaseError:
            # Fails open: a limiter outage lets messages through.
            log.warning("Contact rate limit check failed for %s; allowing", key, exc_info=True)
            return ContactLimit(True, self.max_submissions - 1, None)

        if record is None:
            return ContactLimit(True, self.max_submissions - 1, now + self.window)

        reset_at = _parse_ts(record["window_reset_at"])
        if now >= reset_at:
            return ContactLimit(True, self.max_submissions - 1, now + self.window)

        count = int(record["submission_count"])
        if count >= self.max_submissions:
            hours = math.ceil((reset_at - now).total_seconds() / 3600)
            return ContactLimit(
                False,
                0,
                reset_at,
                f"Rate limit exceeded. You can send {self.max_submissions} messages "
                f"per {self.window_hours} hours. Please try again in {hours} "
                f"hour{'s' if hours != 1 else ''}.",
            )
        return ContactLimit(True, self.max_submissions - count - 1, reset_at)

    def record(self, email: str) -> None:
        key = normalize_email(email)
        now = utc_now()
        try:
            record = self.store.get(key)
            if record is None or now >= _parse_ts(record["window_reset_at"]):
                self.store.start(key, now, now + self.window)
            else:
                self.store.increment(key, now)
        except DatabaseError:
            log.warning("Could not record contact submission for %s", key, exc_info=True)

    def cleanup_expired(self) -> int:
        try:
            return self.store.delete_expired(utc_now())
        except DatabaseError:
            log.warning("Contact rate limit cleanup failed", exc_info=True)
            return 0

    def get_info(self, email: str) -> dict | None:
        try:
            return self.store.get(normalize_email(email))
        except DatabaseError:
            log.warning("Contact rate limit lookup failed", exc_info=True)
            return None
