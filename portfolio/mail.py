"""
Contact form: validation and the outbound mailers.

`mailer_from_config()` picks one of console / resend / sendgrid from
EMAIL_SERVICE.  Every mailer's `send()` returns True/False and never raises.
"""

import logging
from dataclasses import dataclass

import requests

from portfolio.security import EMAIL_RE, escape_html, strip_html_tags

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_FROM = "Portfolio <onboarding@resend.dev>"


@dataclass
class ContactMessage:
    name: str
    email: str
    message: str
    preferred_time: str = ""


def validate_contact_form(data: dict) -> tuple[ContactMessage | None, list[str]]:
    """Strip tags, trim, then check lengths.  Returns ``(message, errors)``."""

    def _field(key: str) -> str:
        val = data.get(key)
        return val.strip() if isinstance(val, str) else ""

    name = strip_html_tags(_field("name"))
    email = _field("email").lower()
    message = strip_html_tags(_field("message"))
    preferred = strip_html_tags(_field("preferredTime"))

    errors = []
    if not name:
        errors.append("Name is required")
    elif len(name) < 2:
        errors.append("Name must be at least 2 characters long")
    elif len(name) > 100:
        errors.append("Name must be less than 100 characters")

    if not email:
        errors.append("Email is required")
    elif not EMAIL_RE.match(email):
        errors.append("Email must be a valid email address")

    if not message:
        errors.append("Message is required")
    elif len(message) < 10:
        errors.append("Message must be at least 10 characters long")
    elif len(message) > 5000:
        errors.append("Message must be less than 5000 characters")

    if len(preferred) > 200:
        errors.append("Preferred time must be less than 200 characters")

    if errors:
        return None, errors
    return ContactMessage(name, email, message, preferred), []


def render_contact_html(msg: ContactMessage) -> str:
    body = escape_html(msg.message).replace("\n", "<br>")
    return (
        "<h2>New Contact Form Submission</h2>"
        f"<p><strong>Name:</strong> {escape_html(msg.name)}</p>"
        f"<p><strong>Email:</strong> {escape_html(msg.email)}</p>"
        "<p><strong>Preferred Time:</strong> "
        f"{escape_html(msg.preferred_time or 'Not specified')}</p>"
        f"<p><strong>Message:</strong></p><p>{body}</p>"
    )


class UnconfiguredMailer:
    def send(self, msg: ContactMessage) -> bool:
        log.error("Email service not configured. Set EMAIL_SERVICE.")
        return False


class ConsoleMailer:
    """Development mailer: writes the message to the log."""

    def send(self, msg: ContactMessage) -> bool:
        log.info(
            "Contact form submission from %s <%s> (preferred time: %s):\n%s",
            msg.name,
            msg.email,
            msg.preferred_time or "Not specified",
            msg.message,
        )
        return True


class _HTTPMailer:
    url = ""

    def __init__(
        self,
        api_key: str,
        to_email: str,
        from_email: str = DEFAULT_FROM,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.to_email = to_email
        self.from_email = from_email
        self.http = session or requests.Session()
        self.timeout = timeout

    def payload(self, msg: ContactMessage) -> dict:
        raise NotImplementedError

    def send(self, msg: ContactMessage) -> bool:
        try:
            resp = self.http.post(
                self.url,
                json=self.payload(msg),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException:
            log.exception("%s request failed", type(self).__name__)
            return False
        if not resp.ok:
            log.error(
                "%s rejected message: %s %s",
                type(self).__name__,
                resp.status_code,
                resp.text[:200],
            )
            return False
        return True


class ResendMailer(_HTTPMailer):
    url = RESEND_URL

    def payload(self, msg: ContactMessage) -> dict:
        return {
            "from": self.from_email,
            "to": self.to_email,
            "reply_to": msg.email,
            "subject": f"Contact Form: {msg.name}",
            "html": render_contact_html(msg),
        }


class SendGridMailer(_HTTPMailer):
    url = SENDGRID_URL

    def payload(self, msg: ContactMessage) -> dict:
        return {
            "personalizations": [{"to": [{"email": self.to_email}]}],
            "from": {"email": self.from_email},
            "reply_to": {"email": msg.email, "name": msg.name},
            "subject": f"Contact Form: {msg.name}",
            "content": [{"type": "text/html", "value": render_contact_html(msg)}],
        }


def mailer_from_config(config):
    service = (config.get("EMAIL_SERVICE") or "").strip().lower()
    if not service:
        return UnconfiguredMailer()
    if service == "console":
        return ConsoleMailer()

    to_email = config.get("CONTACT_EMAIL")
    from_email = config.get("FROM_EMAIL") or DEFAULT_FROM
    if service == "resend":
        key = config.get("RESEND_API_KEY")
        cls = ResendMailer
    elif service == "sendgrid":
        key = config.get("SENDGRID_API_KEY")
        cls = SendGridMailer
    else:
        log.error("Unknown email service: %s", service)
        return UnconfiguredMailer()

    if not key or not to_email:
        log.error("%s configuration missing API key or CONTACT_EMAIL.", service)
        return UnconfiguredMailer()
    return cls(key, to_email, from_email)
