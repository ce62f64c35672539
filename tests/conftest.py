"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

from portfolio.site import create_app

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "correct-horse-battery"

POST_MD = """\
title: My first post
date: 2024-05-01
author: Jane Doe
summary: A short post
tags: python, web

Hello **world**, this is the body of the post.
"""

OLDER_MD = """\
title: Older post
date: 2023-01-15

Some older text.
"""


class FakeMailer:
    """Records every message; `ok` decides what send() returns."""

    def __init__(self) -> None:
        self.sent = []
        self.ok = True

    def send(self, msg) -> bool:
        self.sent.append(msg)
        return self.ok


@pytest.fixture
def blog_dir(tmp_path: Path) -> Path:
    d = tmp_path / "blog"
    d.mkdir()
    (d / "my-post.md").write_text(POST_MD, encoding="utf-8")
    (d / "older-post.md").write_text(OLDER_MD, encoding="utf-8")
    return d


@pytest.fixture
def app(tmp_path: Path, blog_dir: Path) -> Generator[Flask, None, None]:
    """A fresh app on its own SQLite file for every test."""
    app = create_app(
        {
            "TESTING": True,
            "DATABASE": str(tmp_path / "test.sqlite3"),
            "TURSO_DATABASE_URL": None,
            "TURSO_AUTH_TOKEN": None,
            "SECRET_KEY": "test-secret",
            "SESSION_COOKIE_SECURE": False,
            "SITE_URL": None,
            "BLOG_DIR": str(blog_dir),
            "LOGIN_SWEEP_INTERVAL": 0,
        }
    )
    app.extensions["portfolio"].mailer = FakeMailer()
    yield app


@pytest.fixture
def services(app: Flask):
    return app.extensions["portfolio"]


@pytest.fixture
def mailer(services) -> FakeMailer:
    return services.mailer


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        yield client


@pytest.fixture
def admin(services) -> dict:
    """Provision the admin account used by `login`."""
    return services.admins.create_user(
        ADMIN_EMAIL, generate_password_hash(ADMIN_PASSWORD)
    )


@pytest.fixture
def login(client: FlaskClient, admin):
    """Call ``login()`` to sign the shared client in as the admin."""

    def _login(email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD):
        return client.post(
            "/api/auth/login", json={"email": email, "password": password}
        )

    return _login
