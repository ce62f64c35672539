"""
Blog posts stored as markdown files (``<slug>.md``) with a front-matter
header, e.g.::

    ---
    title: Hello
    date: 2024-05-01
    tags: python, web
    ---
    Body text…
"""

import logging
import re
from pathlib import Path

import markdown

from portfolio.security import sanitize_html, strip_html_tags

log = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
_SLUG_RE = re.compile(r"^[A-Za-z0-9_-]+$")

MD_EXTENSIONS = ["meta", "pymdownx.extra", "pymdownx.superfences"]


def read_time(text: str) -> int:
    """Minutes at 200 wpm, never less than one."""
    return max(1, -(-len(text.split()) // WORDS_PER_MINUTE))


def _meta_value(meta: dict, key: str, default: str = "") -> str:
    vals = meta.get(key) or []
    return " ".join(v.strip() for v in vals).strip().strip("\"'") or default


def _meta_tags(meta: dict) -> list[str]:
    tags = []
    for val in meta.get("tags") or []:
        val = val.strip().strip("[]")
        for t in val.split(","):
            t = t.strip().lstrip("-").strip().strip("\"'")
            if t:
                tags.append(t)
    return tags


class BlogPosts:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, slug: str) -> Path | None:
        if not slug or not _SLUG_RE.match(slug):
            return None
        return self.directory / f"{slug}.md"

    def exists(self, slug: str) -> bool:
        path = self._path(slug)
        return bool(path and path.is_file())

    def get(self, slug: str) -> dict | None:
        path = self._path(slug)
        if path is None or not path.is_file():
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            log.exception("Could not read blog post %s", slug)
            return None

        md = markdown.Markdown(extensions=MD_EXTENSIONS)
        html = sanitize_html(md.convert(text))
        meta = getattr(md, "Meta", {})
        return {
            "slug": slug,
            "title": _meta_value(meta, "title", "Untitled"),
            "date": _meta_value(meta, "date"),
            "author": _meta_value(meta, "author", "Anonymous"),
            "summary": _meta_value(meta, "summary"),
            "tags": _meta_tags(meta),
            "content": html,
            "readTime": read_time(strip_html_tags(html)),
        }

    def all(self) -> list[dict]:
        """Every post, newest first."""
        if not self.directory.is_dir():
            log.warning("Blog directory not found: %s", self.directory)
            return []
        posts = [self.get(p.stem) for p in sorted(self.directory.glob("*.md"))]
        return sorted(
            (p for p in posts if p), key=lambda p: p["date"], reverse=True
        )
