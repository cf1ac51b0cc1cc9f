#!/usr/bin/env python3
"""
A single-file link-in-bio site.
"""

import hashlib
import os
import re
import secrets
import sqlite3
import threading
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from urllib.parse import urlparse

import click
import markdown
from flask import (
    Flask,
    abort,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    url_for,
)
from itsdangerous import Signer
from markupsafe import Markup
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("LINKBIO_DB", str(ROOT / "linkbio.sqlite3")))
ENV_FILE = ROOT / ".env"

DEV_MODE = os.environ.get("LINKBIO_ENV", "production") == "development"

SESSION_COOKIE_NAME = "admin_session"
SESSION_DURATION = 60 * 60 * 24 * 7  # seconds
SESSION_USER = "admin"

LOGIN_MAX_ATTEMPTS = int(os.environ.get("LOGIN_MAX_ATTEMPTS", "5"))
LOGIN_WINDOW_MINUTES = int(os.environ.get("LOGIN_WINDOW_MINUTES", "15"))
LOGIN_LOCKOUT_MINUTES = int(os.environ.get("LOGIN_LOCKOUT_MINUTES", "30"))

MAX_LENGTHS = {
    "title": 100,
    "slug": 50,
    "label": 100,
    "url": 2000,
    "description": 500,
    "profile_initial": 1,
    "profile_image_url": 2000,
    "site_title": 100,
    "site_description": 500,
    "group_title": 100,
}
ALLOWED_URL_SCHEMES = ("http", "https", "mailto", "tel")
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
RESERVED_SLUGS = {"admin", "api", "login", "logout", "static"}

AVAILABLE_ICONS = (
    "link",
    "github",
    "twitter",
    "instagram",
    "facebook",
    "linkedin",
    "youtube",
    "twitch",
    "discord",
    "tiktok",
    "globe",
    "mail",
    "phone",
    "map-pin",
    "book-open",
    "file-text",
    "shopping-bag",
    "coffee",
    "heart",
    "star",
    "music",
    "camera",
    "video",
    "code",
    "terminal",
    "palette",
    "pen-tool",
    "briefcase",
    "calendar",
    "message-circle",
)
DEFAULT_ICON = "link"

# Glyphs for the public pages; anything unknown falls back to the link glyph.
ICON_GLYPHS = {
    "link": "🔗",
    "github": "🐙",
    "twitter": "🐦",
    "instagram": "📸",
    "facebook": "📘",
    "linkedin": "💼",
    "youtube": "▶️",
    "twitch": "🎮",
    "discord": "💬",
    "tiktok": "🎵",
    "globe": "🌐",
    "mail": "✉️",
    "phone": "📞",
    "map-pin": "📍",
    "book-open": "📖",
    "file-text": "📄",
    "shopping-bag": "🛍️",
    "coffee": "☕",
    "heart": "❤️",
    "star": "⭐",
    "music": "🎶",
    "camera": "📷",
    "video": "🎬",
    "code": "💻",
    "terminal": "⌨️",
    "palette": "🎨",
    "pen-tool": "✒️",
    "briefcase": "💼",
    "calendar": "📅",
    "message-circle": "💭",
}

DEFAULT_SETTINGS = {
    "site_title": "My Links",
    "site_description": "All my important links in one place",
    "profile_initial": "M",
    "profile_image_url": "",
}

TOP_LINKS_LIMIT = 5

try:
    __version__ = version("linkbio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


ADMIN_PASSWORD_HASH = (
    os.environ.get("ADMIN_PASSWORD_HASH")
    or _read_env_file().get("ADMIN_PASSWORD_HASH")
    or ""
).strip()


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=str(DB_FILE),
    DEV_MODE=DEV_MODE,
    ADMIN_PASSWORD_HASH=ADMIN_PASSWORD_HASH,
    SESSION_COOKIE_SECURE=not DEV_MODE,  # cookie only travels over HTTPS
    LOGIN_MAX_ATTEMPTS=LOGIN_MAX_ATTEMPTS,
    LOGIN_WINDOW_MINUTES=LOGIN_WINDOW_MINUTES,
    LOGIN_LOCKOUT_MINUTES=LOGIN_LOCKOUT_MINUTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

md = markdown.Markdown(extensions=["pymdownx.magiclink", "pymdownx.betterem"])


@app.template_filter("mdinline")
def md_inline_filter(text: str | None) -> Markup:
    """
    Render a short Markdown snippet; a single <p>…</p> block is unwrapped
    so the result can sit inside a heading or a card.
    """
    if not text:
        return Markup("")
    s = md.reset().convert(escape(text, quote=False)).strip()
    if s.startswith("<p>") and s.endswith("</p>"):
        s = s[3:-4].strip()
    return Markup(s)


def link_host(url: str | None) -> str:
    """Return the hostname (sans www) for display under a link label."""
    if not url:
        return ""
    parsed = urlparse(url)
    if parsed.scheme in ("mailto", "tel"):
        return parsed.path
    host = parsed.netloc
    if host.startswith("www."):
        host = host[4:]
    return host.lower()


def icon_glyph(icon_type: str | None) -> str:
    return ICON_GLYPHS.get(icon_type or "", ICON_GLYPHS[DEFAULT_ICON])


###############################################################################
# Database helpers
###############################################################################
def connect_db(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path)
    db.execute("PRAGMA foreign_keys = ON;")
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        g.db = connect_db(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Sections (one public page each)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS sections (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            title             TEXT NOT NULL,
            slug              TEXT UNIQUE NOT NULL,
            show_in_main      INTEGER NOT NULL DEFAULT 1,   -- 0 | 1
            display_order     INTEGER NOT NULL DEFAULT 0,
            description       TEXT,
            profile_initial   TEXT,
            profile_image_url TEXT,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Links
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS links (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            section_id    INTEGER NOT NULL,
            label         TEXT NOT NULL,
            url           TEXT NOT NULL,
            icon_type     TEXT NOT NULL DEFAULT 'link',
            is_visible    INTEGER NOT NULL DEFAULT 1,     -- 0 | 1
            display_order INTEGER NOT NULL DEFAULT 0,
            clicks        INTEGER NOT NULL DEFAULT 0,
            group_title   TEXT,
            group_order   INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL,
            FOREIGN KEY (section_id) REFERENCES sections(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_links_section ON links(section_id, display_order);

        ------------------------------------------------------------
        -- 3.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        ------------------------------------------------------------
        -- 4.  Failed logins (rate limiting)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS login_attempts (
            id        INTEGER PRIMARY KEY AUTOINCREMENT,
            ip        TEXT NOT NULL,
            timestamp INTEGER NOT NULL                  -- epoch millis
        );

        CREATE INDEX IF NOT EXISTS idx_login_attempts_ip ON login_attempts(ip, timestamp);
        """
    )
    db.commit()


def query(sql: str, params=(), *, db) -> list[dict]:
    return [dict(r) for r in db.execute(sql, tuple(params)).fetchall()]


def query_first(sql: str, params=(), *, db) -> dict | None:
    row = db.execute(sql, tuple(params)).fetchone()
    return dict(row) if row else None


def execute(sql: str, params=(), *, db) -> sqlite3.Cursor:
    """Run a write statement; the caller decides when to commit."""
    return db.execute(sql, tuple(params))


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time() * 1000)


def _stamp() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the tables (no-op if they already exist)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("hash-password")
@click.password_option(help="Admin password to hash")
def cli_hash_password(password: str):
    """Print a salted hash for the ADMIN_PASSWORD_HASH variable."""
    click.secho("\n🔑  Password hash generated.\n", fg="yellow")
    click.echo(f"ADMIN_PASSWORD_HASH={hash_password(password)}\n")
    click.echo(f"Put it in the environment or in {ENV_FILE}.")


###############################################################################
# Errors
###############################################################################
class ServiceError(Exception):
    """A failure with a user-facing message and an HTTP status."""

    status = 500

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(ServiceError):
    status = 400


class NotFoundError(ServiceError):
    status = 404


class RateLimited(ServiceError):
    status = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class OrderConflict(Exception):
    """
    Soft failure: the requested display_order is taken.  Re-submitting with
    ``confirmSwap`` resolves it; nothing has been written yet.
    """

    def __init__(self, message: str, conflict_with: dict, current_order: int):
        super().__init__(message)
        self.message = message
        self.conflict_with = conflict_with
        self.current_order = current_order


def api_success(data=None, status: int = 200):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def api_error(error: str, status: int = 400):
    return jsonify({"success": False, "error": error}), status


@app.errorhandler(ServiceError)
def handle_service_error(exc: ServiceError):
    resp, status = api_error(exc.message, exc.status)
    if isinstance(exc, RateLimited):
        resp.headers["Retry-After"] = str(exc.retry_after)
    return resp, status


@app.errorhandler(OrderConflict)
def handle_order_conflict(exc: OrderConflict):
    # always 200; clients branch on `warning`
    return jsonify(
        {
            "success": False,
            "warning": True,
            "message": exc.message,
            "conflictWith": exc.conflict_with,
            "currentOrder": exc.current_order,
        }
    )


def api_endpoint(failure: str):
    """
    Turn unexpected exceptions inside an API view into a logged, generic
    500 answer carrying *failure* as the message.
    """

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except (ServiceError, OrderConflict, HTTPException):
                raise
            except Exception:
                app.logger.exception(failure)
                return api_error(failure, 500)

        return wrapped

    return decorator


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid request body")
    return data


###############################################################################
# Validation
###############################################################################
def sanitize_string(value, max_length: int, default: str = "") -> str:
    """Trim and clip a string field; anything that is not a string gives *default*."""
    if not isinstance(value, str):
        return default
    return value.strip()[:max_length]


def validate_positive_int(value, default: int = 0) -> int:
    """
    Coerce *value* to a non-negative int.  Numbers and numeric strings
    ("42", " 7px") pass; negatives and garbage quietly become *default*.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value >= 0 else default
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else default
    if isinstance(value, str):
        m = _INT_PREFIX_RE.match(value)
        if m:
            parsed = int(m.group(1))
            if parsed >= 0:
                return parsed
    return default


def _parse_url(url, max_length: int):
    if not isinstance(url, str):
        return None, ""
    trimmed = url.strip()
    if not trimmed or len(trimmed) > max_length:
        return None, trimmed
    try:
        return urlparse(trimmed), trimmed
    except ValueError:
        return None, trimmed


def validate_url(url) -> str | None:
    """Return the trimmed URL if it is http(s), mailto or tel, else None."""
    parsed, trimmed = _parse_url(url, MAX_LENGTHS["url"])
    if parsed is None:
        return None
    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_URL_SCHEMES:
        return None
    if scheme in ("http", "https") and not parsed.netloc:
        return None
    if scheme in ("mailto", "tel") and not parsed.path:
        return None
    return trimmed


def validate_image_url(url) -> str | None:
    """Profile pictures must come from an https:// address."""
    parsed, trimmed = _parse_url(url, MAX_LENGTHS["profile_image_url"])
    if parsed is None:
        return None
    if parsed.scheme.lower() != "https" or not parsed.netloc:
        return None
    return trimmed


def validate_slug(slug) -> str | None:
    if not isinstance(slug, str):
        return None
    trimmed = slug.strip().lower()
    if len(trimmed) > MAX_LENGTHS["slug"] or not SLUG_RE.fullmatch(trimmed):
        return None
    return trimmed


def generate_slug(text: str) -> str:
    """'My Title!' → 'my-title'"""
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")


def validate_icon_type(icon_type) -> str:
    return icon_type if icon_type in AVAILABLE_ICONS else DEFAULT_ICON


def _validate_profile_image(value, empty):
    if isinstance(value, str) and value.strip():
        url = validate_image_url(value)
        if url is None:
            raise ValidationError(
                "Invalid profile image URL. Must be a valid HTTPS URL."
            )
        return url
    return empty


def validate_section_data(data: dict) -> dict:
    out = {}

    if "title" in data:
        title = sanitize_string(data["title"], MAX_LENGTHS["title"])
        if not title:
            raise ValidationError("Title is required")
        out["title"] = title

    if "slug" in data:
        slug = validate_slug(data["slug"])
        if slug is None:
            raise ValidationError(
                "Invalid slug. Use only lowercase letters, numbers, and hyphens."
            )
        out["slug"] = slug

    if "show_in_main" in data:
        out["show_in_main"] = bool(data["show_in_main"])

    if "display_order" in data:
        out["display_order"] = validate_positive_int(data["display_order"])

    if "description" in data:
        description = sanitize_string(data["description"], MAX_LENGTHS["description"])
        out["description"] = description or None

    if "profile_initial" in data:
        initial = sanitize_string(
            data["profile_initial"], MAX_LENGTHS["profile_initial"]
        )
        out["profile_initial"] = initial.upper() or None

    if "profile_image_url" in data:
        out["profile_image_url"] = _validate_profile_image(
            data["profile_image_url"], None
        )

    return out


def validate_link_data(data: dict) -> dict:
    out = {}

    if "section_id" in data:
        section_id = validate_positive_int(data["section_id"], -1)
        if section_id < 0:
            raise ValidationError("Invalid section_id")
        out["section_id"] = section_id

    if "label" in data:
        label = sanitize_string(data["label"], MAX_LENGTHS["label"])
        if not label:
            raise ValidationError("Label is required")
        out["label"] = label

    if "url" in data:
        url = validate_url(data["url"])
        if url is None:
            raise ValidationError(
                "Invalid URL. Must be http, https, mailto, or tel protocol."
            )
        out["url"] = url

    if "icon_type" in data:
        out["icon_type"] = validate_icon_type(data["icon_type"])

    if "is_visible" in data:
        out["is_visible"] = bool(data["is_visible"])

    if "display_order" in data:
        out["display_order"] = validate_positive_int(data["display_order"])

    if "group_title" in data:
        group_title = sanitize_string(data["group_title"], MAX_LENGTHS["group_title"])
        out["group_title"] = group_title or None

    if "group_order" in data:
        out["group_order"] = validate_positive_int(data["group_order"])

    return out


def validate_settings_data(data: dict) -> dict:
    out = {}

    if "site_title" in data:
        title = sanitize_string(data["site_title"], MAX_LENGTHS["site_title"])
        if not title:
            raise ValidationError("Site title is required")
        out["site_title"] = title

    if "site_description" in data:
        out["site_description"] = sanitize_string(
            data["site_description"], MAX_LENGTHS["site_description"]
        )

    if "profile_initial" in data:
        out["profile_initial"] = sanitize_string(
            data["profile_initial"], MAX_LENGTHS["profile_initial"]
        ).upper()

    if "profile_image_url" in data:
        out["profile_image_url"] = _validate_profile_image(
            data["profile_image_url"], ""
        )

    return out


###############################################################################
# Ordering + partial updates
###############################################################################
ORDERED_TABLES = {"sections", "links"}


def bool_to_int(value) -> int:
    return 1 if value else 0


# (request field, column, transform)
SECTION_FIELDS = (
    ("title", "title", None),
    ("slug", "slug", None),
    ("show_in_main", "show_in_main", bool_to_int),
    ("display_order", "display_order", None),
    ("description", "description", None),
    ("profile_initial", "profile_initial", None),
    ("profile_image_url", "profile_image_url", None),
)
LINK_FIELDS = (
    ("label", "label", None),
    ("url", "url", None),
    ("icon_type", "icon_type", None),
    ("is_visible", "is_visible", bool_to_int),
    ("display_order", "display_order", None),
    ("group_title", "group_title", None),
    ("group_order", "group_order", None),
)


def resolve_order_swap(
    table: str,
    current: dict,
    new_order: int,
    *,
    confirm: bool,
    name_field: str,
    scope: str | None = None,
    db,
) -> None:
    """
    Make room for *current* at *new_order*.

    • Same order → nothing to do.
    • Slot is free → nothing to do; the caller writes the new order.
    • Slot is taken and not confirmed → raise OrderConflict, no writes.
    • Slot is taken and confirmed → the occupant moves to *current*'s old
      order.  The caller's own update must run in the same transaction.

    *scope* names the column that bounds uniqueness (links: section_id).
    """
    if table not in ORDERED_TABLES:
        raise ValueError(f"not an ordered table: {table}")
    if new_order == current["display_order"]:
        return

    sql = f"SELECT * FROM {table} WHERE display_order=? AND id!=?"
    params = [new_order, current["id"]]
    if scope:
        sql += f" AND {scope}=?"
        params.append(current[scope])
    conflict = query_first(sql + " ORDER BY id LIMIT 1", params, db=db)

    if conflict is None:
        return

    if not confirm:
        raise OrderConflict(
            f'Display order {new_order} is already used by "{conflict[name_field]}". '
            "Confirm to swap orders.",
            conflict_with=conflict,
            current_order=current["display_order"],
        )

    execute(
        f"UPDATE {table} SET display_order=?, updated_at=? WHERE id=?",
        (current["display_order"], _stamp(), conflict["id"]),
        db=db,
    )


def build_update(table: str, row_id: int, data: dict, fields, *, db) -> int:
    """
    Write the fields of *data* that *fields* knows about and bump
    updated_at.  Returns how many data columns were written (0 = nothing).
    """
    sets: list[str] = []
    values: list = []
    for field, column, transform in fields:
        if field not in data:
            continue
        value = data[field]
        sets.append(f"{column}=?")
        values.append(transform(value) if transform else value)

    if not sets:
        return 0

    execute(
        f"UPDATE {table} SET {', '.join(sets)}, updated_at=? WHERE id=?",
        (*values, _stamp(), row_id),
        db=db,
    )
    return len(sets)


###############################################################################
# Sections
###############################################################################
def list_sections(*, main_only: bool = False, db) -> list[dict]:
    sql = "SELECT * FROM sections"
    if main_only:
        sql += " WHERE show_in_main=1"
    return query(sql + " ORDER BY display_order ASC, id ASC", db=db)


def get_section(section_id: int, *, db) -> dict:
    section = query_first("SELECT * FROM sections WHERE id=?", (section_id,), db=db)
    if section is None:
        raise NotFoundError("Section not found")
    return section


def get_section_by_slug(slug: str, *, db) -> dict | None:
    return query_first("SELECT * FROM sections WHERE slug=?", (slug,), db=db)


def _check_slug_free(slug: str, *, exclude_id: int | None = None, db) -> None:
    if slug in RESERVED_SLUGS:
        raise ValidationError("This slug is reserved")
    row = query_first(
        "SELECT id FROM sections WHERE slug=? AND id IS NOT ?",
        (slug, exclude_id),
        db=db,
    )
    if row:
        raise ValidationError("A section with this slug already exists")


def create_section(data: dict, *, db) -> dict:
    _check_slug_free(data["slug"], db=db)
    now = _stamp()
    with db:
        cur = execute(
            """
            INSERT INTO sections (title, slug, show_in_main, display_order,
                                  description, profile_initial, profile_image_url,
                                  created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                data["title"],
                data["slug"],
                bool_to_int(data.get("show_in_main", True)),
                data.get("display_order", 0),
                data.get("description"),
                data.get("profile_initial"),
                data.get("profile_image_url"),
                now,
                now,
            ),
            db=db,
        )
    return get_section(cur.lastrowid, db=db)


def update_section(
    section_id: int, data: dict, *, confirm_swap: bool = False, db
) -> dict:
    existing = get_section(section_id, db=db)

    if "slug" in data and data["slug"] != existing["slug"]:
        _check_slug_free(data["slug"], exclude_id=section_id, db=db)

    # swap + update commit together or not at all
    with db:
        if "display_order" in data:
            resolve_order_swap(
                "sections",
                existing,
                data["display_order"],
                confirm=confirm_swap,
                name_field="title",
                db=db,
            )
        if build_update("sections", section_id, data, SECTION_FIELDS, db=db) == 0:
            raise ValidationError("No fields to update")

    return get_section(section_id, db=db)


def delete_section(section_id: int, *, db) -> None:
    get_section(section_id, db=db)
    with db:
        execute("DELETE FROM sections WHERE id=?", (section_id,), db=db)


###############################################################################
# Links
###############################################################################
def list_links(
    *, section_id: int | None = None, visible_only: bool = False, db
) -> list[dict]:
    conditions, params = [], []
    if section_id is not None:
        conditions.append("section_id=?")
        params.append(section_id)
    if visible_only:
        conditions.append("is_visible=1")

    sql = "SELECT * FROM links"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    return query(sql + " ORDER BY display_order ASC, id ASC", params, db=db)


def get_link(link_id: int, *, db) -> dict:
    link = query_first("SELECT * FROM links WHERE id=?", (link_id,), db=db)
    if link is None:
        raise NotFoundError("Link not found")
    return link


def create_link(data: dict, *, db) -> dict:
    if not query_first(
        "SELECT id FROM sections WHERE id=?", (data["section_id"],), db=db
    ):
        raise ValidationError("Section does not exist")

    now = _stamp()
    with db:
        cur = execute(
            """
            INSERT INTO links (section_id, label, url, icon_type, is_visible,
                               display_order, group_title, group_order,
                               created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                data["section_id"],
                data["label"],
                data["url"],
                data.get("icon_type", DEFAULT_ICON),
                bool_to_int(data.get("is_visible", True)),
                data.get("display_order", 0),
                data.get("group_title"),
                data.get("group_order", 0),
                now,
                now,
            ),
            db=db,
        )
    return get_link(cur.lastrowid, db=db)


def update_link(link_id: int, data: dict, *, confirm_swap: bool = False, db) -> dict:
    existing = get_link(link_id, db=db)

    with db:
        if "display_order" in data:
            resolve_order_swap(
                "links",
                existing,
                data["display_order"],
                confirm=confirm_swap,
                name_field="label",
                scope="section_id",
                db=db,
            )
        if build_update("links", link_id, data, LINK_FIELDS, db=db) == 0:
            raise ValidationError("No fields to update")

    return get_link(link_id, db=db)


def delete_link(link_id: int, *, db) -> None:
    get_link(link_id, db=db)
    with db:
        execute("DELETE FROM links WHERE id=?", (link_id,), db=db)


def visible_links_for_section(section_id: int, *, db) -> list[dict]:
    return query(
        "SELECT * FROM links WHERE section_id=? AND is_visible=1 "
        "ORDER BY group_order ASC, display_order ASC, id ASC",
        (section_id,),
        db=db,
    )


def group_links(links: list[dict]) -> list[tuple[str | None, list[dict]]]:
    """Bucket links by group_title, keeping the order groups first appear in."""
    groups: dict[str | None, list[dict]] = {}
    for link in links:
        groups.setdefault(link["group_title"], []).append(link)
    return list(groups.items())


def top_links(limit: int = TOP_LINKS_LIMIT, *, db) -> list[dict]:
    return query(
        "SELECT * FROM links ORDER BY clicks DESC, id ASC LIMIT ?", (limit,), db=db
    )


# -------------------------------------------------------------------------
# Click tracking
# -------------------------------------------------------------------------
def increment_clicks(link_id: int, *, db) -> None:
    with db:
        execute(
            "UPDATE links SET clicks = clicks + 1, updated_at=? WHERE id=?",
            (_stamp(), link_id),
            db=db,
        )


def _track_click(db_path: str, link_id: int) -> None:
    try:
        with closing(connect_db(db_path)) as db:
            increment_clicks(link_id, db=db)
    except Exception:
        app.logger.exception("Error tracking click for link %s", link_id)


def dispatch_click(link_id: int) -> threading.Thread:
    """Count a click in the background; the caller never waits for it."""
    t = threading.Thread(
        target=_track_click,
        args=(app.config["DATABASE"], link_id),
        daemon=True,
    )
    t.start()
    return t


###############################################################################
# Settings + stats
###############################################################################
def get_settings(*, db) -> dict[str, str]:
    settings = dict(DEFAULT_SETTINGS)
    for row in db.execute("SELECT key, value FROM settings"):
        if row["key"] in settings:
            settings[row["key"]] = row["value"]
    return settings


def update_settings(data: dict, *, db) -> dict[str, str]:
    with db:
        for key, value in data.items():
            if key not in DEFAULT_SETTINGS:
                continue
            execute(
                "INSERT INTO settings (key,value) VALUES (?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, "" if value is None else value),
                db=db,
            )
    return get_settings(db=db)


def dashboard_stats(*, db) -> dict:
    counts = db.execute(
        """
        SELECT (SELECT COUNT(*) FROM sections)               AS sections,
               (SELECT COUNT(*) FROM links)                  AS links,
               (SELECT COALESCE(SUM(clicks), 0) FROM links)  AS clicks
        """
    ).fetchone()
    return {
        "sectionsCount": counts["sections"],
        "linksCount": counts["links"],
        "totalClicks": counts["clicks"],
        "topLinks": top_links(db=db),
    }


###############################################################################
# Authentication
###############################################################################
def _safe_equals(a: str, b: str) -> bool:
    """Constant-time string comparison; different lengths never match."""
    if len(a) != len(b):
        return False
    return secrets.compare_digest(a.encode(), b.encode())


def hash_password(password: str, salt: str | None = None) -> str:
    """Return ``salt:sha256hex(salt + password)``."""
    salt = salt or str(uuid.uuid4())
    digest = hashlib.sha256((salt + password).encode()).hexdigest()
    return f"{salt}:{digest}"


def verify_password(password: str, stored_hash: str) -> bool:
    salt = stored_hash.split(":", 1)[0]
    if not salt:
        return False
    return _safe_equals(hash_password(password, salt), stored_hash)


def _session_signer(password_hash: str) -> Signer:
    # keyed by the password hash: rotating the password revokes every session
    return Signer(
        password_hash,
        sep=":",
        key_derivation="none",
        digest_method=hashlib.sha256,
    )


def create_session_token(password_hash: str, now: int | None = None) -> str:
    """``admin:<expiry millis>:<signature>``"""
    now = now_ms() if now is None else now
    expires = now + SESSION_DURATION * 1000
    return _session_signer(password_hash).sign(f"{SESSION_USER}:{expires}").decode()


def verify_session_token(token: str, password_hash: str) -> bool:
    parts = token.split(":")
    if len(parts) != 3:
        return False
    user, expires, signature = parts
    if not (expires.isascii() and expires.isdigit()) or now_ms() > int(expires):
        return False
    expected = _session_signer(password_hash).get_signature(f"{user}:{expires}")
    return _safe_equals(signature, expected.decode())


def admin_password_hash() -> str | None:
    return app.config.get("ADMIN_PASSWORD_HASH") or None


def is_authenticated() -> bool:
    if app.config.get("DEV_MODE"):
        return True

    password_hash = admin_password_hash()
    if not password_hash:
        return False

    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return False
    return verify_session_token(token, password_hash)


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not is_authenticated():
            return api_error("Unauthorized", 401)
        return view(*args, **kwargs)

    return wrapped


def client_ip() -> str:
    """Return best-effort client IP (Cloudflare header first, then ProxyFix)."""
    return (
        request.headers.get("CF-Connecting-IP")
        or (request.access_route[0] if request.access_route else request.remote_addr)
        or "unknown"
    )


# -------------------------------------------------------------------------
# Rate limiting (persisted, keyed by IP)
# -------------------------------------------------------------------------
@dataclass(frozen=True)
class RateLimit:
    allowed: bool
    remaining_attempts: int
    retry_after_seconds: int | None = None


def check_rate_limit(ip: str, *, db) -> RateLimit:
    max_attempts = int(app.config["LOGIN_MAX_ATTEMPTS"])
    window_ms = int(app.config["LOGIN_WINDOW_MINUTES"]) * 60 * 1000
    lockout_ms = int(app.config["LOGIN_LOCKOUT_MINUTES"]) * 60 * 1000
    now = now_ms()

    with db:
        execute(
            "DELETE FROM login_attempts WHERE timestamp < ?", (now - lockout_ms,), db=db
        )

    row = db.execute(
        "SELECT COUNT(*) AS n, MAX(timestamp) AS last_attempt "
        "FROM login_attempts WHERE ip=? AND timestamp > ?",
        (ip, now - window_ms),
    ).fetchone()
    count, last_attempt = row["n"], row["last_attempt"] or 0

    if count >= max_attempts:
        lockout_end = last_attempt + lockout_ms
        if now < lockout_end:
            return RateLimit(
                allowed=False,
                remaining_attempts=0,
                retry_after_seconds=-(-(lockout_end - now) // 1000),
            )
        clear_attempts(ip, db=db)
        return RateLimit(allowed=True, remaining_attempts=max_attempts)

    return RateLimit(allowed=True, remaining_attempts=max_attempts - count)


def record_failed_attempt(ip: str, *, db) -> None:
    with db:
        execute(
            "INSERT INTO login_attempts (ip, timestamp) VALUES (?,?)",
            (ip, now_ms()),
            db=db,
        )


def clear_attempts(ip: str, *, db) -> None:
    with db:
        execute("DELETE FROM login_attempts WHERE ip=?", (ip,), db=db)


def login(password, ip: str, *, db) -> str:
    """
    Check the rate limit, then the password.  Returns a fresh session
    token or raises a ServiceError (400 / 401 / 429).
    """
    limit = check_rate_limit(ip, db=db)
    if not limit.allowed:
        app.logger.warning("Login locked out for %s", ip)
        minutes = -(-limit.retry_after_seconds // 60)
        raise RateLimited(
            f"Too many attempts. Try again in {minutes} minutes.",
            retry_after=limit.retry_after_seconds,
        )

    if not password or not isinstance(password, str):
        raise ValidationError("Password required")

    password_hash = admin_password_hash()
    if not password_hash:
        app.logger.warning("ADMIN_PASSWORD_HASH is not configured")

    if not password_hash or not verify_password(password, password_hash):
        record_failed_attempt(ip, db=db)
        remaining = limit.remaining_attempts - 1
        raise ServiceError(
            f"Invalid password. {remaining} attempts remaining."
            if remaining > 0
            else "Invalid password. Account temporarily locked.",
            401,
        )

    clear_attempts(ip, db=db)
    return create_session_token(password_hash)


###############################################################################
# API – auth
###############################################################################
@app.route("/api/auth/login", methods=["POST"])
@api_endpoint("Login failed")
def api_login():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    token = login(body.get("password", ""), client_ip(), db=get_db())

    resp, status = api_success()
    resp.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_DURATION,
        httponly=True,
        secure=app.config["SESSION_COOKIE_SECURE"],
        samesite="Lax",
        path="/",
    )
    return resp, status


@app.route("/api/auth/logout", methods=["POST"])
def api_logout():
    resp, status = api_success()
    resp.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return resp, status


###############################################################################
# API – sections
###############################################################################
@app.route("/api/sections", methods=["GET"])
@api_endpoint("Failed to fetch sections")
def api_sections():
    main_only = request.args.get("mainOnly") == "true"
    return api_success(list_sections(main_only=main_only, db=get_db()))


@app.route("/api/sections", methods=["POST"])
@admin_required
@api_endpoint("Failed to create section")
def api_create_section():
    body = json_body()
    if not body.get("slug") and isinstance(body.get("title"), str):
        body.pop("slug", None)
        if slug := generate_slug(body["title"]):
            body["slug"] = slug
    data = validate_section_data(body)
    if not data.get("title") or not data.get("slug"):
        raise ValidationError("Title and slug are required")
    return api_success(create_section(data, db=get_db()), 201)


@app.route("/api/sections/<int:section_id>", methods=["GET"])
@api_endpoint("Failed to fetch section")
def api_section(section_id):
    return api_success(get_section(section_id, db=get_db()))


@app.route("/api/sections/<int:section_id>", methods=["PUT"])
@admin_required
@api_endpoint("Failed to update section")
def api_update_section(section_id):
    body = json_body()
    data = validate_section_data(body)
    section = update_section(
        section_id, data, confirm_swap=bool(body.get("confirmSwap")), db=get_db()
    )
    return api_success(section)


@app.route("/api/sections/<int:section_id>", methods=["DELETE"])
@admin_required
@api_endpoint("Failed to delete section")
def api_delete_section(section_id):
    delete_section(section_id, db=get_db())
    return api_success({"deleted": True})


###############################################################################
# API – links
###############################################################################
@app.route("/api/links", methods=["GET"])
@api_endpoint("Failed to fetch links")
def api_links():
    section_id = None
    if raw := request.args.get("sectionId"):
        parsed = validate_positive_int(raw, -1)
        section_id = parsed if parsed >= 0 else None
    visible_only = request.args.get("visibleOnly") == "true"
    return api_success(
        list_links(section_id=section_id, visible_only=visible_only, db=get_db())
    )


@app.route("/api/links", methods=["POST"])
@admin_required
@api_endpoint("Failed to create link")
def api_create_link():
    data = validate_link_data(json_body())
    if not data.get("section_id") or not data.get("label") or not data.get("url"):
        raise ValidationError("section_id, label, and url are required")
    return api_success(create_link(data, db=get_db()), 201)


@app.route("/api/links/<int:link_id>", methods=["GET"])
@api_endpoint("Failed to fetch link")
def api_link(link_id):
    return api_success(get_link(link_id, db=get_db()))


@app.route("/api/links/<int:link_id>", methods=["PUT"])
@admin_required
@api_endpoint("Failed to update link")
def api_update_link(link_id):
    body = json_body()
    data = validate_link_data(body)
    # a link stays in its section; moving is delete + create
    data.pop("section_id", None)
    link = update_link(
        link_id, data, confirm_swap=bool(body.get("confirmSwap")), db=get_db()
    )
    return api_success(link)


@app.route("/api/links/<int:link_id>", methods=["DELETE"])
@admin_required
@api_endpoint("Failed to delete link")
def api_delete_link(link_id):
    delete_link(link_id, db=get_db())
    return api_success({"deleted": True})


@app.route("/api/links/<int:link_id>/click", methods=["POST"])
def api_track_click(link_id):
    dispatch_click(link_id)
    return api_success()


###############################################################################
# API – settings + stats
###############################################################################
@app.route("/api/settings", methods=["GET"])
@api_endpoint("Failed to fetch settings")
def api_settings():
    return api_success(get_settings(db=get_db()))


@app.route("/api/settings", methods=["PUT"])
@admin_required
@api_endpoint("Failed to update settings")
def api_update_settings():
    data = validate_settings_data(json_body())
    return api_success(update_settings(data, db=get_db()))


@app.route("/api/stats", methods=["GET"])
@admin_required
@api_endpoint("Failed to fetch stats")
def api_stats():
    return api_success(dashboard_stats(db=get_db()))


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'My Links' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ description or '' }}">
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{max-width:32em;margin:auto;padding:3rem 1rem;color:#e4e4e4;background:#1d1d1f;line-height:1.5}
a{color:inherit;text-decoration:none}
header{text-align:center;margin-bottom:2rem}
.avatar{width:5.5rem;height:5.5rem;border-radius:50%;margin:0 auto 1rem;display:flex;align-items:center;justify-content:center;font-size:2.4rem;font-weight:700;background:#3a3a3c;overflow:hidden}
.avatar img{width:100%;height:100%;object-fit:cover}
h1{margin:.25rem 0;font-size:1.6rem}
.muted{color:#9a9a9f;font-size:.9rem}
.card{display:flex;align-items:center;gap:.8rem;padding:.9rem 1rem;margin-bottom:.7rem;border:1px solid #3a3a3c;border-radius:.8rem;background:#28282a;transition:border-color .2s}
.card:hover{border-color:#8e8e93}
.card .glyph{width:2.2rem;text-align:center;font-size:1.3rem}
.card .text{flex:1;min-width:0}
.card .text span{display:block;white-space:nowrap;overflow:hidden;text-overflow:ellipsis}
h2.group{font-size:.75rem;text-transform:uppercase;letter-spacing:.08em;color:#9a9a9f;margin:1.6rem 0 .6rem}
.pill{display:inline-block;padding:.3rem .9rem;border:1px solid #3a3a3c;border-radius:1rem;font-size:.85rem}
table{width:100%;border-collapse:collapse}td,th{padding:.4rem;border-bottom:1px solid #3a3a3c;text-align:left}
.stats{display:flex;gap:.7rem;margin-bottom:1.5rem}.stats div{flex:1;padding:.8rem;border:1px solid #3a3a3c;border-radius:.6rem;text-align:center}
.stats b{display:block;font-size:1.5rem}
input,button{font:inherit;padding:.55rem .8rem;border-radius:.5rem;border:1px solid #3a3a3c;background:#28282a;color:inherit;box-sizing:border-box}
button{cursor:pointer;background:#e4e4e4;color:#1d1d1f}
footer{margin-top:3rem;text-align:center}
</style>
<body>
"""

TEMPL_EPILOG = """
<footer class="muted">linkbio {{ version }}</footer>
</body>
</html>
"""

TEMPL_PROFILE = """
<header>
  <div class="avatar">
  {% if image_url %}<img src="{{ image_url }}" alt="Profile">{% else %}{{ initial }}{% endif %}
  </div>
  <h1>{{ heading }}</h1>
  {% if blurb %}<p class="muted">{{ blurb|mdinline }}</p>{% endif %}
</header>
"""

TEMPL_INDEX = wrap(
    TEMPL_PROFILE
    + """
{% if sections %}
  {% for s in sections %}
  <a class="card" href="{{ url_for('section_page', slug=s.slug) }}">
    <span class="glyph">{{ s.profile_initial or s.title[:1]|upper }}</span>
    <span class="text">
      <span>{{ s.title }}</span>
      {% if s.description %}<span class="muted">{{ s.description }}</span>{% endif %}
    </span>
    <span class="muted">›</span>
  </a>
  {% endfor %}
{% else %}
  <p class="muted" style="text-align:center">No sections available yet.</p>
{% endif %}
"""
)

TEMPL_SECTION = wrap(
    """
<p style="text-align:center"><a class="pill" href="{{ url_for('index') }}">← Back to Home</a></p>
"""
    + TEMPL_PROFILE
    + """
{% if not groups %}
  <p class="muted" style="text-align:center">No links in this section yet.</p>
{% endif %}
{% for group_title, links in groups %}
  {% if group_title %}<h2 class="group">{{ group_title }}</h2>{% endif %}
  {% for l in links %}
  <a class="card" href="{{ l.url }}" target="_blank" rel="noopener noreferrer"
     data-click="{{ url_for('api_track_click', link_id=l.id) }}">
    <span class="glyph">{{ icon_glyph(l.icon_type) }}</span>
    <span class="text">
      <span>{{ l.label }}</span>
      <span class="muted">{{ link_host(l.url) }}</span>
    </span>
    <span class="muted">↗</span>
  </a>
  {% endfor %}
{% endfor %}
<script>
document.querySelectorAll('a[data-click]').forEach(a => {
  a.addEventListener('click', () => {
    // best effort, the navigation never waits for it
    try { navigator.sendBeacon(a.dataset.click); } catch (e) {}
  });
});
</script>
"""
)

TEMPL_LOGIN = wrap("""
<header><h1>Admin</h1></header>
<form id="login-form" style="display:flex;gap:.6rem">
  <input id="password" name="password" type="password" autocomplete="current-password"
         placeholder="password" style="flex:1" autofocus>
  <button type="submit">Sign in</button>
</form>
<p id="login-error" class="muted" style="color:#ff6b6b"></p>
<script>
document.getElementById('login-form').addEventListener('submit', async (ev) => {
  ev.preventDefault();
  const res = await fetch("{{ url_for('api_login') }}", {
    method: "POST",
    headers: {"Content-Type": "application/json"},
    body: JSON.stringify({password: document.getElementById('password').value})
  });
  const body = await res.json();
  if (body.success) location.href = "{{ url_for('admin') }}";
  else document.getElementById('login-error').textContent = body.error;
});
</script>
""")

TEMPL_ADMIN = wrap("""
<header>
  <h1>Dashboard</h1>
  <button id="logout" type="button">Sign out</button>
</header>
<div class="stats">
  <div><b>{{ stats.sectionsCount }}</b><span class="muted">sections</span></div>
  <div><b>{{ stats.linksCount }}</b><span class="muted">links</span></div>
  <div><b>{{ stats.totalClicks }}</b><span class="muted">clicks</span></div>
</div>
<h2 class="group">Top links</h2>
{% if stats.topLinks %}
<table>
  <tr><th>Label</th><th>Host</th><th>Clicks</th></tr>
  {% for l in stats.topLinks %}
  <tr><td>{{ icon_glyph(l.icon_type) }} {{ l.label }}</td><td class="muted">{{ link_host(l.url) }}</td><td>{{ l.clicks }}</td></tr>
  {% endfor %}
</table>
{% else %}
<p class="muted">No links yet.</p>
{% endif %}
<script>
document.getElementById('logout').addEventListener('click', async () => {
  await fetch("{{ url_for('api_logout') }}", {method: "POST"});
  location.href = "{{ url_for('login_page') }}";
});
</script>
""")

TEMPL_404 = wrap("""
<header>
  <h1>Page not found</h1>
  <p class="muted">The page you asked for doesn’t exist.
     <a href="{{ url_for('index') }}"><u>Back to the front page</u></a></p>
</header>
""")

TEMPL_500 = wrap("""
<header>
  <h1>Internal Server Error</h1>
  <p class="muted">Something went wrong on our side. Please try again in a minute.</p>
</header>
""")

app.jinja_env.globals.update(
    icon_glyph=icon_glyph,
    link_host=link_host,
    version=__version__,
)


@app.route("/")
def index():
    db = get_db()
    settings = get_settings(db=db)
    return render_template_string(
        TEMPL_INDEX,
        title=settings["site_title"],
        description=settings["site_description"],
        heading=settings["site_title"],
        blurb=settings["site_description"],
        initial=settings["profile_initial"] or "M",
        image_url=settings["profile_image_url"],
        sections=list_sections(main_only=True, db=db),
    )


@app.route("/login")
def login_page():
    if is_authenticated():
        return redirect(url_for("admin"))
    return render_template_string(TEMPL_LOGIN, title="Sign in")


@app.route("/admin")
def admin():
    if not is_authenticated():
        return redirect(url_for("login_page"))
    return render_template_string(
        TEMPL_ADMIN, title="Dashboard", stats=dashboard_stats(db=get_db())
    )


@app.route("/<slug>")
def section_page(slug):
    db = get_db()
    section = get_section_by_slug(slug, db=db)
    if section is None:
        abort(404)

    links = visible_links_for_section(section["id"], db=db)
    n = len(links)
    description = section["description"] or f"{n} link{'' if n == 1 else 's'} available"
    return render_template_string(
        TEMPL_SECTION,
        title=section["title"],
        description=section["description"] or f"Links for {section['title']}",
        heading=section["title"],
        blurb=description,
        initial=section["profile_initial"] or section["title"][:1].upper(),
        image_url=section["profile_image_url"],
        groups=group_links(links),
    )


@app.after_request
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


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page (JSON under /api)."""
    if _wants_json():
        return api_error("Not found", 404)
    return render_template_string(TEMPL_404, title="Page not found"), 404


@app.errorhandler(405)
def method_not_allowed(exc):
    if _wants_json():
        return api_error("Method not allowed", 405)
    return exc


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 answer.  Flask has already logged the traceback by the time
    this runs; nothing about it reaches the client.
    """
    if _wants_json():
        return api_error("Internal server error", 500)
    return render_template_string(TEMPL_500, title="Internal Server Error"), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=DEV_MODE)
