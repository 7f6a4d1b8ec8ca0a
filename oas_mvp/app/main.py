from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal
from urllib.parse import quote

import httpx
from docx import Document
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .cache import categories_cache, swarms_cache, view_counts
from .gate import Allowed, Pending, RequiredRole, Session, SessionLookup, check_access, is_admin
from .ingest import MalformedInput, ParsedWorkflow, parse_workflow
from .layout import InvalidWorkflowGraph, process_imported_workflow
from .panel import PanelState, PanelStore

SortBy = Literal["recent", "popular", "rating", "downloads"]

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get("OAS_DATA_DIR", os.path.join(BASE_DIR, "data"))
DB_PATH = os.environ.get("OAS_DB_PATH", os.path.join(DATA_DIR, "oas.db"))

SESSION_COOKIE = "oas_session"
UI_COOKIE = "oas_ui"
SESSION_DAYS = int(os.environ.get("OAS_SESSION_DAYS", "14"))
COOKIE_SECURE = os.environ.get("OAS_COOKIE_SECURE", "0") == "1"

# Any OpenAI-compatible chat endpoint (LM Studio, vLLM, a hosted gateway).
COPILOT_BASE_URL = os.environ.get("OAS_COPILOT_BASE_URL", "http://127.0.0.1:1234").rstrip("/")
COPILOT_MODEL = os.environ.get("OAS_COPILOT_MODEL", "mistralai/mistral-7b-instruct-v0.3")
COPILOT_API_KEY = os.environ.get("OAS_COPILOT_API_KEY", "")

LOG_LEVEL = os.environ.get("OAS_LOG_LEVEL", "INFO").upper()

EXPORT_FORMAT_VERSION = "1.0"
PASSWORD_ITERATIONS = 200_000

logger = logging.getLogger("oas_mvp")
logger.setLevel(LOG_LEVEL)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
templates = Jinja2Templates(directory=TEMPLATES_DIR)

app = FastAPI(title="OpenAuditSwarms MVP")

panel_store = PanelStore()
app.state.panel_store = panel_store


def _wants_html(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    return "text/html" in accept and not str(request.url.path).startswith("/api/")


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Browsers get a login redirect or an error page; API callers get JSON."""
    headers = getattr(exc, "headers", None)
    if _wants_html(request):
        if exc.status_code == 401:
            target = request.url.path
            if request.url.query:
                target = f"{target}?{request.url.query}"
            nxt = quote(target, safe="/")
            return RedirectResponse(url=f"/login?next={nxt}", status_code=303)
        return templates.TemplateResponse(
            request,
            "error.html",
            {"status_code": exc.status_code, "detail": str(exc.detail)},
            status_code=exc.status_code,
            headers=headers,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation error", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(MalformedInput)
async def _malformed_input_handler(request: Request, exc: MalformedInput):
    return JSONResponse(status_code=400, content={"detail": str(exc), "kind": exc.kind})


@app.exception_handler(InvalidWorkflowGraph)
async def _invalid_graph_handler(request: Request, exc: InvalidWorkflowGraph):
    return JSONResponse(status_code=400, content={"detail": f"Invalid workflow graph: {exc}"})


@app.exception_handler(sqlite3.IntegrityError)
async def _integrity_error_handler(request: Request, exc: sqlite3.IntegrityError):
    logger.info("integrity error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "Resource already exists"})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Unhandled error: {type(exc).__name__}: {exc}"},
    )


static_dir = os.path.join(os.path.dirname(__file__), "static")
app.mount("/static", StaticFiles(directory=static_dir), name="static")


# --- Category colors (UI lookup) ---

CATEGORY_COLORS: dict[str, str] = {
    "PrePlanning": "bg-purple-100 text-purple-700 border-purple-200",
    "Planning": "bg-blue-100 text-blue-700 border-blue-200",
    "Fieldwork": "bg-amber-100 text-amber-700 border-amber-200",
    "Reporting": "bg-emerald-100 text-emerald-700 border-emerald-200",
    "Other": "bg-stone-100 text-stone-600 border-stone-200",
}

UNSELECTED_CATEGORY_STYLE = "bg-stone-50 text-stone-600 border-stone-200 hover:border-stone-300 hover:text-stone-700"

DEFAULT_CATEGORIES = [
    ("PrePlanning", "preplanning", "Workflow templates for pre-planning phase of audit engagement"),
    ("Planning", "planning", "Workflow templates for planning phase of audit engagement"),
    ("Fieldwork", "fieldwork", "Workflow templates for fieldwork phase of audit engagement"),
    ("Reporting", "reporting", "Workflow templates for reporting phase of audit engagement"),
    ("Other", "other", "Other audit-related workflow templates"),
]


def category_color(name: str, selected: bool = False) -> str:
    if not selected:
        return UNSELECTED_CATEGORY_STYLE
    return CATEGORY_COLORS.get(name or "", CATEGORY_COLORS["Other"])


templates.env.globals["category_color"] = category_color
templates.env.globals["is_admin"] = is_admin


# --- DB ---


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def db() -> sqlite3.Connection:
    """Open a connection to DB_PATH.

    Sync routes run in a threadpool, so every call gets its own connection.
    `with db() as conn:` commits on success and rolls back on error.
    """
    os.makedirs(os.path.dirname(DB_PATH) or ".", exist_ok=True)
    conn = sqlite3.connect(DB_PATH, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 10000")
    return conn


PROFILE_COLUMNS = (
    ("bio", "TEXT"),
    ("website", "TEXT"),
    ("company", "TEXT"),
    ("role", "TEXT"),
    ("linkedin_url", "TEXT"),
    ("linkedin_visible", "INTEGER NOT NULL DEFAULT 0"),
)


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == column for r in rows)


def init_db() -> None:
    with db() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              username TEXT NOT NULL UNIQUE,
              email TEXT NOT NULL UNIQUE,
              name TEXT NOT NULL DEFAULT '',
              password_salt_hex TEXT NOT NULL,
              password_hash_hex TEXT NOT NULL,
              is_admin INTEGER NOT NULL DEFAULT 0,
              bio TEXT,
              website TEXT,
              company TEXT,
              role TEXT,
              linkedin_url TEXT,
              linkedin_visible INTEGER NOT NULL DEFAULT 0,
              is_deleted INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
              token TEXT PRIMARY KEY,
              user_id INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              revoked_at TEXT,
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS categories (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              slug TEXT NOT NULL UNIQUE,
              description TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS swarms (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              slug TEXT NOT NULL UNIQUE,
              description TEXT NOT NULL,

              workflow_nodes TEXT NOT NULL DEFAULT '[]',
              workflow_edges TEXT NOT NULL DEFAULT '[]',
              workflow_metadata TEXT NOT NULL DEFAULT '{}',
              workflow_version TEXT,
              image_url TEXT,

              user_id INTEGER NOT NULL,
              category_id TEXT,

              is_public INTEGER NOT NULL DEFAULT 0,
              is_featured INTEGER NOT NULL DEFAULT 0,
              is_deleted INTEGER NOT NULL DEFAULT 0,

              views_count INTEGER NOT NULL DEFAULT 0,
              favorites_count INTEGER NOT NULL DEFAULT 0,
              downloads_count INTEGER NOT NULL DEFAULT 0,
              rating_avg REAL NOT NULL DEFAULT 0,
              rating_count INTEGER NOT NULL DEFAULT 0,

              published_at TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,

              FOREIGN KEY (user_id) REFERENCES users(id),
              FOREIGN KEY (category_id) REFERENCES categories(id)
            );

            CREATE INDEX IF NOT EXISTS idx_swarms_listing ON swarms(is_deleted, is_public, published_at);

            CREATE TABLE IF NOT EXISTS favorites (
              user_id INTEGER NOT NULL,
              swarm_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY (user_id, swarm_id),
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
              FOREIGN KEY (swarm_id) REFERENCES swarms(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS ratings (
              user_id INTEGER NOT NULL,
              swarm_id TEXT NOT NULL,
              rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
              review TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY (user_id, swarm_id),
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
              FOREIGN KEY (swarm_id) REFERENCES swarms(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS copilot_sessions (
              id TEXT PRIMARY KEY,
              user_id INTEGER NOT NULL,
              title TEXT NOT NULL,
              model TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS copilot_messages (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id TEXT NOT NULL,
              role TEXT NOT NULL,
              content TEXT NOT NULL,
              created_at TEXT NOT NULL,
              FOREIGN KEY (session_id) REFERENCES copilot_sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              entity_type TEXT NOT NULL,
              entity_id TEXT NOT NULL,
              action TEXT NOT NULL,
              actor TEXT NOT NULL,
              at TEXT NOT NULL,
              note TEXT
            );
            """
        )

        # lightweight migrations for databases created before profile fields
        for col, ddl in PROFILE_COLUMNS:
            if not _column_exists(conn, "users", col):
                conn.execute(f"ALTER TABLE users ADD COLUMN {col} {ddl}")

        _seed_categories(conn)


def _seed_categories(conn: sqlite3.Connection) -> None:
    for name, slug, description in DEFAULT_CATEGORIES:
        conn.execute(
            "INSERT OR IGNORE INTO categories(id, name, slug, description) VALUES (?,?,?,?)",
            (slug, name, slug, description),
        )


@app.on_event("startup")
def _startup() -> None:
    logger.info("opening database at %s", DB_PATH)
    init_db()


@app.on_event("shutdown")
def _shutdown() -> None:
    with db() as conn:
        n = view_counts.flush(conn)
    if n:
        logger.info("flushed view counts for %d swarms", n)


def _json_load(s: str | None) -> Any:
    return json.loads(s) if s else None


def _json_dump(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def _short_code(prefix: str, record_id: str) -> str:
    """Deterministic short display id (for human-visible trace tags)."""
    h = hashlib.sha256((record_id or "").encode("utf-8", errors="ignore")).hexdigest().upper()
    return f"{prefix}-{h[:6]}"


def audit(
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str,
    note: str | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Write an audit_log row.

    Pass `conn=` when already inside a write transaction, otherwise SQLite may
    report the database as locked.
    """
    if conn is None:
        with db() as conn2:
            conn2.execute(
                "INSERT INTO audit_log(entity_type, entity_id, action, actor, at, note) VALUES (?,?,?,?,?,?)",
                (entity_type, entity_id, action, actor, utc_now_iso(), note),
            )
        return

    conn.execute(
        "INSERT INTO audit_log(entity_type, entity_id, action, actor, at, note) VALUES (?,?,?,?,?,?)",
        (entity_type, entity_id, action, actor, utc_now_iso(), note),
    )


# --- Auth ---


def _hash_password(password: str, salt_hex: str) -> str:
    pw = (password or "").encode("utf-8")
    salt = bytes.fromhex(salt_hex)
    dk = hashlib.pbkdf2_hmac("sha256", pw, salt, PASSWORD_ITERATIONS)
    return dk.hex()


def _verify_password(password: str, salt_hex: str, hash_hex: str) -> bool:
    import hmac

    return hmac.compare_digest(_hash_password(password, salt_hex), hash_hex)


def _new_session_token() -> str:
    import secrets

    return secrets.token_urlsafe(32)


def create_user(
    conn: sqlite3.Connection,
    username: str,
    email: str,
    password: str,
    *,
    name: str = "",
    is_admin: bool = False,
    actor: str = "system",
) -> int:
    import secrets

    salt = secrets.token_bytes(16).hex()
    cur = conn.execute(
        """
        INSERT INTO users(username, email, name, password_salt_hex, password_hash_hex, is_admin, created_at, created_by)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            username.strip(),
            email.strip().lower(),
            name,
            salt,
            _hash_password(password, salt),
            1 if is_admin else 0,
            utc_now_iso(),
            actor,
        ),
    )
    return int(cur.lastrowid)


def issue_session(conn: sqlite3.Connection, user_id: int) -> str:
    token = _new_session_token()
    conn.execute(
        "INSERT INTO sessions(token, user_id, created_at) VALUES (?,?,?)",
        (token, user_id, utc_now_iso()),
    )
    return token


def _session_cutoff_iso() -> str:
    cutoff = datetime.now(timezone.utc) - timedelta(days=SESSION_DAYS)
    return cutoff.replace(microsecond=0).isoformat()


def resolve_session(token: str) -> SessionLookup:
    """Look up a session token. Revoked, expired and deleted-user sessions resolve to None."""
    token = (token or "").strip()
    if not token:
        return None
    with db() as conn:
        row = conn.execute(
            """
            SELECT u.id, u.username, u.is_admin
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token=? AND s.revoked_at IS NULL AND s.created_at >= ? AND u.is_deleted=0
            """,
            (token, _session_cutoff_iso()),
        ).fetchone()
    if not row:
        return None
    return Session(
        subject_id=str(row["id"]),
        is_admin=bool(row["is_admin"]),
        username=str(row["username"]),
        token=token,
    )


# Swappable so a slower identity provider can answer PENDING.
SESSION_RESOLVER: Callable[[str], SessionLookup] = resolve_session


def _is_public_path(path: str) -> bool:
    return path.startswith("/static/") or path == "/_health"


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.session = None

        ui_key = (request.cookies.get(UI_COOKIE) or "").strip()
        new_ui_key = ""
        if not ui_key:
            new_ui_key = ui_key = uuid.uuid4().hex
        request.state.ui_key = ui_key

        if not _is_public_path(str(request.url.path)):
            token = (request.cookies.get(SESSION_COOKIE) or "").strip()
            if token:
                request.state.session = SESSION_RESOLVER(token)

        response = await call_next(request)
        if new_ui_key:
            response.set_cookie(UI_COOKIE, new_ui_key, httponly=True, samesite="lax", secure=COOKIE_SECURE)
        return response


app.add_middleware(AuthMiddleware)


def gate(request: Request, role: RequiredRole = "none") -> int:
    """Run the session gate and turn anything but Allowed into an HTTP error."""
    decision = check_access(getattr(request.state, "session", None), role)
    if isinstance(decision, Allowed):
        return int(decision.subject_id)
    if isinstance(decision, Pending):
        raise HTTPException(
            status_code=503,
            detail="Session is still being resolved",
            headers={"Retry-After": "1"},
        )
    if decision.reason == "unauthenticated":
        raise HTTPException(status_code=401, detail="Unauthorized")
    raise HTTPException(status_code=403, detail="Forbidden: admin only")


def require_user(request: Request) -> int:
    return gate(request, "none")


def require_admin(request: Request) -> int:
    return gate(request, "admin")


def optional_user(request: Request) -> int | None:
    decision = check_access(getattr(request.state, "session", None), "none")
    return int(decision.subject_id) if isinstance(decision, Allowed) else None


def _actor(request: Request) -> str:
    s = getattr(request.state, "session", None)
    return s.username if isinstance(s, Session) and s.username else "anonymous"


def _panel_key(request: Request) -> str:
    s = getattr(request.state, "session", None)
    if isinstance(s, Session) and s.token:
        return f"session:{s.token}"
    return f"ui:{request.state.ui_key}"


def get_panel(request: Request) -> PanelState:
    return request.app.state.panel_store.get(_panel_key(request))


def peek_panel(request: Request) -> PanelState:
    return request.app.state.panel_store.peek(_panel_key(request))


def _safe_local_path(path: str | None) -> str | None:
    p = (path or "").strip()
    if not p.startswith("/") or p.startswith("//") or "\\" in p:
        return None
    return p


# --- Swarm queries ---

SWARM_SELECT = """
    SELECT s.*,
           c.name AS category_name, c.slug AS category_slug,
           u.username AS user_username, u.name AS user_name,
           EXISTS(SELECT 1 FROM favorites f WHERE f.swarm_id = s.id AND f.user_id = ?) AS is_favorited
    FROM swarms s
    JOIN users u ON u.id = s.user_id
    LEFT JOIN categories c ON c.id = s.category_id
"""

ORDER_BY: dict[str, str] = {
    "recent": "s.published_at DESC, s.created_at DESC",
    "popular": "s.favorites_count DESC, s.created_at DESC",
    "rating": "s.rating_avg DESC, s.rating_count DESC, s.created_at DESC",
    "downloads": "s.downloads_count DESC, s.created_at DESC",
}


def generate_slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")


def _unique_slug(conn: sqlite3.Connection, base: str) -> str:
    slug = base
    counter = 1
    while conn.execute("SELECT 1 FROM swarms WHERE slug=?", (slug,)).fetchone():
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _swarm_dict(row: sqlite3.Row | dict[str, Any]) -> dict[str, Any]:
    r = dict(row)
    category = None
    if r.get("category_id") and r.get("category_name"):
        category = {"id": r["category_id"], "name": r["category_name"], "slug": r.get("category_slug")}
    return {
        "id": r["id"],
        "name": r["name"],
        "slug": r["slug"],
        "description": r["description"],
        "workflowNodes": r["workflow_nodes"],
        "workflowEdges": r["workflow_edges"],
        "workflowMetadata": r["workflow_metadata"],
        "workflowVersion": r.get("workflow_version"),
        "image_url": r.get("image_url"),
        "userId": str(r["user_id"]),
        "user": {"id": str(r["user_id"]), "username": r.get("user_username"), "name": r.get("user_name")},
        "categoryId": r.get("category_id"),
        "category": category,
        "is_public": bool(r["is_public"]),
        "is_featured": bool(r["is_featured"]),
        "views_count": int(r["views_count"]),
        "favorites_count": int(r["favorites_count"]),
        "downloads_count": int(r["downloads_count"]),
        "rating_avg": float(r["rating_avg"] or 0),
        "rating_count": int(r["rating_count"]),
        "publishedAt": r.get("published_at"),
        "createdAt": r["created_at"],
        "updatedAt": r["updated_at"],
        "isFavorited": bool(r.get("is_favorited")),
    }


def get_swarms(
    conn: sqlite3.Connection,
    *,
    search: str | None = None,
    category_id: str | None = None,
    category_ids: list[str] | None = None,
    user: str | None = None,
    is_featured: bool | None = None,
    is_public: bool | None = True,
    limit: int = 20,
    offset: int = 0,
    sort_by: str = "recent",
    current_user_id: int | None = None,
) -> dict[str, Any]:
    """Filtered, sorted, paginated listing. Deleted swarms and swarms of deleted users never show."""
    where = ["s.is_deleted=0", "u.is_deleted=0"]
    params: list[Any] = []

    if is_public is not None:
        where.append("s.is_public=?")
        params.append(1 if is_public else 0)
    if is_featured is not None:
        where.append("s.is_featured=?")
        params.append(1 if is_featured else 0)
    if user:
        where.append("(CAST(u.id AS TEXT)=? OR u.username=?)")
        params.extend([user, user])
    if category_ids:
        where.append(f"s.category_id IN ({','.join('?' for _ in category_ids)})")
        params.extend(category_ids)
    elif category_id:
        where.append("s.category_id=?")
        params.append(category_id)
    if search:
        like = _like(search)
        where.append(
            "(s.name LIKE ? ESCAPE '\\' OR s.description LIKE ? ESCAPE '\\' OR s.workflow_nodes LIKE ? ESCAPE '\\')"
        )
        params.extend([like, like, like])

    limit = max(1, min(int(limit), 100))
    offset = max(0, int(offset))
    order = ORDER_BY.get(sort_by, ORDER_BY["recent"])
    where_sql = " AND ".join(where)

    rows = conn.execute(
        f"{SWARM_SELECT} WHERE {where_sql} ORDER BY {order}, s.id LIMIT ? OFFSET ?",
        (current_user_id or -1, *params, limit, offset),
    ).fetchall()
    total = conn.execute(
        f"SELECT COUNT(*) AS n FROM swarms s JOIN users u ON u.id = s.user_id WHERE {where_sql}",
        params,
    ).fetchone()["n"]

    return {
        "swarms": [_swarm_dict(r) for r in rows],
        "total": int(total),
        "hasMore": offset + len(rows) < int(total),
    }


def _load_swarm(conn: sqlite3.Connection, key: str, current_user_id: int | None = None) -> sqlite3.Row | None:
    return conn.execute(
        f"{SWARM_SELECT} WHERE (s.id=? OR s.slug=?) AND s.is_deleted=0 AND u.is_deleted=0",
        (current_user_id or -1, key, key),
    ).fetchone()


def _can_view(row: sqlite3.Row, request: Request) -> bool:
    if row["is_public"]:
        return True
    uid = optional_user(request)
    return (uid is not None and uid == int(row["user_id"])) or is_admin(request.state.session)


def _can_edit(row: sqlite3.Row, request: Request, uid: int) -> bool:
    return uid == int(row["user_id"]) or is_admin(request.state.session)


def _visible_swarm(conn: sqlite3.Connection, request: Request, key: str) -> sqlite3.Row:
    row = _load_swarm(conn, key, optional_user(request))
    if not row or not _can_view(row, request):
        raise HTTPException(status_code=404, detail="Swarm not found")
    return row


def _invalidate_listing_caches() -> None:
    categories_cache.invalidate_pattern(r"^categories:")
    swarms_cache.invalidate_pattern(r"^swarms:")


def _json_list_text(raw: str | None, field: str) -> str:
    if raw is None or not raw.strip():
        return "[]"
    try:
        v = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be JSON")
    if not isinstance(v, list):
        raise HTTPException(status_code=400, detail=f"{field} must be a JSON list")
    return raw


def _json_object_text(raw: str | None, field: str) -> str:
    if raw is None or not raw.strip():
        return "{}"
    try:
        v = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be JSON")
    if not isinstance(v, dict):
        raise HTTPException(status_code=400, detail=f"{field} must be a JSON object")
    return raw


def _require_category(conn: sqlite3.Connection, category_id: str | None) -> str | None:
    if not category_id:
        return None
    row = conn.execute("SELECT id FROM categories WHERE id=? OR slug=?", (category_id, category_id)).fetchone()
    if not row:
        raise HTTPException(status_code=400, detail=f"Unknown category: {category_id}")
    return str(row["id"])


def _split_category_prefix(conn: sqlite3.Connection, name: str) -> tuple[str | None, str]:
    """Exports prefix the name with "<Category>: "; map it back on import."""
    if ": " not in (name or ""):
        return None, name
    prefix, rest = name.split(": ", 1)
    row = conn.execute("SELECT id FROM categories WHERE name=?", (prefix.strip(),)).fetchone()
    if not row or not rest.strip():
        return None, name
    return str(row["id"]), rest.strip()


def insert_swarm(
    conn: sqlite3.Connection,
    *,
    user_id: int,
    name: str,
    slug: str,
    description: str,
    nodes_json: str = "[]",
    edges_json: str = "[]",
    metadata_json: str = "{}",
    category_id: str | None = None,
    is_public: bool = False,
    image_url: str | None = None,
    workflow_version: str | None = None,
) -> str:
    now = utc_now_iso()
    swarm_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO swarms(
          id, name, slug, description,
          workflow_nodes, workflow_edges, workflow_metadata, workflow_version, image_url,
          user_id, category_id, is_public,
          published_at, created_at, updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            swarm_id,
            name,
            _unique_slug(conn, slug),
            description,
            nodes_json,
            edges_json,
            metadata_json,
            workflow_version,
            image_url,
            user_id,
            category_id,
            1 if is_public else 0,
            now if is_public else None,
            now,
            now,
        ),
    )
    return swarm_id


def export_envelope(row: sqlite3.Row | dict[str, Any]) -> dict[str, Any]:
    r = dict(row)
    prefix = f"{r['category_name']}: " if r.get("category_name") else ""
    return {
        "version": EXPORT_FORMAT_VERSION,
        "data": {
            "workflows": [
                {
                    "name": f"{prefix}{r['name']}",
                    "description": r["description"],
                    "diagramJson": {
                        "nodes": _json_load(r["workflow_nodes"]) or [],
                        "edges": _json_load(r["workflow_edges"]) or [],
                        "metadata": _json_load(r["workflow_metadata"]) or {},
                    },
                }
            ]
        },
    }


# --- Request bodies ---


class CreateSwarmRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    workflowNodes: str | None = None
    workflowEdges: str | None = None
    workflowMetadata: str | None = None
    image_url: str | None = Field(default=None, pattern=r"^https?://")
    categoryId: str = Field(min_length=1)
    is_public: bool = False


class UpdateSwarmRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    workflowNodes: str | None = None
    workflowEdges: str | None = None
    workflowMetadata: str | None = None
    image_url: str | None = Field(default=None, pattern=r"^https?://")
    categoryId: str | None = None
    is_public: bool | None = None
    is_featured: bool | None = None


class FavoriteRequest(BaseModel):
    swarmId: str = Field(min_length=1)


class RatingRequest(BaseModel):
    swarmId: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=5000)


class FeaturedRequest(BaseModel):
    swarmId: str = Field(min_length=1)
    featured: bool = True


class UpdateProfileRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    bio: str | None = Field(default=None, max_length=500)
    website: str | None = Field(default=None, pattern=r"^(https?://\S+)?$")
    company: str | None = Field(default=None, max_length=100)
    role: str | None = Field(default=None, max_length=100)
    linkedin_url: str | None = Field(default=None, pattern=r"^(https?://\S+)?$")
    linkedin_visible: bool | None = None


class ReferrerRequest(BaseModel):
    path: str = Field(min_length=1, max_length=500)


class ImportPosition(BaseModel):
    x: float
    y: float


class ImportNode(BaseModel):
    id: str
    type: str | None = None
    position: ImportPosition
    data: dict[str, Any]


class ImportEdge(BaseModel):
    id: str
    source: str
    target: str
    type: str | None = None
    animated: bool | None = None
    style: dict[str, Any] | None = None


class ImportDiagram(BaseModel):
    nodes: list[ImportNode] | None = None
    edges: list[ImportEdge] | None = None
    metadata: dict[str, Any] | None = None


class ImportWorkflowItem(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    diagramJson: ImportDiagram


class ImportData(BaseModel):
    workflows: list[ImportWorkflowItem]


class ImportEnvelope(BaseModel):
    version: str
    data: ImportData


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=50_000)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=50_000)
    sessionId: str | None = Field(default=None, max_length=100)
    history: list[ChatTurn] = Field(default_factory=list, max_length=100)


class CopilotSessionRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    model: str | None = Field(default=None, max_length=200)


# --- Routes: auth ---


@app.get("/_health")
def health():
    return {"ok": True}


@app.get("/login", response_class=HTMLResponse)
def login_form(request: Request, next: str = "/"):
    return templates.TemplateResponse(request, "login.html", {"next": _safe_local_path(next) or "/"})


@app.post("/login")
def login_run(request: Request, username: str = Form(""), password: str = Form(""), next: str = Form("/")):
    username = (username or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")

    with db() as conn:
        u = conn.execute(
            """
            SELECT id, password_salt_hex, password_hash_hex
            FROM users
            WHERE (username=? OR email=?) AND is_deleted=0
            """,
            (username, username.lower()),
        ).fetchone()
        if not u or not _verify_password(password or "", str(u["password_salt_hex"]), str(u["password_hash_hex"])):
            raise HTTPException(status_code=403, detail="Invalid credentials")
        token = issue_session(conn, int(u["id"]))

    logger.info("login user_id=%s", u["id"])
    resp = RedirectResponse(url=_safe_local_path(next) or "/", status_code=303)
    resp.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        max_age=SESSION_DAYS * 86400,
    )
    return resp


@app.post("/logout")
def logout(request: Request):
    token = (request.cookies.get(SESSION_COOKIE) or "").strip()
    if token:
        with db() as conn:
            conn.execute("UPDATE sessions SET revoked_at=? WHERE token=? AND revoked_at IS NULL", (utc_now_iso(), token))
        request.app.state.panel_store.discard(f"session:{token}")

    resp = RedirectResponse(url="/login", status_code=303)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@app.get("/api/user/admin-status")
def admin_status(request: Request):
    return {"isAdmin": is_admin(getattr(request.state, "session", None))}


# --- Routes: profiles ---

PUBLIC_PROFILE_COLS = "id, username, name, bio, website, company, role, linkedin_url, linkedin_visible, created_at"


def _profile_dict(row: sqlite3.Row, *, include_private: bool = False) -> dict[str, Any]:
    d = {
        "id": row["id"],
        "username": row["username"],
        "name": row["name"],
        "bio": row["bio"],
        "website": row["website"],
        "company": row["company"],
        "role": row["role"],
        "linkedin_visible": bool(row["linkedin_visible"]),
        "createdAt": row["created_at"],
    }
    # a hidden LinkedIn URL is only shown to its owner
    if include_private or d["linkedin_visible"]:
        d["linkedin_url"] = row["linkedin_url"]
    else:
        d["linkedin_url"] = None
    if include_private:
        d["email"] = row["email"]
    return d


@app.get("/api/users/{key}")
def user_profile(key: str):
    with db() as conn:
        row = conn.execute(
            f"SELECT {PUBLIC_PROFILE_COLS} FROM users WHERE (username=? OR CAST(id AS TEXT)=?) AND is_deleted=0",
            (key, key),
        ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return _profile_dict(row)


@app.get("/api/profile")
def profile_get(request: Request):
    uid = require_user(request)
    with db() as conn:
        row = conn.execute(
            f"SELECT {PUBLIC_PROFILE_COLS}, email FROM users WHERE id=? AND is_deleted=0", (uid,)
        ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return _profile_dict(row, include_private=True)


@app.patch("/api/profile")
def profile_update(request: Request, body: UpdateProfileRequest):
    uid = require_user(request)

    sets: dict[str, Any] = {}
    if body.name is not None:
        name = body.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="name must not be blank")
        sets["name"] = name
    # empty strings clear the optional fields
    for field in ("bio", "website", "company", "role", "linkedin_url"):
        value = getattr(body, field)
        if value is not None:
            sets[field] = value.strip() or None
    if body.linkedin_visible is not None:
        sets["linkedin_visible"] = 1 if body.linkedin_visible else 0

    with db() as conn:
        if sets:
            cols = ", ".join(f"{k}=?" for k in sets)
            conn.execute(f"UPDATE users SET {cols} WHERE id=? AND is_deleted=0", (*sets.values(), uid))
            audit("user", str(uid), "update_profile", _actor(request), note=",".join(sorted(sets)), conn=conn)
        row = conn.execute(
            f"SELECT {PUBLIC_PROFILE_COLS}, email FROM users WHERE id=? AND is_deleted=0", (uid,)
        ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info("profile updated user_id=%s fields=%s", uid, ",".join(sorted(sets)))
    return _profile_dict(row, include_private=True)


# --- Routes: swarms API ---


@app.get("/api/swarms")
def swarms_list(
    request: Request,
    search: str | None = None,
    categoryId: str | None = None,
    categoryIds: str | None = None,
    userId: str | None = None,
    featured: str | None = None,
    sortBy: SortBy = "recent",
    limit: int = 20,
    offset: int = 0,
):
    uid = optional_user(request)
    session = request.state.session

    own_profile = False
    if uid is not None and userId:
        own_profile = userId == str(uid) or (isinstance(session, Session) and userId == session.username)

    with db() as conn:
        result = get_swarms(
            conn,
            search=search or None,
            category_id=categoryId or None,
            category_ids=[c for c in (categoryIds or "").split(",") if c] or None,
            user=userId or None,
            is_featured=True if featured == "true" else None,
            is_public=None if own_profile else True,
            limit=limit,
            offset=offset,
            sort_by=sortBy,
            current_user_id=uid,
        )

    if uid is None and not userId and not search:
        return JSONResponse(
            content=result,
            headers={"Cache-Control": "public, s-maxage=30, stale-while-revalidate=15"},
        )
    return result


@app.post("/api/swarms", status_code=201)
def swarm_create(request: Request, body: CreateSwarmRequest):
    uid = require_user(request)

    base_slug = generate_slug(body.slug)
    if not base_slug:
        raise HTTPException(status_code=400, detail="slug must contain letters or digits")

    with db() as conn:
        category_id = _require_category(conn, body.categoryId)
        swarm_id = insert_swarm(
            conn,
            user_id=uid,
            name=body.name.strip(),
            slug=base_slug,
            description=body.description,
            nodes_json=_json_list_text(body.workflowNodes, "workflowNodes"),
            edges_json=_json_list_text(body.workflowEdges, "workflowEdges"),
            metadata_json=_json_object_text(body.workflowMetadata, "workflowMetadata"),
            category_id=category_id,
            is_public=body.is_public,
            image_url=body.image_url,
        )
        audit("swarm", swarm_id, "create", _actor(request), conn=conn)
        row = _load_swarm(conn, swarm_id, uid)

    _invalidate_listing_caches()
    return _swarm_dict(row)


@app.get("/api/swarms/{key}")
def swarm_get(request: Request, key: str):
    with db() as conn:
        row = _visible_swarm(conn, request, key)

    view_counts.increment(str(row["id"]))
    if view_counts.due():
        with db() as conn:
            view_counts.flush(conn)
    return _swarm_dict(row)


@app.patch("/api/swarms/{key}")
def swarm_update(request: Request, key: str, body: UpdateSwarmRequest):
    uid = require_user(request)

    with db() as conn:
        row = _load_swarm(conn, key, uid)
        if not row:
            raise HTTPException(status_code=404, detail="Swarm not found")
        if not _can_edit(row, request, uid):
            raise HTTPException(status_code=403, detail="Forbidden: not the owner")

        sets: dict[str, Any] = {}
        if body.name is not None:
            sets["name"] = body.name.strip()
        if body.description is not None:
            sets["description"] = body.description
        if body.workflowNodes is not None:
            sets["workflow_nodes"] = _json_list_text(body.workflowNodes, "workflowNodes")
        if body.workflowEdges is not None:
            sets["workflow_edges"] = _json_list_text(body.workflowEdges, "workflowEdges")
        if body.workflowMetadata is not None:
            sets["workflow_metadata"] = _json_object_text(body.workflowMetadata, "workflowMetadata")
        if body.image_url is not None:
            sets["image_url"] = body.image_url
        if body.categoryId is not None:
            sets["category_id"] = _require_category(conn, body.categoryId)
        if body.is_public is not None:
            sets["is_public"] = 1 if body.is_public else 0
            if body.is_public and not row["published_at"]:
                sets["published_at"] = utc_now_iso()
        if body.is_featured is not None:
            if not is_admin(request.state.session):
                raise HTTPException(status_code=403, detail="Forbidden: admin only")
            sets["is_featured"] = 1 if body.is_featured else 0

        if sets:
            sets["updated_at"] = utc_now_iso()
            cols = ", ".join(f"{k}=?" for k in sets)
            conn.execute(f"UPDATE swarms SET {cols} WHERE id=?", (*sets.values(), row["id"]))
            audit("swarm", str(row["id"]), "update", _actor(request), note=",".join(sorted(sets)), conn=conn)
        row = _load_swarm(conn, str(row["id"]), uid)

    _invalidate_listing_caches()
    return _swarm_dict(row)


@app.delete("/api/swarms/{key}")
def swarm_delete(request: Request, key: str):
    uid = require_user(request)

    with db() as conn:
        row = _load_swarm(conn, key, uid)
        if not row:
            raise HTTPException(status_code=404, detail="Swarm not found")
        if not _can_edit(row, request, uid):
            raise HTTPException(status_code=403, detail="Forbidden: not the owner")
        conn.execute("UPDATE swarms SET is_deleted=1, updated_at=? WHERE id=?", (utc_now_iso(), row["id"]))
        audit("swarm", str(row["id"]), "delete", _actor(request), conn=conn)

    _invalidate_listing_caches()
    return {"success": True}


@app.get("/api/swarms/{key}/export.json")
def swarm_export_json(request: Request, key: str):
    require_user(request)

    with db() as conn:
        row = _visible_swarm(conn, request, key)
        conn.execute("UPDATE swarms SET downloads_count = downloads_count + 1 WHERE id=?", (row["id"],))

    filename = f"{row['slug']}-workflow.json"
    return JSONResponse(
        content=export_envelope(row),
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _ordered_steps(nodes: list[Any]) -> list[dict[str, Any]]:
    steps = [n for n in nodes if isinstance(n, dict)]

    def _pos(n: dict[str, Any]) -> tuple[float, float]:
        p = n.get("position") if isinstance(n.get("position"), dict) else {}
        x = p.get("x") if isinstance(p.get("x"), (int, float)) else 0
        y = p.get("y") if isinstance(p.get("y"), (int, float)) else 0
        return float(x), float(y)

    return sorted(steps, key=_pos)


@app.get("/swarms/{slug}/export.docx")
def swarm_export_docx(request: Request, slug: str):
    """Workflow handout: one row per step, ordered left to right as drawn."""
    require_user(request)

    with db() as conn:
        row = _visible_swarm(conn, request, slug)
        conn.execute("UPDATE swarms SET downloads_count = downloads_count + 1 WHERE id=?", (row["id"],))

    doc = Document()

    trace = f"Trace: {_short_code('SW', str(row['id']))} · {utc_now_iso().split('T')[0]}"
    for s in doc.sections:
        fp = s.footer.paragraphs[0] if s.footer.paragraphs else s.footer.add_paragraph()
        fp.text = trace

    doc.add_heading(str(row["name"]), level=1)
    if row["category_name"]:
        doc.add_paragraph(f"Phase: {row['category_name']}")
    doc.add_paragraph(str(row["description"]))

    meta = _json_load(row["workflow_metadata"]) or {}
    for k in ("phase", "standard", "framework"):
        if meta.get(k):
            doc.add_paragraph(f"{k.capitalize()}: {meta[k]}")

    doc.add_heading("Steps", level=2)
    table = doc.add_table(rows=1, cols=4)
    hdr = table.rows[0].cells
    hdr[0].text = "Step"
    hdr[1].text = "Description"
    hdr[2].text = "Instructions"
    hdr[3].text = "Outputs"

    for i, node in enumerate(_ordered_steps(_json_load(row["workflow_nodes"]) or []), start=1):
        data = node.get("data") if isinstance(node.get("data"), dict) else {}
        cells = table.add_row().cells
        cells[0].text = f"{i}. {data.get('label') or node.get('id')}"
        cells[1].text = str(data.get("description") or "")
        cells[2].text = str(data.get("instructions") or "")
        outputs = data.get("outputs") or []
        cells[3].text = "\n".join(str(o) for o in outputs) if isinstance(outputs, list) else str(outputs)

    buf = io.BytesIO()
    doc.save(buf)
    filename = f"{row['slug']}-workflow.docx"
    return Response(
        content=buf.getvalue(),
        media_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# --- Routes: import ---


def _read_workflow_text(upload: UploadFile | None, text: str) -> bytes | str:
    if upload is not None and upload.filename:
        raw = upload.file.read()
        if raw.strip():
            return raw
    if (text or "").strip():
        return text
    raise HTTPException(status_code=400, detail="No workflow JSON provided")


def _preview(parsed: ParsedWorkflow) -> dict[str, Any]:
    graph = process_imported_workflow(parsed.raw_nodes, parsed.raw_edges)
    return {"name": parsed.name, "description": parsed.description, **graph}


@app.post("/api/import/workflow")
def import_workflow_preview(
    request: Request,
    upload: UploadFile | None = File(None),
    text: str = Form(""),
):
    require_user(request)
    parsed = parse_workflow(_read_workflow_text(upload, text))
    return _preview(parsed)


@app.get("/import", response_class=HTMLResponse)
def import_form(request: Request):
    require_user(request)
    with db() as conn:
        cats = conn.execute("SELECT id, name FROM categories ORDER BY name ASC").fetchall()
    return templates.TemplateResponse(request, "import.html", {"categories": [dict(c) for c in cats]})


@app.post("/import")
def import_run(
    request: Request,
    upload: UploadFile | None = File(None),
    text: str = Form(""),
    name: str = Form(""),
    category_id: str = Form(""),
):
    """Create a private swarm from pasted or uploaded workflow JSON."""
    uid = require_user(request)

    try:
        parsed = parse_workflow(_read_workflow_text(upload, text))
        graph = process_imported_workflow(parsed.raw_nodes, parsed.raw_edges)
    except MalformedInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidWorkflowGraph as e:
        raise HTTPException(status_code=400, detail=f"Invalid workflow graph: {e}")

    with db() as conn:
        prefixed_category, parsed_name = _split_category_prefix(conn, parsed.name or "")
        final_name = (name or "").strip() or parsed_name.strip() or "Imported workflow"
        cat = _require_category(conn, category_id.strip() or prefixed_category)
        swarm_id = insert_swarm(
            conn,
            user_id=uid,
            name=final_name,
            slug=generate_slug(final_name) or "workflow",
            description=parsed.description or "",
            nodes_json=_json_dump(graph["nodes"]),
            edges_json=_json_dump(graph["edges"]),
            category_id=cat,
            is_public=False,
        )
        audit("swarm", swarm_id, "create", _actor(request), note="import:json", conn=conn)
        slug = conn.execute("SELECT slug FROM swarms WHERE id=?", (swarm_id,)).fetchone()["slug"]

    _invalidate_listing_caches()
    return RedirectResponse(url=f"/swarms/{slug}", status_code=303)


@app.post("/api/admin/import")
def admin_import(request: Request, body: ImportEnvelope):
    """Bulk-create public swarms from an export envelope. One failure does not stop the rest."""
    uid = require_admin(request)
    actor = _actor(request)

    results: list[dict[str, Any]] = []
    for wf in body.data.workflows:
        try:
            with db() as conn:
                category_id, name = _split_category_prefix(conn, wf.name)
                diagram = wf.diagramJson
                swarm_id = insert_swarm(
                    conn,
                    user_id=uid,
                    name=name,
                    slug=generate_slug(name) or "workflow",
                    description=wf.description or "",
                    nodes_json=_json_dump([n.model_dump(exclude_none=True) for n in diagram.nodes or []]),
                    edges_json=_json_dump([e.model_dump(exclude_none=True) for e in diagram.edges or []]),
                    metadata_json=_json_dump(diagram.metadata or {}),
                    category_id=category_id,
                    is_public=True,
                    workflow_version=body.version,
                )
                audit("swarm", swarm_id, "create", actor, note="import:admin", conn=conn)
                slug = conn.execute("SELECT slug FROM swarms WHERE id=?", (swarm_id,)).fetchone()["slug"]
            results.append({"name": wf.name, "success": True, "slug": slug})
        except sqlite3.Error as e:
            logger.warning("admin import of %r failed: %s", wf.name, e)
            results.append({"name": wf.name, "success": False, "error": str(e)})

    _invalidate_listing_caches()
    return {
        "success": True,
        "results": results,
        "imported": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
    }


# --- Routes: categories ---


def get_categories_with_counts() -> list[dict[str, Any]]:
    with db() as conn:
        rows = conn.execute(
            """
            SELECT c.id, c.name, c.slug, c.description,
                   (SELECT COUNT(*) FROM swarms s JOIN users u ON u.id = s.user_id
                    WHERE s.category_id = c.id AND s.is_public=1 AND s.is_deleted=0 AND u.is_deleted=0) AS swarm_count
            FROM categories c
            ORDER BY c.name ASC
            """
        ).fetchall()
    return [
        {
            "id": r["id"],
            "name": r["name"],
            "slug": r["slug"],
            "description": r["description"],
            "swarmCount": int(r["swarm_count"]),
            "color": category_color(r["name"], True),
        }
        for r in rows
    ]


@app.get("/api/categories")
def categories_list():
    return categories_cache.get("categories:counts", get_categories_with_counts)


# --- Routes: favorites ---


@app.get("/api/favorites")
def favorites_list(request: Request, limit: int = 50, offset: int = 0):
    uid = require_user(request)
    limit = max(1, min(limit, 100))
    offset = max(0, offset)

    with db() as conn:
        rows = conn.execute(
            f"""
            {SWARM_SELECT}
            JOIN favorites fav ON fav.swarm_id = s.id AND fav.user_id = ?
            WHERE s.is_deleted=0 AND u.is_deleted=0
            ORDER BY fav.created_at DESC, s.id
            LIMIT ? OFFSET ?
            """,
            (uid, uid, limit, offset),
        ).fetchall()
        total = conn.execute(
            """
            SELECT COUNT(*) AS n FROM favorites fav
            JOIN swarms s ON s.id = fav.swarm_id
            JOIN users u ON u.id = s.user_id
            WHERE fav.user_id=? AND s.is_deleted=0 AND u.is_deleted=0
            """,
            (uid,),
        ).fetchone()["n"]

    return {
        "favorites": [_swarm_dict(r) for r in rows],
        "total": int(total),
        "hasMore": offset + len(rows) < int(total),
    }


@app.post("/api/favorites", status_code=201)
def favorite_add(request: Request, body: FavoriteRequest):
    uid = require_user(request)

    with db() as conn:
        row = _visible_swarm(conn, request, body.swarmId)
        conn.execute(
            "INSERT INTO favorites(user_id, swarm_id, created_at) VALUES (?,?,?)",
            (uid, row["id"], utc_now_iso()),
        )
        conn.execute("UPDATE swarms SET favorites_count = favorites_count + 1 WHERE id=?", (row["id"],))

    return {"success": True, "swarmId": row["id"]}


@app.delete("/api/favorites")
def favorite_remove(request: Request, swarmId: str):
    uid = require_user(request)

    with db() as conn:
        cur = conn.execute("DELETE FROM favorites WHERE user_id=? AND swarm_id=?", (uid, swarmId))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Favorite not found")
        conn.execute(
            "UPDATE swarms SET favorites_count = MAX(favorites_count - 1, 0) WHERE id=?",
            (swarmId,),
        )

    return {"success": True}


# --- Routes: ratings ---


def _recompute_rating(conn: sqlite3.Connection, swarm_id: str) -> dict[str, Any]:
    stats = conn.execute(
        "SELECT AVG(rating) AS avg, COUNT(*) AS n FROM ratings WHERE swarm_id=?",
        (swarm_id,),
    ).fetchone()
    avg = float(stats["avg"] or 0)
    count = int(stats["n"])
    conn.execute(
        "UPDATE swarms SET rating_avg=?, rating_count=? WHERE id=?",
        (avg, count, swarm_id),
    )
    return {"average": avg, "count": count}


def get_rating_stats(conn: sqlite3.Connection, swarm_id: str) -> dict[str, Any]:
    stats = conn.execute(
        "SELECT AVG(rating) AS avg, COUNT(*) AS n FROM ratings WHERE swarm_id=?",
        (swarm_id,),
    ).fetchone()
    distribution = {str(i): 0 for i in range(1, 6)}
    for r in conn.execute(
        "SELECT rating, COUNT(*) AS n FROM ratings WHERE swarm_id=? GROUP BY rating",
        (swarm_id,),
    ).fetchall():
        distribution[str(int(r["rating"]))] = int(r["n"])
    return {
        "average": float(stats["avg"] or 0),
        "count": int(stats["n"]),
        "distribution": distribution,
    }


@app.post("/api/ratings")
def rating_upsert(request: Request, body: RatingRequest):
    uid = require_user(request)
    now = utc_now_iso()

    with db() as conn:
        row = _visible_swarm(conn, request, body.swarmId)
        conn.execute(
            """
            INSERT INTO ratings(user_id, swarm_id, rating, review, created_at, updated_at)
            VALUES (?,?,?,?,?,?)
            ON CONFLICT(user_id, swarm_id) DO UPDATE SET
              rating=excluded.rating, review=excluded.review, updated_at=excluded.updated_at
            """,
            (uid, row["id"], body.rating, body.review, now, now),
        )
        stats = _recompute_rating(conn, str(row["id"]))

    swarms_cache.invalidate_pattern(r"^swarms:")
    return {"swarmId": row["id"], "rating": body.rating, "review": body.review, **stats}


@app.delete("/api/ratings")
def rating_delete(request: Request, swarmId: str):
    uid = require_user(request)

    with db() as conn:
        cur = conn.execute("DELETE FROM ratings WHERE user_id=? AND swarm_id=?", (uid, swarmId))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Rating not found")
        stats = _recompute_rating(conn, swarmId)

    swarms_cache.invalidate_pattern(r"^swarms:")
    return {"success": True, **stats}


@app.get("/api/swarms/{key}/ratings")
def swarm_ratings(request: Request, key: str, limit: int = 20, offset: int = 0):
    uid = optional_user(request)
    limit = max(1, min(limit, 100))
    offset = max(0, offset)

    with db() as conn:
        row = _visible_swarm(conn, request, key)
        stats = get_rating_stats(conn, str(row["id"]))
        ratings = conn.execute(
            """
            SELECT r.rating, r.review, r.created_at, u.id AS user_id, u.username
            FROM ratings r JOIN users u ON u.id = r.user_id
            WHERE r.swarm_id=?
            ORDER BY r.created_at DESC
            LIMIT ? OFFSET ?
            """,
            (row["id"], limit, offset),
        ).fetchall()
        mine = None
        if uid is not None:
            m = conn.execute("SELECT rating, review FROM ratings WHERE user_id=? AND swarm_id=?", (uid, row["id"])).fetchone()
            mine = dict(m) if m else None

    return {
        **stats,
        "ratings": [
            {
                "rating": int(r["rating"]),
                "review": r["review"],
                "createdAt": r["created_at"],
                "user": {"id": str(r["user_id"]), "username": r["username"]},
            }
            for r in ratings
        ],
        "hasMore": offset + len(ratings) < stats["count"],
        "userRating": mine,
    }


# --- Routes: admin ---


@app.get("/api/admin/featured")
def admin_featured_list(request: Request):
    require_admin(request)
    with db() as conn:
        featured = get_swarms(conn, is_featured=True, limit=100, sort_by="recent")
        available = get_swarms(conn, limit=100, sort_by="popular")
    return {"featured": featured["swarms"], "available": available["swarms"]}


@app.post("/api/admin/featured")
def admin_featured_set(request: Request, body: FeaturedRequest):
    require_admin(request)
    with db() as conn:
        row = _load_swarm(conn, body.swarmId)
        if not row:
            raise HTTPException(status_code=404, detail="Swarm not found")
        if body.featured and not row["is_public"]:
            raise HTTPException(status_code=409, detail="Only public swarms can be featured")
        conn.execute(
            "UPDATE swarms SET is_featured=?, updated_at=? WHERE id=?",
            (1 if body.featured else 0, utc_now_iso(), row["id"]),
        )
        audit("swarm", str(row["id"]), "feature" if body.featured else "unfeature", _actor(request), conn=conn)

    swarms_cache.invalidate_pattern(r"^swarms:")
    return {"success": True, "swarmId": row["id"], "featured": body.featured}


@app.get("/api/admin/stats")
def admin_stats(request: Request):
    require_admin(request)
    with db() as conn:
        one = lambda sql: int(conn.execute(sql).fetchone()[0])  # noqa: E731
        return {
            "users": one("SELECT COUNT(*) FROM users WHERE is_deleted=0"),
            "admins": one("SELECT COUNT(*) FROM users WHERE is_deleted=0 AND is_admin=1"),
            "swarms": one("SELECT COUNT(*) FROM swarms WHERE is_deleted=0"),
            "publicSwarms": one("SELECT COUNT(*) FROM swarms WHERE is_deleted=0 AND is_public=1"),
            "featuredSwarms": one("SELECT COUNT(*) FROM swarms WHERE is_deleted=0 AND is_featured=1"),
            "favorites": one("SELECT COUNT(*) FROM favorites"),
            "ratings": one("SELECT COUNT(*) FROM ratings"),
            "copilotSessions": one("SELECT COUNT(*) FROM copilot_sessions"),
        }


# --- Copilot ---

COPILOT_SYSTEM_PROMPT = (
    "You are the OpenAuditSwarms copilot. You help internal auditors design audit workflow templates. "
    "When asked for a workflow, answer with a JSON object of the form "
    '{"nodes": [{"id", "data": {"label", "description", "instructions", "outputs"}}], '
    '"edges": [{"id", "source", "target"}]} inside a ```json fenced block.'
)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.+?)```", re.DOTALL)


def _copilot_http_client(timeout: httpx.Timeout) -> httpx.Client:
    return httpx.Client(timeout=timeout)


def copilot_chat(messages: list[dict[str, str]], temperature: float = 0.2, max_tokens: int = 2000) -> str:
    """Call the OpenAI-compatible chat endpoint and return the assistant content."""
    payload = {
        "model": COPILOT_MODEL,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    headers = {"Authorization": f"Bearer {COPILOT_API_KEY}"} if COPILOT_API_KEY else {}

    try:
        with _copilot_http_client(httpx.Timeout(120.0, connect=10.0)) as client:
            r = client.post(f"{COPILOT_BASE_URL}/v1/chat/completions", json=payload, headers=headers)
            if r.status_code >= 400:
                raise HTTPException(
                    status_code=502,
                    detail=f"Copilot model error {r.status_code}: {r.text[:500]}",
                )
            data = r.json()
            return data["choices"][0]["message"]["content"]
    except httpx.TimeoutException as e:
        raise HTTPException(status_code=504, detail=f"Copilot model timed out: {e}")
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"Copilot model connection error: {e}")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise HTTPException(status_code=502, detail=f"Copilot model returned an unexpected payload: {e}")


def extract_workflow(reply: str) -> dict[str, Any] | None:
    """Pull a workflow graph out of a chat reply, if the model produced one."""
    candidates = [m.group(1) for m in _FENCED_JSON_RE.finditer(reply or "")] or [reply or ""]
    for c in candidates:
        try:
            return _preview(parse_workflow(c.strip()))
        except (MalformedInput, InvalidWorkflowGraph):
            continue
    return None


def _owned_copilot_session(conn: sqlite3.Connection, session_id: str, uid: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM copilot_sessions WHERE id=? AND user_id=?",
        (session_id, uid),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Copilot session not found")
    return row


def _create_copilot_session(conn: sqlite3.Connection, uid: int, title: str, model: str) -> str:
    now = utc_now_iso()
    sid = str(uuid.uuid4())
    conn.execute(
        "INSERT INTO copilot_sessions(id, user_id, title, model, created_at, updated_at) VALUES (?,?,?,?,?,?)",
        (sid, uid, title, model, now, now),
    )
    return sid


@app.get("/api/copilot/sessions")
def copilot_sessions_list(request: Request):
    uid = require_user(request)
    with db() as conn:
        rows = conn.execute(
            """
            SELECT cs.id, cs.title, cs.model, cs.created_at, cs.updated_at,
                   (SELECT COUNT(*) FROM copilot_messages m WHERE m.session_id = cs.id) AS message_count
            FROM copilot_sessions cs
            WHERE cs.user_id=?
            ORDER BY cs.updated_at DESC, cs.id
            """,
            (uid,),
        ).fetchall()
    return {
        "sessions": [
            {
                "id": r["id"],
                "title": r["title"],
                "model": r["model"],
                "createdAt": r["created_at"],
                "updatedAt": r["updated_at"],
                "messageCount": int(r["message_count"]),
            }
            for r in rows
        ]
    }


@app.post("/api/copilot/sessions")
def copilot_session_create(request: Request, body: CopilotSessionRequest):
    uid = require_user(request)
    with db() as conn:
        sid = _create_copilot_session(conn, uid, body.title or "New Chat", body.model or COPILOT_MODEL)
        row = _owned_copilot_session(conn, sid, uid)
    return {
        "id": row["id"],
        "title": row["title"],
        "model": row["model"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


@app.get("/api/copilot/sessions/{session_id}/messages")
def copilot_messages(request: Request, session_id: str):
    uid = require_user(request)
    with db() as conn:
        _owned_copilot_session(conn, session_id, uid)
        rows = conn.execute(
            "SELECT role, content, created_at FROM copilot_messages WHERE session_id=? ORDER BY id ASC",
            (session_id,),
        ).fetchall()
    return {"messages": [{"role": r["role"], "content": r["content"], "createdAt": r["created_at"]} for r in rows]}


@app.post("/api/copilot/chat")
def copilot_chat_run(request: Request, body: ChatRequest):
    uid = require_user(request)

    with db() as conn:
        if body.sessionId:
            _owned_copilot_session(conn, body.sessionId, uid)
            sid = body.sessionId
            history = [
                {"role": r["role"], "content": r["content"]}
                for r in conn.execute(
                    "SELECT role, content FROM copilot_messages WHERE session_id=? ORDER BY id ASC",
                    (sid,),
                ).fetchall()
            ]
        else:
            sid = _create_copilot_session(conn, uid, body.message.strip()[:60] or "New Chat", COPILOT_MODEL)
            history = [t.model_dump() for t in body.history]

    messages = [{"role": "system", "content": COPILOT_SYSTEM_PROMPT}, *history, {"role": "user", "content": body.message}]
    reply = copilot_chat(messages)

    now = utc_now_iso()
    with db() as conn:
        conn.executemany(
            "INSERT INTO copilot_messages(session_id, role, content, created_at) VALUES (?,?,?,?)",
            [(sid, "user", body.message, now), (sid, "assistant", reply, now)],
        )
        conn.execute("UPDATE copilot_sessions SET updated_at=? WHERE id=?", (now, sid))

    return {"sessionId": sid, "reply": reply, "workflow": extract_workflow(reply)}


@app.get("/api/copilot/panel")
def panel_get(panel: PanelState = Depends(peek_panel)):
    return panel.snapshot()


@app.post("/api/copilot/panel/referrer")
def panel_set_referrer(body: ReferrerRequest, panel: PanelState = Depends(get_panel)):
    path = _safe_local_path(body.path)
    if path is None:
        raise HTTPException(status_code=400, detail="referrer must be a local path")
    panel.set_referrer(path)
    return panel.snapshot()


@app.delete("/api/copilot/panel/referrer")
def panel_clear_referrer(panel: PanelState = Depends(get_panel)):
    panel.clear_referrer()
    return panel.snapshot()


@app.post("/api/copilot/panel/{action}")
def panel_transition(action: Literal["open", "close", "toggle"], panel: PanelState = Depends(get_panel)):
    getattr(panel, action)()
    return panel.snapshot()


# --- HTML pages ---


def _featured_swarms() -> list[dict[str, Any]]:
    with db() as conn:
        return get_swarms(conn, is_featured=True, limit=6)["swarms"]


@app.get("/", response_class=HTMLResponse)
def browse(
    request: Request,
    q: str | None = None,
    category: str | None = None,
    sortBy: SortBy = "recent",
    offset: int = 0,
    panel: PanelState = Depends(peek_panel),
):
    uid = optional_user(request)
    with db() as conn:
        listing = get_swarms(
            conn,
            search=q or None,
            category_id=category or None,
            sort_by=sortBy,
            offset=offset,
            current_user_id=uid,
        )
    featured = swarms_cache.get("swarms:featured", _featured_swarms)
    return templates.TemplateResponse(
        request,
        "browse.html",
        {
            "listing": listing,
            "featured": featured if not (q or category) else [],
            "categories": categories_cache.get("categories:counts", get_categories_with_counts),
            "q": q or "",
            "category": category or "",
            "sort_by": sortBy,
            "offset": offset,
            "panel": panel.snapshot(),
        },
    )


@app.get("/swarms/{slug}", response_class=HTMLResponse)
def swarm_page(request: Request, slug: str, panel: PanelState = Depends(peek_panel)):
    uid = optional_user(request)
    with db() as conn:
        row = _visible_swarm(conn, request, slug)
        stats = get_rating_stats(conn, str(row["id"]))

    view_counts.increment(str(row["id"]))
    return templates.TemplateResponse(
        request,
        "swarm.html",
        {
            "swarm": _swarm_dict(row),
            "nodes": _ordered_steps(_json_load(row["workflow_nodes"]) or []),
            "edges": _json_load(row["workflow_edges"]) or [],
            "ratings": stats,
            "can_edit": uid is not None and _can_edit(row, request, uid),
            "panel": panel.snapshot(),
        },
    )


@app.get("/copilot", response_class=HTMLResponse)
def copilot_page(
    request: Request,
    session: str | None = None,
):
    """Chat page. `?from=/swarms/x` remembers where the user came from."""
    uid = require_user(request)
    panel = get_panel(request)

    referrer = _safe_local_path(request.query_params.get("from"))
    if referrer:
        panel.set_referrer(referrer)
    panel.open()

    with db() as conn:
        sessions = conn.execute(
            "SELECT id, title, updated_at FROM copilot_sessions WHERE user_id=? ORDER BY updated_at DESC, id LIMIT 50",
            (uid,),
        ).fetchall()
        messages: list[sqlite3.Row] = []
        if session:
            _owned_copilot_session(conn, session, uid)
            messages = conn.execute(
                "SELECT role, content, created_at FROM copilot_messages WHERE session_id=? ORDER BY id ASC",
                (session,),
            ).fetchall()

    return templates.TemplateResponse(
        request,
        "copilot.html",
        {
            "sessions": [dict(s) for s in sessions],
            "active_session": session,
            "messages": [dict(m) for m in messages],
            "panel": panel.snapshot(),
            "model": COPILOT_MODEL,
        },
    )
