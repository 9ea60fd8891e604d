# main.py: test-attempt service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the Google OAuth session or IAP headers; the exam
# blueprint only ever sees g.user_id / g.user_email.

import os
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional

from flask import Flask, abort, request, redirect, g, session, jsonify

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from exam import create_exam_blueprint
from store import Store

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
DEV_USER_EMAIL = (os.getenv("DEV_USER_EMAIL") or "").strip().lower()

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
elif AUTH_REQUIRED:
    print("[Auth] Google OAuth not configured; only IAP identities can sign in.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path if path.startswith("/") else "/" + path
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

def _on_managed_runtime() -> bool:
    return bool(os.getenv("K_SERVICE")) or os.getenv("GAE_ENV", "").startswith("standard")

def _parse_database_url(url: str) -> Dict[str, Any]:
    # SQLAlchemy-style schemes are accepted too
    if "+" in url.split("://", 1)[0]:
        url = "postgresql://" + url.split("://", 1)[1]
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "")
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs: Dict[str, Any] = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
    }
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port and not str(host or "").startswith("/"):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _connection_kwargs() -> Dict[str, Any]:
    managed = _on_managed_runtime()
    if not managed and DATABASE_URL_LOCAL:
        print("[DB] Using DATABASE_URL_LOCAL")
        return _parse_database_url(DATABASE_URL_LOCAL)
    if DATABASE_URL:
        print("[DB] Using DATABASE_URL")
        return _parse_database_url(DATABASE_URL)
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL or DB_NAME, DB_USER, DB_PASS.")
    base = {"dbname": DB_NAME, "user": DB_USER, "password": DB_PASS, "connect_timeout": 10}
    if managed and INSTANCE_CONNECTION_NAME:
        print(f"[DB] Managed runtime: Unix socket -> /cloudsql/{INSTANCE_CONNECTION_NAME}")
        return {**base, "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}"}
    host, port = DB_HOST or "127.0.0.1", int(DB_PORT or "5432")
    print(f"[DB] Local dev: TCP -> {host}:{port}")
    return {**base, "host": host, "port": port}

def _to_conninfo(kwargs: Dict[str, Any]) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if not s or any(ch.isspace() for ch in s) or "'" in s or "\\" in s:
            s = "'" + s.replace("\\", "\\\\").replace("'", "\\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=DB_POOL_MAX)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

@contextmanager
def transaction():
    """One DB transaction; everything done through the yielded Store commits or rolls back together."""
    with get_conn() as conn:
        with conn.transaction():
            yield Store(conn)

# =============================================================================
# Activity logging (best effort, never breaks the caller)
# =============================================================================
def log_activity(user_id: Optional[int], a_type: Optional[str], payload: Optional[dict] = None,
                 test_id: Optional[str] = None, attempt_id: Optional[str] = None):
    if not payload or not isinstance(payload, (dict, list)):
        payload = {"kind": "event"}
    try:
        with transaction() as store:
            store.insert_activity(user_id, a_type or "event", payload, test_id=test_id, attempt_id=attempt_id)
    except Exception as e:
        print(f"[activity] insert failed (safe): {e}")

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    email = _session_email() or _iap_email()
    if not email and not AUTH_REQUIRED and DEV_USER_EMAIL:
        return DEV_USER_EMAIL
    return email

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM public.users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO public.users (email, full_name, role)
        VALUES (%s, %s, 'member')
        ON CONFLICT (email) DO UPDATE SET full_name = COALESCE(public.users.full_name, EXCLUDED.full_name)
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        print(f"[healthz] db check failed: {e}")
        return ("db-fail", 500)

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url or not next_url.startswith("/") or next_url.startswith("//"):
        return _bp("/")
    return next_url

@app.get("/login")
def login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") or provider.google.userinfo(token=token)
    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")
    session["user"] = {"email": email, "name": claims.get("name"), "sub": claims.get("sub")}
    try:
        ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}")
    return redirect(_sanitize_next(session.pop("login_next", None)))

@app.get("/logout")
def logout():
    session.clear()
    return jsonify({"ok": True})

if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_bp",
                     view_func=auth_callback, methods=["GET"])

@app.before_request
def attach_identity():
    email = current_user_email()
    if not email:
        return
    g.user_email = email
    try:
        g.user_id = ensure_user_row(email)
    except Exception as e:
        # Requests needing an actor will answer 401 via the blueprint
        print(f"[Auth] ensure_user_row failed for {email}: {e}")

# =============================================================================
# Schema migrations
# =============================================================================
@app.cli.command("init-db")
def init_db():
    """Apply migrations/*.sql that have not been applied yet, in file-name order."""
    with get_conn() as conn:
        with conn.transaction():
            conn.execute("""
                CREATE TABLE IF NOT EXISTS public.schema_migrations (
                    version     TEXT PRIMARY KEY,
                    applied_at  TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """)
            done = {r[0] for r in conn.execute("SELECT version FROM public.schema_migrations;").fetchall()}
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            if path.stem in done:
                continue
            with conn.transaction():
                conn.execute(path.read_text(encoding="utf-8"))
                conn.execute("INSERT INTO public.schema_migrations (version) VALUES (%s);", (path.stem,))
            print(f"[DB] applied {path.name}")

# =============================================================================
# Exam blueprint
# =============================================================================
_exam_deps = {
    "transaction": transaction,
    "log_activity": log_activity,
}
app.register_blueprint(create_exam_blueprint(BASE_PATH, _exam_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
