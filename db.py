# db.py: PostgreSQL configuration + psycopg3 pool.
# Every unit of work checks a connection out of the pool and returns it when
# done; nothing holds a connection across requests.

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse, parse_qs, unquote

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# =============================================================================
# Configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN") or 1)
POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX") or 10)
POOL_TIMEOUT_SEC = float(os.getenv("DB_POOL_TIMEOUT") or 10)

_SA_PREFIXES = (
    "postgresql+psycopg://",
    "postgres+psycopg://",
    "postgresql+psycopg2://",
    "postgres+psycopg2://",
)


def parse_database_url(url: str) -> Dict[str, Any]:
    """Turn a postgres URL (SQLAlchemy-style schemes included) into psycopg kwargs."""
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in _SA_PREFIXES:
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")

    host = (qs.get("host") or [None])[0] or p.hostname
    kwargs: Dict[str, Any] = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
    }
    if host:
        kwargs["host"] = host
    # unix socket dirs take no port
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _tcp_kwargs() -> Dict[str, Any]:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST or "127.0.0.1",
        "port": int(DB_PORT or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
    }


def connection_kwargs() -> Dict[str, Any]:
    if FORCE_TCP:
        print("[DB] FORCE_TCP: using DB_* variables")
        return _tcp_kwargs()
    for name, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = parse_database_url(url)
            print(f"[DB] Using {name} -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring {name}: {e}")
    return _tcp_kwargs()


def to_conninfo(kwargs: Dict[str, Any]) -> str:
    return make_conninfo(**{k: v for k, v in kwargs.items() if v is not None})


# =============================================================================
# Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool() -> ConnectionPool:
    global _pg_pool
    if _pg_pool is None:
        _pg_pool = ConnectionPool(
            conninfo=to_conninfo(connection_kwargs()),
            min_size=POOL_MIN_SIZE,
            max_size=POOL_MAX_SIZE,
            timeout=POOL_TIMEOUT_SEC,
            open=True,
        )
    return _pg_pool


def close_pool():
    global _pg_pool
    if _pg_pool is not None:
        _pg_pool.close()
        _pg_pool = None


@contextmanager
def get_conn() -> Iterator[psycopg.Connection]:
    pool = init_pool()
    # committed on clean exit, rolled back on error, then returned to the pool
    with pool.connection() as conn:
        yield conn


def fetch_all(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()
