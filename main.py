# main.py: exam service app wiring, BASE_PATH-aware (psycopg3 + pooling)

import os

from flask import Flask

from attempt_store import PgStore
from db import execute, fetch_one, get_conn
from exam import create_exam_blueprint
from schema import ensure_schema

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
ENSURE_SCHEMA = os.getenv("ENSURE_SCHEMA", "").lower() in {"1", "true", "yes"}

app = Flask(__name__)
app.url_map.strict_slashes = False
app.json.sort_keys = False

# =============================================================================
# Schema bootstrap (opt-in)
# =============================================================================
if ENSURE_SCHEMA:
    try:
        n = ensure_schema(execute)
        print(f"[DB] ensure_schema ran {n} statement(s)")
    except Exception as e:
        print(f"[DB] ensure_schema failed: {e}")

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

# =============================================================================
# Blueprints
# =============================================================================
store = PgStore(get_conn)
app.register_blueprint(create_exam_blueprint(BASE_PATH, {"store": store}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
