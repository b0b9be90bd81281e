"""
Database helpers for SQLite (local) and Postgres (Supabase).

Every table the chat service reads or writes is created here by `init_db`.
JSON-valued columns are stored as text in both dialects.
"""

from __future__ import annotations

import os
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from clara.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DATABASE_URL")


def get_db_info() -> DbInfo:
    database_url = _database_url()
    db_path = get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    Path(info.db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query


def new_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


# {bool} and {real} are filled per dialect.
_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS ai_agents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_agent_configurations (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL UNIQUE REFERENCES ai_agents(id),
        system_prompt TEXT NOT NULL,
        model TEXT NOT NULL,
        temperature {real},
        max_tokens INTEGER,
        response_style TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_agent_knowledge_base (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL REFERENCES ai_agents(id),
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        category TEXT NOT NULL,
        priority INTEGER,
        tags TEXT,
        is_active {bool},
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_agent_conversations (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL REFERENCES ai_agents(id),
        user_id TEXT,
        session_id TEXT,
        conversation_data TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_agent_analytics (
        agent_id TEXT NOT NULL REFERENCES ai_agents(id),
        date TEXT NOT NULL,
        total_conversations INTEGER NOT NULL DEFAULT 0,
        successful_resolutions INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (agent_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pricing_plans (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL,
        monthly_price {real} NOT NULL,
        devices_included INTEGER,
        family_dashboards INTEGER,
        is_active {bool},
        is_popular {bool},
        sort_order INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plan_translations (
        id TEXT PRIMARY KEY,
        plan_id TEXT NOT NULL REFERENCES pricing_plans(id),
        language TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        features TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL,
        category TEXT NOT NULL,
        product_type TEXT,
        monthly_price {real},
        is_active {bool},
        is_popular {bool},
        sort_order INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_translations (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL REFERENCES products(id),
        language TEXT NOT NULL,
        name TEXT NOT NULL,
        tagline TEXT,
        description TEXT,
        price_display TEXT,
        features TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        interest_type TEXT NOT NULL,
        lead_type TEXT,
        message TEXT,
        status TEXT,
        source_page TEXT,
        clara_conversation_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        plan_id TEXT REFERENCES pricing_plans(id),
        selected_devices TEXT,
        total_monthly {real},
        customer_email TEXT,
        customer_name TEXT,
        session_id TEXT,
        conversation_id TEXT,
        payment_status TEXT,
        stripe_session_id TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_knowledge_agent_id ON ai_agent_knowledge_base (agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_agent_id ON ai_agent_conversations (agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_plan_translations_plan_id ON plan_translations (plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_product_translations_product_id ON product_translations (product_id)",
)


def init_db() -> None:
    """
    Create tables and set PRAGMAs.
    Idempotent; called at app startup and lazily by the stores.
    """
    postgres = is_postgres()
    types = {"bool": "BOOLEAN", "real": "DOUBLE PRECISION"} if postgres else {"bool": "INTEGER", "real": "REAL"}
    with connect() as conn:
        if not postgres:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=3000")
        for ddl in _TABLES:
            conn.execute(ddl.format(**types))
        for ddl in _INDEXES:
            conn.execute(ddl)
        conn.commit()
