"""
Conversation store: one row per completed exchange, plus daily analytics.

ai_agent_conversations: (id, agent_id, user_id, session_id, conversation_data, created_at)
ai_agent_analytics: (agent_id, date) -> total_conversations, successful_resolutions
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from clara.storage.db import connect, init_db, new_id, sql, utc_timestamp

logger = logging.getLogger("clara-chat")


def insert_conversation(
    *,
    agent_id: str,
    session_id: Optional[str],
    user_id: Optional[str],
    conversation: List[Dict[str, Any]],
    conversation_id: Optional[str] = None,
) -> str:
    """Always inserts a new row; repeated identical exchanges are not merged."""
    init_db()
    conversation_id = conversation_id or new_id()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO ai_agent_conversations "
                "(id, agent_id, user_id, session_id, conversation_data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)"
            ),
            (conversation_id, agent_id, user_id, session_id, json.dumps(conversation), utc_timestamp()),
        )
        conn.commit()
    return conversation_id


def bump_daily_analytics(agent_id: str, day: str) -> None:
    """Add one conversation and one resolution to the (agent, day) counter row."""
    init_db()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO ai_agent_analytics (agent_id, date, total_conversations, successful_resolutions) "
                "VALUES (?, ?, 1, 1) "
                "ON CONFLICT (agent_id, date) DO UPDATE SET "
                "total_conversations = ai_agent_analytics.total_conversations + 1, "
                "successful_resolutions = ai_agent_analytics.successful_resolutions + 1"
            ),
            (agent_id, day),
        )
        conn.commit()


def get_daily_analytics(agent_id: str, day: str) -> Optional[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        row = conn.execute(
            sql(
                "SELECT agent_id, date, total_conversations, successful_resolutions "
                "FROM ai_agent_analytics WHERE agent_id = ? AND date = ?"
            ),
            (agent_id, day),
        ).fetchone()
    return dict(row) if row is not None else None


def list_conversations(agent_id: str, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
    init_db()
    query = "SELECT * FROM ai_agent_conversations WHERE agent_id = ?"
    params: List[Any] = [agent_id]
    if session_id is not None:
        query += " AND session_id = ?"
        params.append(session_id)
    query += " ORDER BY created_at, id"
    with connect() as conn:
        rows = conn.execute(sql(query), tuple(params)).fetchall()
    out: List[Dict[str, Any]] = []
    for r in rows:
        row = dict(r)
        try:
            row["conversation_data"] = json.loads(row["conversation_data"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("unreadable conversation_data for conversation id=%s", row.get("id"))
        out.append(row)
    return out
