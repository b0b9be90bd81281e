"""
Agent store: agents, their one configuration row, and their knowledge base.

`load_agent` is the per-request configuration lookup; it never caches, so
dashboard edits apply to the next message.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from clara.models import AgentConfiguration, AgentProfile, KnowledgeEntry
from clara.storage.db import connect, init_db, new_id, sql, utc_timestamp


class AgentNotConfigured(RuntimeError):
    """Raised when the agent row or its configuration row is missing."""

    def __init__(self, agent_name: str, reason: str):
        self.agent_name = agent_name
        self.reason = reason  # "agent_missing" | "configuration_missing"
        super().__init__(f"Agent '{agent_name}' not configured ({reason})")


def _knowledge_from_row(row: Dict[str, Any]) -> KnowledgeEntry:
    tags: List[str] = []
    if row.get("tags"):
        try:
            tags = list(json.loads(row["tags"]))
        except (json.JSONDecodeError, TypeError):
            tags = []
    return KnowledgeEntry(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        category=row["category"],
        priority=int(row["priority"] or 0),
        tags=tags,
        is_active=bool(row["is_active"]),
    )


def list_active_knowledge(agent_id: str) -> List[KnowledgeEntry]:
    """Active entries for one agent, highest priority first."""
    with connect() as conn:
        rows = conn.execute(
            sql(
                "SELECT id, title, content, category, priority, tags, is_active "
                "FROM ai_agent_knowledge_base WHERE agent_id = ? AND is_active = ? "
                "ORDER BY priority DESC, created_at"
            ),
            (agent_id, True),
        ).fetchall()
    return [_knowledge_from_row(dict(r)) for r in rows]


def load_agent(name: str) -> AgentProfile:
    """
    Fetch the agent, its configuration and active knowledge.

    Raises AgentNotConfigured when either of the first two lookups is empty.
    """
    init_db()
    with connect() as conn:
        agent = conn.execute(
            sql("SELECT id, name, display_name, status FROM ai_agents WHERE name = ?"),
            (name,),
        ).fetchone()
        if agent is None:
            raise AgentNotConfigured(name, "agent_missing")
        agent = dict(agent)
        config = conn.execute(
            sql(
                "SELECT system_prompt, model, temperature, max_tokens, response_style "
                "FROM ai_agent_configurations WHERE agent_id = ?"
            ),
            (agent["id"],),
        ).fetchone()
        if config is None:
            raise AgentNotConfigured(name, "configuration_missing")
        config = dict(config)

    configuration = AgentConfiguration(
        system_prompt=config["system_prompt"],
        model=config["model"],
        temperature=float(config["temperature"]) if config["temperature"] is not None else 0.7,
        max_tokens=int(config["max_tokens"]) if config["max_tokens"] is not None else 1000,
        response_style=config["response_style"],
    )
    return AgentProfile(
        id=agent["id"],
        name=agent["name"],
        display_name=agent["display_name"],
        status=agent["status"],
        configuration=configuration,
        knowledge=list_active_knowledge(agent["id"]),
    )


def get_agent_id(name: str) -> Optional[str]:
    init_db()
    with connect() as conn:
        row = conn.execute(sql("SELECT id FROM ai_agents WHERE name = ?"), (name,)).fetchone()
    return dict(row)["id"] if row is not None else None


def create_agent(
    *,
    name: str,
    display_name: str,
    agent_type: str = "sales",
    description: str = "",
    status: str = "active",
    configuration: Optional[AgentConfiguration] = None,
) -> str:
    """Insert an agent (and its configuration when given); return the agent id."""
    init_db()
    agent_id = new_id()
    now = utc_timestamp()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO ai_agents (id, name, display_name, agent_type, description, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (agent_id, name, display_name, agent_type, description, status, now),
        )
        if configuration is not None:
            conn.execute(
                sql(
                    "INSERT INTO ai_agent_configurations "
                    "(id, agent_id, system_prompt, model, temperature, max_tokens, response_style, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    new_id(),
                    agent_id,
                    configuration.system_prompt,
                    configuration.model,
                    configuration.temperature,
                    configuration.max_tokens,
                    configuration.response_style,
                    now,
                ),
            )
        conn.commit()
    return agent_id


def add_knowledge_entries(agent_id: str, entries: Iterable[KnowledgeEntry]) -> int:
    init_db()
    added = 0
    with connect() as conn:
        for entry in entries:
            conn.execute(
                sql(
                    "INSERT INTO ai_agent_knowledge_base "
                    "(id, agent_id, title, content, category, priority, tags, is_active, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    entry.id or new_id(),
                    agent_id,
                    entry.title,
                    entry.content,
                    entry.category,
                    entry.priority,
                    json.dumps(entry.tags),
                    entry.is_active,
                    utc_timestamp(),
                ),
            )
            added += 1
        conn.commit()
    return added
