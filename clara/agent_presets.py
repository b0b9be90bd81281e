from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml
from jsonschema import Draft7Validator

from .models import AgentConfiguration, KnowledgeEntry
from .storage import agent_store, catalog_store

logger = logging.getLogger("clara-chat")

# Agent YAML files live in the clara.presets package (clara/presets/agents/*.yaml).
PRESETS_DIR = Path(__file__).parent / "presets"
AGENT_PRESETS_DIR = PRESETS_DIR / "agents"
CATALOG_PRESET = PRESETS_DIR / "catalog.yaml"

AGENT_PRESET_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "display_name", "configuration"],
    "properties": {
        "name": {"type": "string", "pattern": "^[a-z0-9][a-z0-9_-]*$"},
        "display_name": {"type": "string"},
        "agent_type": {"type": "string"},
        "description": {"type": "string"},
        "status": {"enum": ["active", "inactive", "training"]},
        "configuration": {
            "type": "object",
            "required": ["system_prompt", "model"],
            "properties": {
                "system_prompt": {"type": "string", "minLength": 1},
                "model": {"type": "string", "minLength": 1},
                "temperature": {"type": "number", "minimum": 0, "maximum": 1},
                "max_tokens": {"type": "integer", "minimum": 1},
                "response_style": {"type": "string"},
            },
        },
        "knowledge": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["title", "content", "category"],
                "properties": {
                    "title": {"type": "string"},
                    "content": {"type": "string"},
                    "category": {"type": "string"},
                    "priority": {"type": "integer"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "is_active": {"type": "boolean"},
                },
            },
        },
    },
}


class PresetLoadError(RuntimeError):
    """Raised when a preset file cannot be read or fails validation."""


@dataclass
class AgentPreset:
    name: str
    display_name: str
    configuration: AgentConfiguration
    agent_type: str = "sales"
    description: str = ""
    status: str = "active"
    knowledge: List[KnowledgeEntry] = field(default_factory=list)


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise PresetLoadError(f"Preset file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_agent_preset(path: Path) -> AgentPreset:
    """Load and validate one agent preset file."""
    raw = _read_yaml(path)
    errors = sorted(Draft7Validator(AGENT_PRESET_SCHEMA).iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors)
        raise PresetLoadError(f"Invalid agent preset {path.name}: {details}")

    config = raw["configuration"]
    return AgentPreset(
        name=raw["name"],
        display_name=raw["display_name"],
        agent_type=raw.get("agent_type", "sales"),
        description=raw.get("description", ""),
        status=raw.get("status", "active"),
        configuration=AgentConfiguration(
            system_prompt=config["system_prompt"].strip(),
            model=config["model"],
            temperature=float(config.get("temperature", 0.7)),
            max_tokens=int(config.get("max_tokens", 1000)),
            response_style=config.get("response_style"),
        ),
        knowledge=[
            KnowledgeEntry(
                title=k["title"],
                content=k["content"].strip(),
                category=k["category"],
                priority=int(k.get("priority", 0)),
                tags=list(k.get("tags", [])),
                is_active=bool(k.get("is_active", True)),
            )
            for k in raw.get("knowledge") or []
        ],
    )


def list_agent_presets(directory: Path = AGENT_PRESETS_DIR) -> List[Path]:
    if not directory.exists():
        return []
    return sorted(p for p in directory.glob("*.yaml") if p.is_file())


def seed_agent(preset: AgentPreset) -> bool:
    """Insert the agent unless one with the same name exists. Returns True when inserted."""
    if agent_store.get_agent_id(preset.name) is not None:
        return False
    agent_id = agent_store.create_agent(
        name=preset.name,
        display_name=preset.display_name,
        agent_type=preset.agent_type,
        description=preset.description,
        status=preset.status,
        configuration=preset.configuration,
    )
    agent_store.add_knowledge_entries(agent_id, preset.knowledge)
    return True


def seed_catalog(path: Path = CATALOG_PRESET) -> int:
    """Seed plans and products when the plan table is empty. Returns rows inserted."""
    if catalog_store.count_plans() > 0:
        return 0
    raw = _read_yaml(path)
    if not isinstance(raw, dict):
        raise PresetLoadError("Catalog YAML must deserialize to a mapping")
    inserted = 0
    for plan in raw.get("plans") or []:
        catalog_store.add_plan(**plan)
        inserted += 1
    for product in raw.get("products") or []:
        catalog_store.add_product(**product)
        inserted += 1
    return inserted


def seed_from_presets(directory: Path = PRESETS_DIR) -> None:
    """Seed agents and catalog; existing rows are never overwritten."""
    for path in list_agent_presets(directory / "agents"):
        try:
            preset = load_agent_preset(path)
        except PresetLoadError as exc:
            logger.warning("Skipping agent preset %s: %s", path.name, exc)
            continue
        if seed_agent(preset):
            logger.info("Seeded agent %s from %s", preset.name, path.name)

    catalog_path = directory / "catalog.yaml"
    if catalog_path.exists():
        inserted = seed_catalog(catalog_path)
        if inserted:
            logger.info("Seeded %s catalog rows from %s", inserted, catalog_path.name)
