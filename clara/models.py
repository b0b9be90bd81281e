"""
Data models for the Clara chat service.

Request models are pydantic (validated at the HTTP edge); agent profile rows
and completion results are plain dataclasses built by the stores and providers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class ChatMessage(BaseModel):
    """One role-tagged message re-submitted by the caller."""

    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant", "tool"]
    content: str


class PageContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    page: Optional[str] = None


class ChatRequest(BaseModel):
    """Parsed /clara-chat request body."""

    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage]
    sessionId: Optional[str] = None
    context: Optional[PageContext] = None
    language: str = "en"

    @property
    def page(self) -> Optional[str]:
        return self.context.page if self.context else None


class CheckoutRequest(BaseModel):
    """Parsed /clara-checkout request body."""

    model_config = ConfigDict(extra="ignore")

    planId: str
    devices: List[str] = []
    customerEmail: str
    customerName: str
    sessionId: Optional[str] = None
    conversationId: Optional[str] = None

    @field_validator("devices", mode="before")
    @classmethod
    def _null_devices(cls, value: Any) -> Any:
        return [] if value is None else value


@dataclass
class AgentConfiguration:
    system_prompt: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    response_style: Optional[str] = None


@dataclass
class KnowledgeEntry:
    title: str
    content: str
    category: str
    priority: int = 0
    tags: List[str] = field(default_factory=list)
    is_active: bool = True
    id: Optional[str] = None


@dataclass
class AgentProfile:
    """An agent row joined with its configuration and active knowledge base."""

    id: str
    name: str
    display_name: str
    status: str
    configuration: AgentConfiguration
    knowledge: List[KnowledgeEntry] = field(default_factory=list)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON string as sent by the model


@dataclass
class Completion:
    """Assistant message extracted from a chat-completion response."""

    content: Optional[str]
    tool_calls: List[ToolCall] = field(default_factory=list)
    raw_message: Dict[str, Any] = field(default_factory=dict)
