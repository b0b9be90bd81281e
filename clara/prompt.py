"""
System prompt assembly for Clara.

Section order is fixed: base prompt, knowledge base (highest priority first),
at most one page-context addendum, business rules, language directive.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .models import AgentConfiguration, KnowledgeEntry

logger = logging.getLogger("clara-chat")

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "nl": "Dutch",
}
DEFAULT_LANGUAGE_NAME = "English"

# Checked in order; the first matching branch wins.
PAGE_CONTEXT_ADDENDA: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (
        ("institutional", "commercial"),
        "CONTEXT: User is viewing institutional/commercial solutions. Focus on B2B offerings, volume pricing, "
        "enterprise features, and commercial partnerships. Offer to schedule demos and generate quotes.",
    ),
    (
        ("personal-care",),
        "CONTEXT: User is viewing personal care plans. Focus on individual/family memberships, pricing tiers, "
        "and getting started. Offer to capture leads and answer pricing questions.",
    ),
    (
        ("devices",),
        "CONTEXT: User is viewing our device catalog. Focus on device features, specifications, pricing, and "
        "compatibility. Help them understand which devices best suit their needs.",
    ),
    (
        ("nurses",),
        "CONTEXT: User is learning about our nursing team. Focus on nurse qualifications, 24/7 availability, "
        "response protocols, and the human care element of our service.",
    ),
)

BUSINESS_RULES = """LEASE TERMS:
- Devices are leased as part of the monthly membership; there is no upfront purchase price.
- Leased devices remain company property and are returned when the membership ends.
- Memberships are billed monthly and can be cancelled with 30 days notice.

SALES PROCESS:
1. Understand who the care is for and what they need before recommending anything.
2. Use get_pricing_plans and get_products for current prices. Never invent prices or plans.
3. Use build_quote to calculate the monthly total for the chosen plan and devices.
4. When the customer wants to proceed, confirm their full name and email, then use create_checkout and share the payment link.
5. If the customer is not ready to buy, offer to have the team follow up and use capture_lead."""


def language_name(code: Optional[str]) -> str:
    return LANGUAGE_NAMES.get((code or "").lower(), DEFAULT_LANGUAGE_NAME)


def language_directive(code: Optional[str]) -> str:
    name = language_name(code)
    return (
        f"CRITICAL INSTRUCTION: You MUST respond in {name}. The user's interface is in {name}, "
        f"so ALL your responses must be in {name}. Do not use any other language under any circumstances. "
        "When discussing pricing, use appropriate currency symbols (€ for Spanish/Dutch, £ for English)."
    )


def page_context_addendum(page: Optional[str]) -> Optional[str]:
    if not page:
        return None
    for needles, addendum in PAGE_CONTEXT_ADDENDA:
        if any(needle in page for needle in needles):
            return addendum
    return None


def cap_knowledge(entries: Sequence[KnowledgeEntry], max_chars: int) -> List[KnowledgeEntry]:
    """
    Keep entries (already priority-ordered) while their combined body size fits.

    max_chars <= 0 disables the cap. Lowest-priority entries are dropped first.
    """
    if max_chars <= 0:
        return list(entries)
    kept: List[KnowledgeEntry] = []
    total = 0
    for entry in entries:
        total += len(entry.title) + len(entry.content)
        if total > max_chars:
            break
        kept.append(entry)
    if len(kept) < len(entries):
        logger.warning(
            "knowledge base capped: kept=%s dropped=%s max_chars=%s",
            len(kept),
            len(entries) - len(kept),
            max_chars,
        )
    return kept


def compose_system_prompt(
    configuration: AgentConfiguration,
    knowledge: Sequence[KnowledgeEntry],
    *,
    page: Optional[str] = None,
    language: Optional[str] = "en",
    knowledge_max_chars: int = 0,
) -> str:
    """Build the single system-role message sent ahead of the conversation."""
    prompt = configuration.system_prompt

    ordered = sorted(knowledge, key=lambda e: e.priority, reverse=True)
    ordered = cap_knowledge(ordered, knowledge_max_chars)
    if ordered:
        prompt += "\n\nKnowledge Base:\n"
        for entry in ordered:
            prompt += f"\n[{entry.category}] {entry.title}:\n{entry.content}\n"

    addendum = page_context_addendum(page)
    if addendum:
        prompt += "\n\n" + addendum

    prompt += "\n\n" + BUSINESS_RULES
    prompt += "\n\n" + language_directive(language)
    return prompt
