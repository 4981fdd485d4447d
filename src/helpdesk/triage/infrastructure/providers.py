"""
Triage Providers
================

Implementations of the classify/draft capability.

- StubTriageProvider: deterministic keyword heuristic, no external calls
- LLMTriageProvider: OpenAI-compatible chat completions

The implementation is chosen once at start-up by ``build_triage_provider``.
"""

import json
from typing import List, Dict, Tuple, Optional

from helpdesk.triage.application import ITriageProvider
from helpdesk.triage.domain import ClassificationResult, DraftResult, CandidateDocument
from helpdesk.infrastructure.llm import ILLMClient, OpenAILLMClient
from helpdesk.config import Settings, TicketCategory, TICKET_CATEGORIES
from helpdesk.core import LLMException, ConfigurationException


CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    TicketCategory.BILLING: ["refund", "invoice", "payment", "charge", "billing"],
    TicketCategory.TECH: ["error", "bug", "stack", "crash", "500", "exception"],
    TicketCategory.SHIPPING: ["delivery", "shipment", "tracking", "package", "courier"],
}
OTHER_SCORE = 0.2

DRAFT_GREETING = "Thanks for reaching out. Here's what we found:"
DRAFT_CLOSING = (
    "If this resolves your issue, feel free to close the ticket. "
    "Otherwise, reply and an agent will assist you."
)


def score_by_keywords(text: str, keywords: List[str]) -> float:
    """Share of keywords found in ``text``, with a denominator of at least 3."""
    lowered = text.lower()
    hits = sum(1 for keyword in keywords if keyword in lowered)
    return min(1.0, hits / max(3, len(keywords)))


class StubTriageProvider(ITriageProvider):
    """
    Keyword-overlap stand-in for an inference provider.

    Equal scores resolve in declaration order: billing, tech, shipping, other.
    """

    name = "stub"
    model = "heuristic"
    prompt_version = "v1"

    async def classify(self, text: str) -> ClassificationResult:
        scores: List[Tuple[str, float]] = [
            (category, score_by_keywords(text, keywords))
            for category, keywords in CATEGORY_KEYWORDS.items()
        ]
        scores.append((TicketCategory.OTHER, OTHER_SCORE))

        # max() keeps the first of equal scores
        category, confidence = max(scores, key=lambda pair: pair[1])
        return ClassificationResult(predicted_category=category, confidence=confidence)

    async def draft(
        self,
        text: str,
        candidates: List[CandidateDocument]
    ) -> DraftResult:
        lines = [DRAFT_GREETING]
        lines.extend(f"{i}. {doc.title} [{doc.id}]" for i, doc in enumerate(candidates, 1))
        lines.append(DRAFT_CLOSING)
        return DraftResult(
            draft_reply="\n".join(lines),
            cited_doc_ids=[doc.id for doc in candidates]
        )


class TriagePromptBuilder:
    """
    Builds prompts for ticket classification and reply drafting.

    All prompt text in one place; bump ``VERSION`` when it changes.
    """

    VERSION = "v1"

    CLASSIFY_SYSTEM_PROMPT = """You are a ticket classification system for a customer helpdesk.

Classify the support ticket into exactly one category:
- billing: payments, charges, refunds, invoices
- tech: errors, bugs, crashes, technical problems
- shipping: deliveries, shipments, tracking, couriers
- other: anything else

Respond ONLY in JSON format:
{
    "category": "billing",
    "confidence": 0.9
}"""

    DRAFT_SYSTEM_PROMPT = """You are a helpful customer support assistant.

Draft a short, professional reply to the customer using ONLY the knowledge-base
articles listed. Reference articles by their id in square brackets. Do not
invent articles.

Respond ONLY in JSON format:
{
    "draft_reply": "text",
    "cited_doc_ids": ["id1"]
}"""

    @classmethod
    def classify_messages(cls, text: str) -> List[dict]:
        return [
            {"role": "system", "content": cls.CLASSIFY_SYSTEM_PROMPT},
            {"role": "user", "content": f"Ticket:\n{text}\n\nClassify this ticket (respond with JSON only):"}
        ]

    @classmethod
    def draft_messages(cls, text: str, candidates: List[CandidateDocument]) -> List[dict]:
        if candidates:
            articles = "\n".join(f"- [{doc.id}] {doc.title}" for doc in candidates)
        else:
            articles = "(no articles available)"
        return [
            {"role": "system", "content": cls.DRAFT_SYSTEM_PROMPT},
            {"role": "user", "content": f"Articles:\n{articles}\n\nCustomer message:\n{text}\n\nDraft the reply (respond with JSON only):"}
        ]


def parse_json_content(content: str) -> dict:
    """Extract a JSON object from a completion, tolerating code fences."""
    text = content
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as e:
        raise LLMException(f"Failed to parse provider response: {e}") from e

    if not isinstance(data, dict):
        raise LLMException("Provider response is not a JSON object")
    return data


class LLMTriageProvider(ITriageProvider):
    """
    Inference-backed provider over an OpenAI-compatible API.

    Unknown categories map to ``other``; confidence is clamped to [0, 1];
    cited ids that were not offered as candidates are dropped.
    """

    name = "llm"
    prompt_version = TriagePromptBuilder.VERSION

    def __init__(
        self,
        llm_client: ILLMClient,
        temperature: float = 0.3,
        max_tokens: int = 800
    ):
        self._llm = llm_client
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._llm.model

    async def classify(self, text: str) -> ClassificationResult:
        response = await self._llm.chat_completion(
            messages=TriagePromptBuilder.classify_messages(text),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            operation="classify"
        )
        data = parse_json_content(response.content)

        category = str(data.get("category", TicketCategory.OTHER)).lower()
        if category not in TICKET_CATEGORIES:
            category = TicketCategory.OTHER

        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError) as e:
            raise LLMException(f"Invalid confidence in provider response: {e}") from e

        return ClassificationResult(
            predicted_category=category,
            confidence=min(1.0, max(0.0, confidence))
        )

    async def draft(
        self,
        text: str,
        candidates: List[CandidateDocument]
    ) -> DraftResult:
        response = await self._llm.chat_completion(
            messages=TriagePromptBuilder.draft_messages(text, candidates),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            operation="draft"
        )
        data = parse_json_content(response.content)

        reply = data.get("draft_reply")
        if not isinstance(reply, str) or not reply.strip():
            raise LLMException("Provider response has no draft_reply")

        offered = [doc.id for doc in candidates]
        cited = [str(doc_id) for doc_id in data.get("cited_doc_ids") or []]
        return DraftResult(
            draft_reply=reply,
            cited_doc_ids=[doc_id for doc_id in offered if doc_id in cited]
        )


def build_triage_provider(
    settings: Settings,
    llm_client: Optional[ILLMClient] = None
) -> ITriageProvider:
    """Select the provider named by ``settings.triage_provider``."""
    if settings.triage_provider == "stub":
        return StubTriageProvider()
    if settings.triage_provider == "llm":
        client = llm_client or OpenAILLMClient(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            model=settings.llm_model
        )
        return LLMTriageProvider(
            client,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens
        )
    raise ConfigurationException(f"Unknown triage provider: {settings.triage_provider}")
