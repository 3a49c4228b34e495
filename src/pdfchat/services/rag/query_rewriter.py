"""Query analysis: keyword extraction, complexity and best-effort rewriting.

Rewriting goes through the chat collaborator and its output is treated as
untrusted: anything that does not validate against ``RewriteResponse``
falls back to the original question with ``intent="unknown"``.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
import structlog

from pdfchat.llm import LLMClient, LLMClientError
from pdfchat.services.rag.types import Complexity, Intent, QueryAnalysis

logger = structlog.get_logger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do",
        "does", "did", "will", "would", "could", "should", "may", "might", "can", "what",
        "when", "where", "why", "how", "who", "which", "this", "that", "these", "those",
        "i", "you", "he", "she", "it", "we", "they",
    }
)

MAX_KEYWORDS = 10
COMPLEX_WORD_COUNT = 20
MODERATE_WORD_COUNT = 10

FALLBACK_CONFIDENCE = 0.5
ERROR_CONFIDENCE = 0.3

_ANALYTICAL_TERMS = re.compile(
    r"(analyze|compare|contrast|evaluate|explain|describe|summarize)", re.IGNORECASE
)
_PUNCTUATION = re.compile(r"[^\w\s]")

REWRITE_SYSTEM_PROMPT = "You rewrite user questions for better document retrieval."

REWRITE_PROMPT = """Rewrite the question below so it retrieves better passages from a PDF document.
Make it specific, keep the original intent, and extract the important keywords.

Question: "{question}"

Reply with JSON only, using exactly this structure:
{{
  "rewritten_query": "the improved question",
  "keywords": ["keyword1", "keyword2"],
  "intent": "factual|analytical|comparative|procedural|definitional",
  "confidence": 0.85
}}"""

VARIATIONS_SYSTEM_PROMPT = "You generate alternative phrasings of questions."

VARIATIONS_PROMPT = """Generate {count} different ways to ask the same question for document retrieval.
Use different wording and related terms but keep the meaning.

Question: "{question}"

Reply with a JSON array of strings only."""


class RewriteResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    rewritten_query: str = Field(min_length=1)
    keywords: list[str] = Field(default_factory=list)
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)


_VARIATIONS = TypeAdapter(list[str])


def extract_keywords(query: str) -> list[str]:
    words = _PUNCTUATION.sub(" ", query.lower()).split()
    return _normalize_keywords([word for word in words if len(word) > 2 and word not in STOP_WORDS])


def classify_complexity(query: str) -> Complexity:
    word_count = len(query.split())
    if (
        word_count > COMPLEX_WORD_COUNT
        or query.count("?") > 1
        or _ANALYTICAL_TERMS.search(query) is not None
    ):
        return "complex"
    if word_count > MODERATE_WORD_COUNT:
        return "moderate"
    return "simple"


def _normalize_keywords(keywords: list[str]) -> list[str]:
    normalized: list[str] = []
    for keyword in keywords:
        value = keyword.strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized[:MAX_KEYWORDS]


class QueryRewriter:
    def __init__(self, llm_client: LLMClient | None = None) -> None:
        self._llm_client = llm_client

    def analyze(self, question: str, *, rewrite: bool = True) -> QueryAnalysis:
        original = question.strip()
        if not original:
            raise ValueError("question must not be empty")

        if not rewrite:
            return self._heuristic(original, confidence=1.0)

        if self._llm_client is None:
            logger.info("query_rewrite_fallback", reason="llm_unavailable")
            return self._heuristic(original, confidence=FALLBACK_CONFIDENCE)

        try:
            chat = self._llm_client.complete(
                system=REWRITE_SYSTEM_PROMPT,
                prompt=REWRITE_PROMPT.format(question=original),
            )
        except LLMClientError as exc:
            logger.warning("query_rewrite_fallback", reason="llm_error", error=str(exc))
            return self._heuristic(original, confidence=ERROR_CONFIDENCE)

        try:
            parsed = RewriteResponse.model_validate_json(chat.answer.strip())
        except ValidationError as exc:
            logger.warning(
                "query_rewrite_fallback",
                reason="invalid_response",
                errors=exc.error_count(),
            )
            return self._heuristic(original, confidence=FALLBACK_CONFIDENCE)

        rewritten = parsed.rewritten_query.strip() or original
        keywords = _normalize_keywords(parsed.keywords) or extract_keywords(rewritten)
        analysis = QueryAnalysis(
            original_query=original,
            rewritten_query=rewritten,
            keywords=tuple(keywords),
            intent=parsed.intent,
            confidence=parsed.confidence,
            complexity=classify_complexity(rewritten),
        )
        logger.info(
            "query_rewritten",
            original=original,
            rewritten=rewritten,
            intent=analysis.intent,
            complexity=analysis.complexity,
        )
        return analysis

    def generate_variations(self, question: str, *, count: int = 3) -> list[str]:
        """Alternative phrasings of ``question``; ``[question]`` when none are available."""
        if self._llm_client is None:
            return [question]

        try:
            chat = self._llm_client.complete(
                system=VARIATIONS_SYSTEM_PROMPT,
                prompt=VARIATIONS_PROMPT.format(count=count, question=question),
            )
            variations = _VARIATIONS.validate_json(chat.answer.strip())
        except (LLMClientError, ValidationError) as exc:
            logger.warning("query_variations_fallback", error=str(exc))
            return [question]

        cleaned = [variation.strip() for variation in variations if variation.strip()]
        return cleaned[:count] or [question]

    @staticmethod
    def _heuristic(question: str, *, confidence: float) -> QueryAnalysis:
        return QueryAnalysis(
            original_query=question,
            rewritten_query=question,
            keywords=tuple(extract_keywords(question)),
            intent="unknown",
            confidence=confidence,
            complexity=classify_complexity(question),
        )
