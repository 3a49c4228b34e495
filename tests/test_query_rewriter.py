import json

import pytest

from pdfchat.llm import ChatResult, LLMClientError
from pdfchat.services.rag.query_rewriter import (
    QueryRewriter,
    classify_complexity,
    extract_keywords,
)


class FakeLLMClient:
    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    def complete(self, *, system: str, prompt: str) -> ChatResult:
        del system
        self.prompts.append(prompt)
        return ChatResult(answer=self.answer, model="fake-model", used_fallback=False)

    def generate_answer(self, *, question: str, context: str) -> ChatResult:
        raise AssertionError("not used by the rewriter")


class UnreachableLLMClient:
    def complete(self, *, system: str, prompt: str) -> ChatResult:
        raise LLMClientError("connection refused")

    def generate_answer(self, *, question: str, context: str) -> ChatResult:
        raise LLMClientError("connection refused")


def test_extract_keywords_drops_stop_words_and_short_tokens() -> None:
    assert extract_keywords("What are the key findings in chapter 3?") == [
        "key",
        "findings",
        "chapter",
    ]


def test_extract_keywords_keeps_order_and_limits_to_ten() -> None:
    question = " ".join(f"term{index}" for index in range(15))

    keywords = extract_keywords(question.upper())

    assert keywords == [f"term{index}" for index in range(10)]


def test_extract_keywords_removes_repeats_in_first_seen_order() -> None:
    assert extract_keywords("Revenue revenue REVENUE growth and revenue margins?") == [
        "revenue",
        "growth",
        "margins",
    ]


def test_extract_keywords_repeats_do_not_use_up_the_limit() -> None:
    question = "alpha " * 12 + " ".join(f"term{index}" for index in range(12))

    keywords = extract_keywords(question)

    assert keywords == ["alpha"] + [f"term{index}" for index in range(9)]


def test_analyze_fallback_keywords_are_unique() -> None:
    analysis = QueryRewriter(None).analyze("Compare revenue in 2023 with revenue in 2024")

    assert analysis.keywords == ("compare", "revenue", "2023", "2024")


@pytest.mark.parametrize(
    ("question", "expected"),
    [
        ("What is the revenue?", "simple"),
        ("What was the total revenue reported by the company in the final quarter?", "moderate"),
        ("Compare the two approaches", "complex"),
        ("Who wrote it? When was it published?", "complex"),
        (" ".join(["word"] * 21), "complex"),
        ("Please SUMMARIZE section two", "complex"),
    ],
)
def test_classify_complexity(question: str, expected: str) -> None:
    assert classify_complexity(question) == expected


def test_analyze_falls_back_when_llm_is_unreachable() -> None:
    question = "What are the key findings in chapter 3?"

    analysis = QueryRewriter(UnreachableLLMClient()).analyze(question)

    assert analysis.rewritten_query == analysis.original_query == question
    assert analysis.intent == "unknown"
    assert analysis.confidence == 0.3
    assert {"key", "findings", "chapter"} <= set(analysis.keywords)


def test_analyze_without_llm_uses_heuristics() -> None:
    analysis = QueryRewriter(None).analyze("  Describe the methodology  ")

    assert analysis.rewritten_query == "Describe the methodology"
    assert analysis.intent == "unknown"
    assert analysis.confidence == 0.5
    assert analysis.complexity == "complex"
    assert analysis.keywords == ("describe", "methodology")


@pytest.mark.parametrize(
    "answer",
    [
        "Sure! Here is a better query: revenue",
        json.dumps({"rewritten_query": "x", "keywords": [], "intent": "poetic", "confidence": 0.9}),
        json.dumps({"rewritten_query": "x", "keywords": [], "intent": "factual", "confidence": 7}),
        json.dumps({"keywords": ["a"], "intent": "factual", "confidence": 0.9}),
        json.dumps(["not", "an", "object"]),
    ],
)
def test_analyze_rejects_invalid_llm_output(answer: str) -> None:
    question = "What is the revenue?"

    analysis = QueryRewriter(FakeLLMClient(answer)).analyze(question)

    assert analysis.rewritten_query == question
    assert analysis.intent == "unknown"
    assert analysis.confidence == 0.5


def test_analyze_uses_valid_llm_rewrite() -> None:
    answer = json.dumps(
        {
            "rewritten_query": "Compare revenue growth between 2023 and 2024",
            "keywords": ["Revenue", "growth", "revenue", " 2024 "],
            "intent": "comparative",
            "confidence": 0.85,
            "reasoning": "made it specific",
        }
    )
    client = FakeLLMClient(answer)

    analysis = QueryRewriter(client).analyze("how did revenue change?")

    assert analysis.original_query == "how did revenue change?"
    assert analysis.rewritten_query == "Compare revenue growth between 2023 and 2024"
    assert analysis.keywords == ("revenue", "growth", "2024")
    assert analysis.intent == "comparative"
    assert analysis.confidence == 0.85
    assert analysis.complexity == "complex"
    assert "how did revenue change?" in client.prompts[0]


def test_analyze_with_rewriting_disabled_skips_llm() -> None:
    client = FakeLLMClient("{}")

    analysis = QueryRewriter(client).analyze("What is the revenue?", rewrite=False)

    assert client.prompts == []
    assert analysis.confidence == 1.0
    assert analysis.keywords == ("revenue",)


def test_analyze_rejects_empty_question() -> None:
    with pytest.raises(ValueError):
        QueryRewriter(None).analyze("   ")


def test_generate_variations() -> None:
    question = "What is the revenue?"
    answer = json.dumps(["How much revenue?", "  ", "Total income?", "Sales figures?", "Extra?"])

    assert QueryRewriter(FakeLLMClient(answer)).generate_variations(question) == [
        "How much revenue?",
        "Total income?",
        "Sales figures?",
    ]
    assert QueryRewriter(None).generate_variations(question) == [question]
    assert QueryRewriter(UnreachableLLMClient()).generate_variations(question) == [question]
    assert QueryRewriter(FakeLLMClient("three questions")).generate_variations(question) == [
        question
    ]
