import pytest

from pdfchat.config import get_settings


def test_defaults_match_pipeline_constants(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RAG_CHUNK_SIZE",
        "RAG_CHUNK_OVERLAP",
        "WORKER_CONCURRENCY",
        "WORKER_RATE_LIMIT_MAX",
        "JOB_MAX_ATTEMPTS",
        "RETRIEVAL_MAX_RESULTS",
        "RETRIEVAL_MIN_SCORE",
        "WEB_SESSION_TTL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.rag_chunk_size == 1000
    assert settings.rag_chunk_overlap == 200
    assert settings.worker_concurrency == 4
    assert settings.worker_rate_limit_max == 10
    assert settings.job_max_attempts == 3
    assert settings.retrieval_max_results == 5
    assert settings.retrieval_min_score == 0.7
    assert settings.web_session_ttl_seconds == 1800


def test_env_overrides_are_parsed_and_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_CONCURRENCY", "0")
    monkeypatch.setenv("JOB_RETRY_BASE_SECONDS", "2.5")
    monkeypatch.setenv("LLM_ENABLED", "off")
    monkeypatch.setenv("EMBED_PROVIDER", " Hashing ")

    settings = get_settings()

    assert settings.worker_concurrency == 1
    assert settings.job_retry_base_seconds == 2.5
    assert settings.llm_enabled is False
    assert settings.embed_provider == "hashing"


def test_settings_are_cached_until_cleared(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_ID", "first")
    first = get_settings()
    monkeypatch.setenv("WORKER_ID", "second")

    assert get_settings() is first

    get_settings.cache_clear()
    assert get_settings().worker_id == "second"
