from datetime import datetime, timezone

from pdfchat.sessions import SessionCache, WebSession


class FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _session(session_id: str) -> WebSession:
    return WebSession(
        session_id=session_id,
        url="https://example.com",
        document_id="web-1",
        job_id="web_page:abc",
        created_at=datetime(2026, 10, 19, tzinfo=timezone.utc),
    )


def test_sessions_expire_after_ttl() -> None:
    timer = FakeTimer()
    cache = SessionCache(ttl_seconds=30 * 60, timer=timer)
    cache.put(_session("s1"))

    timer.now = 29 * 60
    assert cache.get("s1") == _session("s1")

    timer.now = 31 * 60
    assert cache.get("s1") is None


def test_expire_reports_removed_sessions() -> None:
    timer = FakeTimer()
    cache = SessionCache(ttl_seconds=60, timer=timer)
    cache.put(_session("s1"))
    cache.put(_session("s2"))
    timer.now = 30
    cache.put(_session("s3"))

    timer.now = 61
    assert cache.expire() == 2
    assert len(cache) == 1


def test_cache_is_bounded() -> None:
    cache = SessionCache(max_sessions=2, ttl_seconds=60, timer=FakeTimer())
    for session_id in ("s1", "s2", "s3"):
        cache.put(_session(session_id))

    assert len(cache) == 2
    assert cache.get("s1") is None
    assert cache.get("s3") is not None


def test_delete_removes_session() -> None:
    cache = SessionCache(timer=FakeTimer())
    cache.put(_session("s1"))

    cache.delete("s1")
    cache.delete("s1")

    assert cache.get("s1") is None
