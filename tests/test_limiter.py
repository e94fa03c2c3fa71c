import time

import pytest
from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage

from utils.limiter import RATE_LIMITS, RateLimiter


@pytest.fixture
def limiter():
    return RateLimiter(storage=MemoryStorage())


def test_resolve_endpoint_uses_longest_prefix(limiter):
    assert limiter.resolve_endpoint("/api/forms") == "/api/forms"
    assert limiter.resolve_endpoint("/api/forms/12/export") == "/api/forms"
    assert limiter.resolve_endpoint("/api/auth/login") == "/api/auth/login"
    assert limiter.resolve_endpoint("/api/formsX") == "/api/formsX"


def test_submissions_allow_five_per_minute(limiter):
    results = [limiter.check_limit("1.1.1.1", "/api/submissions") for _ in range(6)]
    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert results[0].remaining == 4
    assert results[4].remaining == 0
    assert results[5].message.startswith("Rate limit exceeded. Try again in")
    assert results[5].retry_after > 0


def test_login_window_is_fifteen_minutes(limiter):
    for _ in range(3):
        assert limiter.check_limit("2.2.2.2", "/api/auth/login").allowed
    blocked = limiter.check_limit("2.2.2.2", "/api/auth/login")
    assert not blocked.allowed
    assert 14 * 60 < blocked.reset_time - time.time() <= 15 * 60 + 1


def test_limits_are_per_ip_and_endpoint(limiter):
    for _ in range(5):
        limiter.check_limit("3.3.3.3", "/api/submissions")
    assert not limiter.check_limit("3.3.3.3", "/api/submissions").allowed
    assert limiter.check_limit("4.4.4.4", "/api/submissions").allowed
    assert limiter.check_limit("3.3.3.3", "/api/forms").allowed


def test_default_limit_for_unconfigured_endpoint(limiter):
    result = limiter.check_limit("5.5.5.5", "/api/dashboard/stats")
    assert result.allowed
    assert result.limit == 100


def test_custom_limits():
    limiter = RateLimiter(storage=MemoryStorage(), limits={"/x": RateLimitItemPerMinute(1)})
    assert limiter.check_limit("ip", "/x/1").allowed
    assert not limiter.check_limit("ip", "/x/2").allowed


def test_blocked_ip_is_refused_everywhere(limiter):
    limiter.block_ip("6.6.6.6", duration=60)
    assert limiter.is_blocked("6.6.6.6")
    result = limiter.check_limit("6.6.6.6", "/api/dashboard")
    assert not result.allowed
    assert result.remaining == 0

    limiter.unblock_ip("6.6.6.6")
    assert not limiter.is_blocked("6.6.6.6")
    assert limiter.check_limit("6.6.6.6", "/api/dashboard").allowed


def test_cleanup_removes_expired_blocks_and_windows(limiter):
    limiter.check_limit("7.7.7.7", "/api/forms")
    limiter.block_ip("8.8.8.8", duration=-1)
    limiter._windows["stale"] = time.time() - 5

    removed = limiter.cleanup()

    assert removed == 2
    assert "stale" not in limiter._windows
    assert not limiter.is_blocked("8.8.8.8")
    assert limiter.get_stats()["activeRequests"] == 1


def test_stats_and_reset(limiter):
    limiter.check_limit("9.9.9.9", "/api/forms")
    limiter.block_ip("9.9.9.10")
    stats = limiter.get_stats()
    assert stats == {"totalEntries": 2, "blockedIPs": 1, "activeRequests": 1}

    limiter.reset()
    assert limiter.get_stats() == {"totalEntries": 0, "blockedIPs": 0, "activeRequests": 0}
    assert limiter.check_limit("9.9.9.9", "/api/forms").remaining == RATE_LIMITS["/api/forms"].amount - 1
