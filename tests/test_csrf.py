import time

import pytest

from utils.csrf import CSRFProtection


@pytest.fixture
def csrf():
    return CSRFProtection()


def test_token_is_64_hex_chars(csrf):
    token = csrf.generate_token("s1")
    assert len(token) == 64
    int(token, 16)


def test_token_is_single_use(csrf):
    token = csrf.generate_token("s1")
    assert csrf.validate_token(token, "s1")
    assert not csrf.validate_token(token, "s1")


def test_token_is_bound_to_session(csrf):
    token = csrf.generate_token("s1")
    assert not csrf.validate_token(token, "s2")
    assert csrf.validate_token(token, "s1")


@pytest.mark.parametrize("bad", [None, "", "abc", "z" * 64, "0" * 63])
def test_malformed_or_unknown_tokens_rejected(csrf, bad):
    csrf.generate_token("s1")
    assert not csrf.validate_token(bad, "s1")


def test_expired_token_rejected_and_dropped(csrf):
    short = CSRFProtection(token_expiry=-1)
    token = short.generate_token("s1")
    assert not short.validate_token(token, "s1")
    assert len(short) == 0


def test_session_keeps_at_most_five_tokens(csrf):
    tokens = [csrf.generate_token("s1") for _ in range(6)]
    assert len(csrf) == 5
    # the first issued token expires soonest and is evicted
    assert not csrf.validate_token(tokens[0], "s1")
    assert all(csrf.validate_token(t, "s1") for t in tokens[1:])


def test_revoke_session_tokens(csrf):
    a = csrf.generate_token("s1")
    csrf.generate_token("s1")
    b = csrf.generate_token("s2")

    assert csrf.revoke_session_tokens("s1") == 2
    assert not csrf.validate_token(a, "s1")
    assert csrf.validate_token(b, "s2")


def test_cleanup_removes_used_and_expired(csrf):
    used = csrf.generate_token("s1")
    csrf.validate_token(used, "s1")
    expiring = csrf.generate_token("s2")
    csrf._sessions["s2"][expiring].expires = time.time() - 1
    keep = csrf.generate_token("s3")

    assert csrf.cleanup() == 2
    assert len(csrf) == 1
    assert csrf.validate_token(keep, "s3")


def test_sessions_with_colons_are_isolated(csrf):
    # IPv6 session ids share prefixes once joined with ":"
    short = csrf.generate_token("ip:2001:db8::1")
    longer = csrf.generate_token("ip:2001:db8::1:5")

    assert csrf.revoke_session_tokens("ip:2001:db8::1") == 1
    assert not csrf.validate_token(short, "ip:2001:db8::1")
    assert csrf.validate_token(longer, "ip:2001:db8::1:5")


def test_eviction_only_counts_own_session(csrf):
    other = csrf.generate_token("ip:2001:db8::1:5")
    for _ in range(5):
        csrf.generate_token("ip:2001:db8::1")
    assert csrf.validate_token(other, "ip:2001:db8::1:5")
