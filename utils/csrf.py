import hmac
import time
import secrets
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger("backend.csrf")

TOKEN_EXPIRY = 3600  # seconds
MAX_TOKENS_PER_SESSION = 5
TOKEN_BYTES = 32


@dataclass
class _StoredToken:
    token: str
    expires: float
    used: bool = False


class CSRFProtection:
    """In-process CSRF token store.

    Tokens are bound to a session id, expire after an hour and are
    single-use. At most MAX_TOKENS_PER_SESSION live tokens are kept per
    session; issuing another evicts the one closest to expiry.
    """

    def __init__(self, token_expiry: int = TOKEN_EXPIRY, max_tokens_per_session: int = MAX_TOKENS_PER_SESSION):
        self.token_expiry = token_expiry
        self.max_tokens_per_session = max_tokens_per_session
        # session id -> token -> stored token
        self._sessions: Dict[str, Dict[str, _StoredToken]] = {}

    def generate_token(self, session_id: str = "anonymous") -> str:
        self._cleanup_session(session_id, time.time())

        tokens = self._sessions.setdefault(session_id, {})
        if len(tokens) >= self.max_tokens_per_session:
            oldest = min(tokens.values(), key=lambda t: t.expires)
            del tokens[oldest.token]

        token = secrets.token_hex(TOKEN_BYTES)
        tokens[token] = _StoredToken(token=token, expires=time.time() + self.token_expiry)
        logger.debug("Token issued for session %s", session_id)
        return token

    def validate_token(self, token: Optional[str], session_id: str = "anonymous") -> bool:
        if not token or not isinstance(token, str) or len(token) != TOKEN_BYTES * 2:
            logger.info("Rejected token: malformed")
            return False

        tokens = self._sessions.get(session_id) or {}
        stored = tokens.get(token)
        if stored is None:
            logger.info("Rejected token: unknown for session %s", session_id)
            return False

        if time.time() > stored.expires:
            del tokens[token]
            logger.info("Rejected token: expired")
            return False

        if stored.used:
            logger.warning("Rejected token: replay for session %s", session_id)
            return False

        stored.used = True
        return hmac.compare_digest(token, stored.token)

    def revoke_session_tokens(self, session_id: str) -> int:
        count = len(self._sessions.pop(session_id, {}))
        logger.info("%s tokens revoked for session %s", count, session_id)
        return count

    def revoke_all(self) -> None:
        self._sessions.clear()

    def _cleanup_session(self, session_id: str, now: float) -> int:
        tokens = self._sessions.get(session_id)
        if not tokens:
            return 0
        stale = [t for t, v in tokens.items() if now > v.expires or v.used]
        for token in stale:
            del tokens[token]
        if not tokens:
            del self._sessions[session_id]
        return len(stale)

    def cleanup(self) -> int:
        now = time.time()
        removed = sum(self._cleanup_session(sid, now) for sid in list(self._sessions))
        if removed:
            logger.debug("Cleanup: %s tokens removed", removed)
        return removed

    def __len__(self) -> int:
        return sum(len(tokens) for tokens in self._sessions.values())


csrf_protection = CSRFProtection()
