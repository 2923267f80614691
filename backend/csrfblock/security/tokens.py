"""
CSRF token generation and session-bound storage.
Tokens are short random hex strings, not signed credentials.
"""
import hashlib
import logging
import os
import time
from typing import Callable, MutableMapping, Optional

logger = logging.getLogger(__name__)

TokenGenerator = Callable[[], str]


class HexTokenGenerator:
    """
    Produces tokens of a fixed length from a SHA-1 digest of
    random bytes, the process id and the current time.
    """

    def __init__(self, length: int = 16):
        if not 1 <= length <= 40:
            raise ValueError("Token length must be between 1 and 40")
        self.length = length

    def __call__(self) -> str:
        seed = os.urandom(32) + str(os.getpid()).encode() + str(time.time_ns()).encode()
        return hashlib.sha1(seed).hexdigest()[: self.length]


class SessionTokenStore:
    """
    Reads and writes the token slot of a session mapping.
    Persistence, locking and expiry belong to the session layer.
    """

    def __init__(self, session_key: str):
        self.session_key = session_key

    def get(self, session: MutableMapping) -> Optional[str]:
        return session.get(self.session_key) or None

    def set(self, session: MutableMapping, token: str) -> None:
        session[self.session_key] = token

    def clear(self, session: MutableMapping) -> None:
        session.pop(self.session_key, None)

    def ensure(self, session: MutableMapping, generate: TokenGenerator) -> str:
        """Return the session token, issuing a new one if the slot is empty."""
        token = self.get(session)
        if token is None:
            token = generate()
            self.set(session, token)
            logger.debug("Issued new CSRF token into session slot %r", self.session_key)
        return token
