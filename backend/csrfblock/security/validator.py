"""
Request-side CSRF check.
POST requests must present the session token, in the configured
header or as a form/query parameter.
"""
import enum
import hmac
import logging
from typing import MutableMapping, Optional

from starlette.requests import Request

from csrfblock.security.tokens import SessionTokenStore

logger = logging.getLogger(__name__)


class ValidationResult(enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def tokens_match(presented: Optional[str], token: str) -> bool:
    """Constant-time exact comparison; a missing value never matches."""
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), token.encode("utf-8"))


class RequestValidator:
    """
    Compares the presented token with the one stored in the session.

    header_key is the transport form of the header name (lowercase),
    computed once by the caller.
    """

    def __init__(
        self,
        store: SessionTokenStore,
        parameter_name: str,
        header_key: str,
        onetime: bool = False,
    ):
        self.store = store
        self.parameter_name = parameter_name
        self.header_key = header_key
        self.onetime = onetime

    async def validate(self, request: Request, session: MutableMapping) -> ValidationResult:
        if request.method.upper() != "POST":
            return ValidationResult.ACCEPTED

        token = self.store.get(session)
        if token is None:
            return ValidationResult.REJECTED

        found = tokens_match(request.headers.get(self.header_key), token)
        if not found:
            found = tokens_match(await self._lookup_parameter(request), token)

        if not found:
            return ValidationResult.REJECTED

        if self.onetime:
            self.store.clear(session)
            logger.debug("Consumed one-time CSRF token")
        return ValidationResult.ACCEPTED

    async def _lookup_parameter(self, request: Request) -> Optional[str]:
        # Body parameters win over the query string
        form = await request.form()
        values = [v for v in form.getlist(self.parameter_name) if isinstance(v, str)]
        if not values:
            values = request.query_params.getlist(self.parameter_name)
        return values[-1] if values else None
