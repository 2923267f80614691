"""
CSRF blocking middleware for Starlette / FastAPI.

Output filter: HTML responses get a hidden token input in every POST form
(and optionally a <meta> tag), with no change to the application.
Input check: every POST must send the session token back, in the
X-CSRF-Token header or as a form parameter. Otherwise 403.

Needs SessionMiddleware installed outside of this middleware.
"""
import logging
from typing import Any, List, MutableMapping, Optional

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from csrfblock.core.config import CSRFBlockSettings, settings as default_settings
from csrfblock.core.exceptions import ConfigurationError
from csrfblock.security.injector import FormInjector, is_html_content_type
from csrfblock.security.tokens import HexTokenGenerator, SessionTokenStore, TokenGenerator
from csrfblock.security.validator import RequestValidator, ValidationResult

logger = logging.getLogger(__name__)

BLOCKED_BODY = b"CSRF detected"


async def default_blocked(scope: Scope, receive: Receive, send: Send) -> None:
    response = Response(BLOCKED_BODY, status_code=403, headers={"Content-Type": "text/plain"})
    await response(scope, receive, send)


class ReceiveRecorder:
    """
    Receive channel that keeps every message it hands out,
    so a body read during validation can be replayed downstream.
    """

    def __init__(self, receive: Receive):
        self._receive = receive
        self._messages: List[Message] = []

    async def __call__(self) -> Message:
        message = await self._receive()
        self._messages.append(message)
        return message

    def replay(self) -> Receive:
        # The recorder keeps no reference to replayed messages
        pending, self._messages = self._messages, []

        async def receive() -> Message:
            if pending:
                return pending.pop(0)
            return await self._receive()

        return receive


class CSRFBlockMiddleware:
    """
    Pure ASGI middleware, usable with any ASGI application.

    Example:
        >>> app = FastAPI()
        >>> app.add_middleware(CSRFBlockMiddleware, add_meta=True)
        >>> app.add_middleware(SessionMiddleware, secret_key="...")
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Optional[CSRFBlockSettings] = None,
        blocked: Optional[ASGIApp] = None,
        token_generator: Optional[TokenGenerator] = None,
        **options: Any,
    ) -> None:
        unknown = sorted(set(options) - set(CSRFBlockSettings.model_fields))
        if unknown:
            raise TypeError("Unknown CSRFBlockMiddleware option(s): " + ", ".join(unknown))
        if options:
            settings = CSRFBlockSettings(**{**(settings or default_settings).model_dump(), **options})
        self.app = app
        self.settings = settings or default_settings
        self.blocked = blocked or default_blocked
        self.token_generator = token_generator or HexTokenGenerator(self.settings.token_length)

        # ASGI header names are lowercase
        self.header_key = self.settings.header_name.lower()
        self.store = SessionTokenStore(self.settings.session_key)
        self.validator = RequestValidator(
            self.store,
            parameter_name=self.settings.parameter_name,
            header_key=self.header_key,
            onetime=self.settings.onetime,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if "session" not in scope:
            raise ConfigurationError("CSRFBlockMiddleware needs SessionMiddleware installed")
        session = scope["session"]

        recorder = ReceiveRecorder(receive)
        request = Request(scope, recorder)
        try:
            result = await self.validator.validate(request, session)
        finally:
            await request.close()
        receive = recorder.replay()

        if result is ValidationResult.REJECTED:
            logger.info("Blocked %s %s: CSRF token missing or mismatched", request.method, request.url.path)
            await self.blocked(scope, receive, send)
            return

        await self.app(scope, receive, self._filtered_send(request, session, send))

    def _filtered_send(self, request: Request, session: MutableMapping, send: Send) -> Send:
        injector: Optional[FormInjector] = None

        async def send_with_token(message: Message) -> None:
            nonlocal injector
            if message["type"] == "http.response.start":
                injector = self._injector_for(message, request, session)
            elif message["type"] == "http.response.body" and injector is not None:
                body = injector.feed(message.get("body", b""))
                if not message.get("more_body", False):
                    body += injector.finish()
                message = {**message, "body": body}
            await send(message)

        return send_with_token

    def _injector_for(self, message: Message, request: Request, session: MutableMapping) -> Optional[FormInjector]:
        headers = MutableHeaders(scope=message)
        if not is_html_content_type(headers.get("content-type")):
            return None
        if headers.get("content-encoding", "identity").lower() != "identity":
            logger.debug("Not rewriting encoded HTML response for %s", request.url.path)
            return None

        # Resolved before the headers reach the session layer so a new
        # token is saved with them.
        token = self.store.ensure(session, self.token_generator)
        if "content-length" in headers:
            del headers["content-length"]

        host = request.headers.get("host")
        if host is None:
            server = request.scope.get("server")
            host = server[0] if server else ""
        return FormInjector(
            token,
            parameter_name=self.settings.parameter_name,
            host=host,
            meta_name=self.settings.meta_name if self.settings.add_meta else None,
        )
