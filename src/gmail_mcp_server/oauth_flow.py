"""Browser-driven OAuth login: /login -> provider consent -> /callback."""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .auth import GoogleOAuthProvider, TokenManager
from .errors import InvalidState, ProviderError
from .models import Credential

logger = logging.getLogger(__name__)

PENDING_LOGIN_TTL_SECONDS = 600


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass
class PendingLogin:
    """A login started by /login and waiting for its callback."""

    state: str
    flow: Any
    created_at: float = field(default_factory=time.monotonic)


class OAuthFlowController:
    """Correlates callbacks with the logins that issued them.

    Each /login gets its own anti-forgery state token; concurrent logins are
    independent and a state value can be redeemed exactly once.
    """

    def __init__(
        self,
        provider: GoogleOAuthProvider,
        token_manager: TokenManager,
        pending_ttl_seconds: float = PENDING_LOGIN_TTL_SECONDS,
    ):
        self.provider = provider
        self.token_manager = token_manager
        self.pending_ttl_seconds = pending_ttl_seconds
        self.state = FlowState.AUTHENTICATED if token_manager.is_authenticated() else FlowState.IDLE
        self.last_error: Optional[str] = None
        self._pending: dict[str, PendingLogin] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def begin_login(self) -> str:
        """Start a login and return the provider consent URL."""
        self._purge_expired()
        state = secrets.token_urlsafe(32)
        while state in self._pending:
            state = secrets.token_urlsafe(32)
        auth_url, flow = self.provider.start_authorization(state)
        self._pending[state] = PendingLogin(state=state, flow=flow)
        self.state = FlowState.AWAITING_CALLBACK
        logger.info(f"Started OAuth login ({len(self._pending)} pending)")
        return auth_url

    async def complete_login(
        self,
        state: Optional[str],
        code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Credential:
        """Validate the callback and install the resulting credential.

        Raises InvalidState for unknown, replayed or expired state values
        without touching the token manager, and ProviderError when the
        provider declined or the code exchange failed.
        """
        self._purge_expired()
        pending = self._pending.pop(state, None) if state else None
        if pending is None:
            logger.warning("Rejected OAuth callback with unknown state")
            raise InvalidState("OAuth state is missing, unknown or already used. Start again at /login.")

        if error:
            self._fail(f"Authorization was declined: {error}")
            raise ProviderError(f"Authorization was declined: {error}", provider_error=error)
        if not code:
            self._fail("Callback did not include an authorization code")
            raise ProviderError("Callback did not include an authorization code")

        try:
            credential = await self.provider.exchange_code(pending.flow, code)
        except ProviderError as e:
            self._fail(str(e))
            raise

        self.token_manager.install(credential)
        self.state = FlowState.AUTHENTICATED
        self.last_error = None
        logger.info("OAuth login completed")
        return credential

    def _fail(self, message: str) -> None:
        self.state = FlowState.FAILED
        self.last_error = message
        logger.error(f"OAuth login failed: {message}")
        # Allow retry straight away.
        self.state = FlowState.AWAITING_CALLBACK if self._pending else FlowState.IDLE

    def _purge_expired(self) -> None:
        cutoff = time.monotonic() - self.pending_ttl_seconds
        expired = [s for s, p in self._pending.items() if p.created_at < cutoff]
        for s in expired:
            del self._pending[s]
        if expired:
            logger.info(f"Discarded {len(expired)} expired OAuth login(s)")
