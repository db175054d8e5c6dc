"""Google OAuth2 provider and the in-process token lifecycle manager."""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from .config import Settings
from .errors import AuthRequired, ProviderError, RefreshFailed
from .models import Credential
from .token_store import TokenStore

if TYPE_CHECKING:
    from .metrics import ServerMetrics

logger = logging.getLogger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _to_credential(creds: Credentials, fallback_scopes: Optional[set[str]] = None) -> Credential:
    """Convert google-auth credentials into our persisted Credential."""
    if creds.expiry is not None:
        expires_at = creds.expiry.replace(tzinfo=timezone.utc)
    else:
        # Google always reports expires_in; this only guards odd providers.
        expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    scopes = creds.granted_scopes or creds.scopes or fallback_scopes or []
    return Credential(
        access_token=creds.token,
        refresh_token=creds.refresh_token or "",
        expires_at=expires_at,
        scopes=set(scopes),
    )


class GoogleOAuthProvider:
    """Talks to Google's authorization and token endpoints."""

    def __init__(self, settings: Settings):
        self.client_id = settings.gmail_client_id
        self.client_secret = settings.gmail_client_secret
        self.redirect_uri = settings.redirect_url()
        self.scopes = list(settings.gmail_scopes)
        # Google may report granted scopes in a different order than requested.
        os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

    def _client_config(self) -> dict:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def start_authorization(self, state: str) -> tuple[str, Flow]:
        """Build the consent URL for ``state``.

        Returns the URL and the flow object that must be kept until the
        matching callback arrives (it carries the PKCE verifier).
        """
        flow = Flow.from_client_config(
            self._client_config(),
            scopes=self.scopes,
            redirect_uri=self.redirect_uri,
        )
        auth_url, _ = flow.authorization_url(
            state=state,
            access_type="offline",
            prompt="consent",
        )
        return auth_url, flow

    async def exchange_code(self, flow: Flow, code: str) -> Credential:
        """Exchange an authorization code for a Credential."""
        try:
            await asyncio.to_thread(flow.fetch_token, code=code)
        except (OAuth2Error, requests.RequestException, ValueError, Warning) as e:
            raise ProviderError(f"Failed to exchange authorization code: {e}") from e
        return _to_credential(flow.credentials, set(self.scopes))

    async def refresh(self, credential: Credential) -> Credential:
        """Use the refresh token to obtain a new access token."""
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=sorted(credential.scopes) or None,
        )
        try:
            await asyncio.to_thread(creds.refresh, Request())
        except (RefreshError, TransportError) as e:
            raise RefreshFailed(f"Failed to refresh token: {e}") from e
        return _to_credential(creds, credential.scopes)


class TokenManager:
    """Hands out valid access tokens, refreshing at most once at a time.

    Callers arriving while a refresh is in flight await the same refresh and
    observe the same outcome. A refreshed credential is persisted before any
    caller receives it; a failed refresh leaves the current credential as is.
    """

    def __init__(
        self,
        store: TokenStore,
        provider: GoogleOAuthProvider,
        expiry_margin_seconds: float = 60.0,
        refresh_timeout_seconds: float = 15.0,
        metrics: Optional["ServerMetrics"] = None,
    ):
        self.store = store
        self.provider = provider
        self.expiry_margin_seconds = expiry_margin_seconds
        self.refresh_timeout_seconds = refresh_timeout_seconds
        self.metrics = metrics
        self._current: Optional[Credential] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[Credential]:
        return self._current

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    def is_authenticated(self) -> bool:
        return self._current is not None

    def load(self) -> Optional[Credential]:
        """Load the persisted credential, if any. CorruptState propagates."""
        credential = self.store.load()
        if credential is not None:
            logger.info("Loaded existing credentials from token file")
            self._set_current(credential)
        return credential

    def install(self, credential: Credential) -> None:
        """Persist and activate a credential obtained from a completed login."""
        self.store.save(credential)
        self._set_current(credential)
        logger.info("Installed new credentials")

    async def get_valid_token(self) -> str:
        credential = self._current
        if credential is None:
            raise AuthRequired("Not authenticated. Visit /login to authorize Gmail access.")
        if not credential.expires_within(self.expiry_margin_seconds):
            return credential.access_token
        refreshed = await self._refresh_single_flight()
        return refreshed.access_token

    async def force_refresh(self) -> Credential:
        """Refresh regardless of expiry, joining any refresh already running."""
        if self._current is None:
            raise AuthRequired("Not authenticated. Visit /login to authorize Gmail access.")
        return await self._refresh_single_flight()

    async def _refresh_single_flight(self) -> Credential:
        if self._refresh_task is None:
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh())
            self._refresh_task.add_done_callback(self._refresh_done)
        # Shield so a cancelled caller does not cancel the refresh for everyone else.
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _refresh(self) -> Credential:
        credential = self._current
        if credential is None:
            raise AuthRequired("Not authenticated. Visit /login to authorize Gmail access.")
        if not credential.can_refresh:
            self._record_failure()
            raise RefreshFailed("Credential has no refresh token. Visit /login to re-authenticate.")

        logger.info("Refreshing expired access token")
        try:
            refreshed = await asyncio.wait_for(
                self.provider.refresh(credential), timeout=self.refresh_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self._record_failure()
            logger.warning(f"Token refresh timed out after {self.refresh_timeout_seconds}s")
            raise RefreshFailed(
                f"Token refresh timed out after {self.refresh_timeout_seconds}s"
            ) from e
        except RefreshFailed as e:
            self._record_failure()
            logger.warning(f"Failed to refresh credentials: {e}")
            raise

        if not refreshed.refresh_token:
            refreshed = refreshed.model_copy(update={"refresh_token": credential.refresh_token})

        if self._current is not credential:
            # A login completed while the provider call was running; it wins.
            logger.info("Discarding refreshed token superseded by a new login")
            return self._current

        # Write before release: waiters only see a token that is on disk.
        await asyncio.to_thread(self.store.save, refreshed)
        if self._current is not credential:
            # install() ran during the write and may have been overwritten on disk.
            await asyncio.to_thread(self.store.save, self._current)
            return self._current
        self._set_current(refreshed)
        if self.metrics:
            self.metrics.token_refreshes.labels(outcome="success").inc()
        logger.info(f"Access token refreshed, expires at {refreshed.expires_at.isoformat()}")
        return refreshed

    def _set_current(self, credential: Credential) -> None:
        self._current = credential
        if self.metrics:
            self.metrics.observe_credential(credential)

    def _record_failure(self) -> None:
        if self.metrics:
            self.metrics.token_refreshes.labels(outcome="failure").inc()
