"""HTTP server hosting the OAuth routes, metrics and both MCP transports.

Exposes:
- Index page at /
- OAuth login at /login and /callback, forced refresh at /refresh
- Health check at /health and Prometheus metrics at /metrics
- Streamable HTTP MCP endpoint at /mcp
- MCP SSE endpoint at /sse with its companion POST at /message
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from pydantic import ValidationError
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response

from .auth import GoogleOAuthProvider, TokenManager
from .config import Settings, get_settings
from .errors import GmailMcpError, InvalidState, ProviderError
from .gmail_client import GmailClient
from .metrics import ServerMetrics
from .oauth_flow import FlowState, OAuthFlowController
from .pages import error_page, index_page, success_page
from .sessions import SERVER_VERSION, SessionRouter
from .token_store import TokenStore
from .tools import SERVER_INSTRUCTIONS, ToolContext, registry
from .transports import TransportAdapters

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    *,
    token_manager: Optional[TokenManager] = None,
    gmail_client: Optional[GmailClient] = None,
    oauth_provider: Optional[GoogleOAuthProvider] = None,
    metrics: Optional[ServerMetrics] = None,
) -> FastAPI:
    """Wire the components together and build the FastAPI application.

    Collaborators can be injected for tests; by default they are built from
    ``settings``.
    """
    metrics = metrics or ServerMetrics()
    provider = oauth_provider or GoogleOAuthProvider(settings)
    if token_manager is None:
        token_manager = TokenManager(
            TokenStore(settings.token_path()),
            provider,
            expiry_margin_seconds=settings.token_expiry_margin_seconds,
            refresh_timeout_seconds=settings.token_refresh_timeout_seconds,
            metrics=metrics,
        )
    gmail = gmail_client or GmailClient(token_manager, timeout_seconds=settings.gmail_api_timeout_seconds)
    context = ToolContext(
        gmail=gmail,
        attachment_size_limit=settings.attachment_size_limit_bytes,
        download_dir=settings.download_dir,
    )
    router = SessionRouter(
        registry,
        context,
        tool_timeout_seconds=settings.tool_call_timeout_seconds,
        idle_timeout_seconds=settings.session_idle_timeout_seconds,
        metrics=metrics,
        instructions=SERVER_INSTRUCTIONS,
    )
    oauth = OAuthFlowController(provider, token_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load the persisted credential and run the idle-session reaper."""
        logger.info("Starting Gmail MCP Server...")
        # CorruptState and TokenIoError are fatal: refuse to start on a bad token file.
        if token_manager.current is None and token_manager.load() is None:
            logger.info(f"No stored credentials. Visit {settings.login_route} to authorize Gmail access.")
        if token_manager.is_authenticated():
            oauth.state = FlowState.AUTHENTICATED
        router.start(settings.session_reap_interval_seconds)
        yield
        logger.info("Shutting down Gmail MCP Server...")
        await router.stop()

    app = FastAPI(
        title="Gmail MCP Server",
        description="MCP server exposing Gmail tools over streamable HTTP and SSE",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.token_manager = token_manager
    app.state.oauth = oauth
    app.state.router = router

    # ========================================================================
    # Browser routes
    # ========================================================================

    @app.get(settings.root_route, response_class=HTMLResponse)
    async def index():
        routes = [
            ("GET", settings.login_route, "start Google login"),
            ("GET", settings.callback_route, "OAuth redirect target"),
            ("GET", settings.refresh_route, "force a token refresh"),
            ("GET", settings.health_route, "liveness check"),
            ("GET", settings.metrics_route, "Prometheus metrics"),
            ("POST", settings.http_stream_route, "MCP streamable HTTP"),
            ("GET", settings.sse_route(), "MCP SSE stream"),
            ("POST", settings.sse_post_route(), "MCP SSE messages"),
        ]
        return index_page(token_manager.is_authenticated(), settings.login_route, routes)

    @app.get(settings.login_route)
    async def login():
        """Redirect the browser to Google's consent screen."""
        auth_url = oauth.begin_login()
        return RedirectResponse(auth_url, status_code=302)

    @app.get(settings.callback_route, response_class=HTMLResponse)
    async def callback(
        state: Optional[str] = None,
        code: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Complete the login started by /login."""
        try:
            await oauth.complete_login(state, code=code, error=error)
        except InvalidState as e:
            return HTMLResponse(error_page(e.message, settings.login_route), status_code=400)
        except ProviderError as e:
            # A failed code exchange is an upstream failure; anything else is a bad callback.
            status = 502 if code and not error else 400
            return HTMLResponse(error_page(e.message, settings.login_route), status_code=status)
        except GmailMcpError as e:
            logger.error(f"Failed to store credentials: {e}")
            return HTMLResponse(error_page(e.message, settings.login_route), status_code=500)
        return success_page()

    @app.get(settings.refresh_route)
    async def refresh():
        """Force a token refresh through the single-flight path."""
        try:
            credential = await token_manager.force_refresh()
        except GmailMcpError as e:
            return JSONResponse({"status": "error", "message": e.message}, status_code=500)
        return {"status": "success", "expires_at": credential.expires_at.isoformat()}

    # ========================================================================
    # Health and metrics
    # ========================================================================

    @app.get(settings.health_route, response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get(settings.metrics_route)
    async def prometheus_metrics():
        body, content_type = metrics.render()
        return Response(content=body, media_type=content_type)

    # ========================================================================
    # MCP transports
    # ========================================================================

    TransportAdapters(router, settings).mount(app)
    return app


# ============================================================================
# Main
# ============================================================================


def main():
    """Run the server."""
    import uvicorn

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = create_app(settings)
    logger.info(f"Token file: {settings.token_path()}")
    logger.info(f"Listening on http://{settings.host}:{settings.port}")
    logger.info(f"  - Login: {settings.login_route} (callback {settings.callback_route}, refresh {settings.refresh_route})")
    logger.info(f"  - Health: {settings.health_route}, metrics: {settings.metrics_route}")
    logger.info(f"  - MCP streamable HTTP: {settings.http_stream_route}")
    logger.info(f"  - MCP SSE: {settings.sse_route()} (messages at {settings.sse_post_route()})")

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
