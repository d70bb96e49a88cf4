"""ResQ dispatch server.

Streamable-HTTP MCP server exposing the dispatch tools, plus plain HTTP
routes for the polling clients. Every request acts as the user named in
the ``X-Resq-User`` header (user ID or email). Unless
``RESQ_REQUIRE_ACTOR_HEADER`` is set, requests without the header act as
the signed-in session user (dev mode).

Run locally::

    uv run resq-server

Or with uvicorn::

    uv run uvicorn resq.server.server:app --host 0.0.0.0 --port 8000
"""

import asyncio
import contextlib
import logging
import os

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from resq.accounts.auth import ActorContext, get_current_user, set_current_user
from resq.accounts.service import resolve_user, session_user
from resq.core.config import get_config
from resq.dispatch.errors import NotFoundError
from resq.dispatch.repositories import UserRepository
from resq.server import tools
from resq.store.records import RecordStore
from resq.sync.sweep import availability_sweep_loop
from resq.sync.views import fetch_view

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging: module-level so it runs on import (uvicorn reimports for the app)
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# Silence Azure SDK HTTP-level noise (request/response headers)
logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.cosmos._cosmos_http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.identity").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()

CONFIG = get_config()
ACTOR_HEADER = "X-Resq-User"
REQUIRE_ACTOR_HEADER = os.getenv("RESQ_REQUIRE_ACTOR_HEADER", "").lower() in ("1", "true", "yes")
MAX_POLL_WAIT = 30.0

mcp = FastMCP(CONFIG.service_name, stateless_http=True)

if not REQUIRE_ACTOR_HEADER:
    logger.warning("RESQ_REQUIRE_ACTOR_HEADER not set; falling back to session user (dev mode)")


async def resolve_actor(identity: str | None) -> ActorContext | None:
    """Resolve the acting user from a header value, or the session in dev mode."""
    async with RecordStore() as store:
        if identity:
            user = await resolve_user(store, identity.strip())
        elif REQUIRE_ACTOR_HEADER:
            user = None
        else:
            user = await session_user(store)
    return ActorContext.from_user(user) if user else None


class _ActorMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        set_current_user(await resolve_actor(request.headers.get(ACTOR_HEADER)))
        return await call_next(request)


# Register dispatch tools
mcp.tool()(tools.submit_report)
mcp.tool()(tools.assign_responder)
mcp.tool()(tools.accept_assignment)
mcp.tool()(tools.decline_assignment)
mcp.tool()(tools.advance_assignment)

# Register view tools
mcp.tool()(tools.get_my_view)
mcp.tool()(tools.get_dashboard)
mcp.tool()(tools.list_responders)
mcp.tool()(tools.list_reports)

# Register account tools
mcp.tool()(tools.update_my_status)
mcp.tool()(tools.verify_user)
mcp.tool()(tools.check_consistency)


# ---------------------------------------------------------------------------
# Custom routes
# ---------------------------------------------------------------------------


@mcp.custom_route("/poll", methods=["GET"])
async def poll(request: Request) -> JSONResponse:
    """Return the caller's role view.

    With ``?since=<revision>`` the request waits (up to ``wait`` seconds,
    default the poll interval) for a change past that revision before
    answering. Backends without change notification just wait it out.
    """
    try:
        actor = get_current_user()
    except RuntimeError:
        return JSONResponse({"error": f"Unknown or missing {ACTOR_HEADER}"}, status_code=401)

    try:
        since = request.query_params.get("since")
        wait = min(float(request.query_params.get("wait", CONFIG.poll_interval)), MAX_POLL_WAIT)
        since_revision = int(since) if since else None
    except ValueError:
        return JSONResponse({"error": "since and wait must be numbers"}, status_code=400)

    async with RecordStore() as store:
        if since_revision is not None:
            await store.wait_for_change(since_revision, wait)
        revision = store.revision
        try:
            user = await UserRepository(store).require(actor.user_id)
        except NotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        view = await fetch_view(store, user)

    return JSONResponse({"revision": revision, "view": view.model_dump(mode="json")})


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        {
            "status": "ok",
            "service": "resq",
            "version": os.getenv("BUILD_VERSION", "dev"),
        }
    )


# ---------------------------------------------------------------------------
# ASGI App assembly
# ---------------------------------------------------------------------------

app = mcp.streamable_http_app()
app.add_middleware(_ActorMiddleware)

_mcp_lifespan = app.router.lifespan_context


@contextlib.asynccontextmanager
async def _lifespan(app):
    """Run the MCP session manager and the availability sweep together."""
    sweep = asyncio.create_task(availability_sweep_loop())
    try:
        async with _mcp_lifespan(app) as state:
            yield state
    finally:
        sweep.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep


app.router.lifespan_context = _lifespan


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the ResQ server with uvicorn."""
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Starting ResQ server on %s:%d", host, port)
    uvicorn.run(
        "resq.server.server:app",
        host=host,
        port=port,
        log_level="info",
    )
