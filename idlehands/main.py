"""
idlehands Service — Agent host plus the webhook endpoints its channels need.

Usage:
    uvicorn idlehands.main:app --host 127.0.0.1 --port 8787

Channels are enabled by having a section under ``IDLEHANDS_CHANNELS``, e.g.
``{"line": {"channel_secret": "...", "channel_access_token": "..."}}``.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Response

from idlehands.agent.channels import line_channel, mattermost_channel
from idlehands.agent.channels.base import ChannelPlugin
from idlehands.agent.host import AgentHost
from idlehands.agent.structured_logging import configure_logging
from idlehands.config import settings

logger = logging.getLogger(__name__)

AVAILABLE_CHANNEL_PLUGINS: List[ChannelPlugin] = [
    line_channel.plugin,
    mattermost_channel.plugin,
]


def enabled_channel_plugins() -> List[ChannelPlugin]:
    """Plugins that have a config section, in declaration order."""
    return [p for p in AVAILABLE_CHANNEL_PLUGINS if p.id in settings.channels]


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(logging.DEBUG if settings.debug else logging.INFO, json_output=settings.log_json)

    # ── Startup ───────────────────────────────────────────────
    host = AgentHost(settings)
    app.state.host = host
    if await host.start(enabled_channel_plugins(), interactive=sys.stderr.isatty()):
        for channel in host.registry.channels():
            router = channel.router()
            if router is not None:
                app.include_router(router)
                logger.info("[HOST] Mounted webhook routes for %s", channel.id)
    else:
        logger.warning("[HOST] No runtime configured, serving health endpoint only")

    yield

    # ── Shutdown ──────────────────────────────────────────────
    await host.stop()


app = FastAPI(title="idlehands", lifespan=lifespan)


@app.get("/health")
async def health():
    host: AgentHost = app.state.host
    return {"status": "ok" if host.started else "unconfigured", **host.stats()}


@app.get("/")
async def root():
    return Response(content="idlehands", media_type="text/plain")


def run() -> None:
    import uvicorn

    uvicorn.run("idlehands.main:app", host=settings.server_host, port=settings.server_port)
