"""
LINE Channel Adapter — LINE Messaging API in webhook mode.

Inbound events arrive as signed webhook POSTs; every body must carry a
valid ``X-Line-Signature`` (base64 HMAC-SHA256 keyed by the channel
secret). Replies go out through the push API.

The channel refuses to start without both a channel secret and a channel
access token.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

import httpx
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from idlehands.agent.channels.base import BaseChannel, ChannelPlugin, InboundMessage
from idlehands.agent.channels.webhook_auth import require_webhook_credentials, verify_hmac_signature

logger = logging.getLogger(__name__)

LINE_API = "https://api.line.me"
MAX_TEXT_LEN = 5000


class LineConfig(BaseModel):
    channel_secret: str = ""
    channel_access_token: str = ""
    webhook_path: str = "/webhooks/line"
    dm_policy: Optional[str] = None
    api_base: str = LINE_API


class LineChannel(BaseChannel):
    """
    LINE channel adapter.

    The host app must mount ``router()`` so LINE can reach the webhook.
    """

    id = "line"

    def __init__(self, config: LineConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self.config = config
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self._sent = 0

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        require_webhook_credentials("LINE", {
            "channel secret": self.config.channel_secret,
            "channel access token": self.config.channel_access_token,
        })
        self._http = httpx.AsyncClient(
            base_url=self.config.api_base,
            headers={"Authorization": f"Bearer {self.config.channel_access_token}"},
            timeout=30.0,
            transport=self._transport,
        )
        logger.info("[LINE] Channel started (webhook %s)", self.config.webhook_path)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._http:
            await self._http.aclose()
            self._http = None
        logger.info("[LINE] Channel stopped")

    def dm_policy(self) -> Optional[str]:
        return self.config.dm_policy

    # ── Inbound ────────────────────────────────────────────────

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        return verify_hmac_signature(self.config.channel_secret, body, signature)

    def router(self) -> APIRouter:
        router = APIRouter()

        @router.post(self.config.webhook_path)
        async def inbound_webhook(request: Request):
            body = await request.body()
            if not self.verify_signature(body, request.headers.get("X-Line-Signature")):
                logger.warning("[LINE] Rejected webhook with bad signature")
                return Response(status_code=401)
            try:
                payload = json.loads(body)
            except ValueError:
                return Response(status_code=400)
            task = asyncio.create_task(self.process_payload(payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return Response(status_code=200)

        return router

    def normalize_event(self, event: Dict[str, Any]) -> Optional[InboundMessage]:
        """Turn a LINE text message event into an InboundMessage (others → None)."""
        if event.get("type") != "message":
            return None
        message = event.get("message") or {}
        if message.get("type") != "text":
            return None

        source = event.get("source") or {}
        source_type = source.get("type", "user")
        user_id = source.get("userId", "")
        target = source.get("groupId") or source.get("roomId") or user_id
        if not target:
            return None

        return InboundMessage(
            channel_id=self.id,
            sender_id=user_id,
            target=target,
            text=message.get("text", ""),
            is_direct=source_type == "user",
            raw=event,
        )

    async def process_payload(self, payload: Dict[str, Any]) -> List[Any]:
        """Dispatch every text event in a webhook payload, in order."""
        results = []
        for event in payload.get("events", []):
            msg = self.normalize_event(event)
            if msg is None:
                continue
            try:
                results.append(await self.dispatch(msg))
            except Exception:
                logger.exception("[LINE] Error handling event from %s", msg.sender_id)
        return results

    # ── Outbound ───────────────────────────────────────────────

    async def send_text(self, target: str, text: str, *, account_id: Optional[str] = None) -> None:
        if not self._http:
            logger.warning("[LINE] send_text before start, dropping message to %s", target)
            return
        resp = await self._http.post("/v2/bot/message/push", json={
            "to": target,
            "messages": [{"type": "text", "text": text[:MAX_TEXT_LEN]}],
        })
        resp.raise_for_status()
        self._sent += 1

    def stats(self) -> Dict[str, Any]:
        return {**super().stats(), "connected": self._http is not None, "messages_sent": self._sent}


def register(api) -> None:
    api.register_channel(plugin=LineChannel(LineConfig.model_validate(api.plugin_config())))


plugin = ChannelPlugin(
    id="line",
    name="LINE",
    description="LINE Messaging API (webhook mode)",
    config_schema=LineConfig,
    register=register,
)
