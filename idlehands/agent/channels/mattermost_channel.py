"""
Mattermost Channel — Open-source Slack alternative.

Runs in outgoing-webhook mode: Mattermost POSTs matching posts to the
webhook route with the hook's token, replies go out through the REST API
(``POST /api/v4/posts``) as the bot user.

Multiple accounts (bots / servers) are configured under
``channels.mattermost.accounts``; top-level keys apply to every account.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qs

import httpx
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from idlehands.agent.channels.accounts import AccountListHelpers
from idlehands.agent.channels.base import BaseChannel, ChannelPlugin, InboundMessage
from idlehands.agent.channels.webhook_auth import require_webhook_credentials, verify_token

logger = logging.getLogger(__name__)

DEDUPE_SIZE = 500

accounts = AccountListHelpers("mattermost")


class MattermostAccountConfig(BaseModel):
    server_url: str = ""
    bot_token: str = ""
    webhook_token: str = ""
    enabled: bool = True


class MattermostConfig(MattermostAccountConfig):
    accounts: Dict[str, MattermostAccountConfig] = {}
    webhook_path: str = "/webhooks/mattermost"
    dm_policy: Optional[str] = None


class MattermostChannel(BaseChannel):
    """Mattermost messaging channel via outgoing webhooks + REST API."""

    id = "mattermost"

    def __init__(self, cfg: Dict[str, Any], *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self.cfg = cfg
        self.config = MattermostConfig.model_validate(((cfg or {}).get("channels") or {}).get(self.id) or {})
        self.accounts: Dict[str, MattermostAccountConfig] = {
            account_id: MattermostAccountConfig.model_validate(accounts.account_config(cfg, account_id))
            for account_id in accounts.list_account_ids(cfg)
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self._msg_counter = 0

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        for account_id, account in self.enabled_accounts():
            require_webhook_credentials(f"Mattermost ({account_id})", {
                "server URL": account.server_url,
                "bot token": account.bot_token,
                "webhook token": account.webhook_token,
            })
        self._http = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        logger.info("[MATTERMOST] Channel started (%d account(s))", len(self.enabled_accounts()))

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._http:
            await self._http.aclose()
            self._http = None
        logger.info("[MATTERMOST] Channel stopped")

    def enabled_accounts(self) -> List[Tuple[str, MattermostAccountConfig]]:
        return [(k, v) for k, v in self.accounts.items() if v.enabled]

    def list_account_ids(self, cfg: Dict[str, Any]) -> Optional[List[str]]:
        return accounts.list_account_ids(cfg)

    def default_account_id(self, cfg: Dict[str, Any]) -> Optional[str]:
        return accounts.resolve_default_account_id(cfg)

    def dm_policy(self) -> Optional[str]:
        return self.config.dm_policy

    # ── Inbound ────────────────────────────────────────────────

    def account_for_token(self, token: Optional[str]) -> Optional[str]:
        """Account whose webhook token matches, compared in constant time."""
        match = None
        for account_id, account in self.enabled_accounts():
            if verify_token(account.webhook_token, token) and match is None:
                match = account_id
        return match

    def router(self) -> APIRouter:
        router = APIRouter()

        @router.post(self.config.webhook_path)
        async def inbound_webhook(request: Request):
            body = await request.body()
            payload = _parse_body(body, request.headers.get("content-type", ""))
            if payload is None:
                return Response(status_code=400)
            account_id = self.account_for_token(payload.get("token"))
            if account_id is None:
                logger.warning("[MATTERMOST] Rejected webhook with bad token")
                return Response(status_code=401)
            task = asyncio.create_task(self.handle_webhook(payload, account_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return Response(status_code=200)

        return router

    def _is_duplicate(self, post_id: str) -> bool:
        if not post_id:
            return False
        if post_id in self._seen:
            return True
        self._seen[post_id] = None
        while len(self._seen) > DEDUPE_SIZE:
            self._seen.popitem(last=False)
        return False

    def normalize(self, payload: Dict[str, Any], account_id: str) -> Optional[InboundMessage]:
        text = payload.get("text") or ""
        trigger = payload.get("trigger_word") or ""
        if trigger and text.startswith(trigger):
            text = text[len(trigger):]
        text = text.strip()
        if not text:
            return None
        return InboundMessage(
            channel_id=self.id,
            sender_id=payload.get("user_id", ""),
            target=payload.get("channel_id", ""),
            text=text,
            account_id=account_id,
            username=payload.get("user_name"),
            raw=payload,
        )

    async def handle_webhook(self, payload: Dict[str, Any], account_id: str):
        if self._is_duplicate(payload.get("post_id", "")):
            logger.debug("[MATTERMOST] Skipping duplicate post %s", payload.get("post_id"))
            return None
        msg = self.normalize(payload, account_id)
        if msg is None:
            return None
        try:
            return await self.dispatch(msg)
        except Exception:
            logger.exception("[MATTERMOST] Error handling post from %s", msg.sender_id)
            return None

    # ── Outbound ───────────────────────────────────────────────

    async def send_text(self, target: str, text: str, *, account_id: Optional[str] = None) -> None:
        if not self._http:
            logger.warning("[MATTERMOST] send_text before start, dropping message to %s", target)
            return
        account = self.accounts.get(account_id or self.default_account_id(self.cfg))
        if account is None:
            raise ValueError(f"Unknown Mattermost account: {account_id}")
        resp = await self._http.post(
            f"{account.server_url.rstrip('/')}/api/v4/posts",
            headers={"Authorization": f"Bearer {account.bot_token}"},
            json={"channel_id": target, "message": text},
        )
        resp.raise_for_status()
        self._msg_counter += 1

    def stats(self) -> Dict[str, Any]:
        return {
            **super().stats(),
            "connected": self._http is not None,
            "accounts": [k for k, _ in self.enabled_accounts()],
            "messages_sent": self._msg_counter,
        }


def _parse_body(body: bytes, content_type: str) -> Optional[Dict[str, Any]]:
    """Outgoing webhooks send form-encoded bodies unless configured for JSON."""
    try:
        if "application/json" in content_type:
            data = json.loads(body or b"{}")
            return data if isinstance(data, dict) else None
        return {k: v[0] for k, v in parse_qs(body.decode("utf-8")).items()}
    except ValueError:
        return None


def register(api) -> None:
    api.register_channel(plugin=MattermostChannel(api.config))


plugin = ChannelPlugin(
    id="mattermost",
    name="Mattermost",
    description="Mattermost outgoing webhooks + REST API",
    config_schema=MattermostConfig,
    register=register,
)
