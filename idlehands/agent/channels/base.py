"""
Channel Base — Abstract interface for messaging channels.

Every channel adapter (LINE, Mattermost, Slack, …) implements this
interface so the agent runtime can interact with any channel uniformly.

Design Principles
-----------------
* Channel-specific logic lives **only** inside the adapter subclass.
* A channel reaches the agent through the ``RuntimeHandle`` it was given
  at registration, never through module-level state.
* Inbound platform events are normalised into ``InboundMessage`` and handed
  to ``runtime.dispatch``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

if TYPE_CHECKING:
    from fastapi import APIRouter

    from idlehands.agent.agent_runner import TurnResult
    from idlehands.agent.channels.registry import PluginApi
    from idlehands.services.model_discovery import ModelClient

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Data objects
# ------------------------------------------------------------------

@dataclass
class InboundMessage:
    """Normalised inbound message from any channel."""

    channel_id: str               # Channel that received it ("line", "mattermost", …)
    sender_id: str                # Platform-specific user identifier
    target: str                   # Where the reply goes (chat, channel, user)
    text: str = ""
    account_id: Optional[str] = None
    is_direct: bool = False
    username: Optional[str] = None
    raw: Any = None               # Original platform event for edge cases


# Callback type: async def dispatch(msg: InboundMessage) -> TurnResult | None
DispatchCallback = Callable[[InboundMessage], Awaitable[Optional["TurnResult"]]]


@dataclass
class RuntimeHandle:
    """
    Reference to the active LLM backend connection.

    Built once by the registry; channels keep the reference they were given
    and only read from it.
    """

    endpoint: str = ""
    model: str = ""
    client: Optional["ModelClient"] = None
    dispatch_fn: Optional[DispatchCallback] = None

    async def dispatch(self, msg: InboundMessage) -> Optional["TurnResult"]:
        if self.dispatch_fn is None:
            logger.warning("[%s] No dispatcher attached, dropping message", msg.channel_id)
            return None
        return await self.dispatch_fn(msg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "model": self.model,
            "dispatch_attached": self.dispatch_fn is not None,
        }


@dataclass
class ChannelPlugin:
    """Manifest a channel plugin exports."""

    id: str
    name: str
    register: Callable[["PluginApi"], None]
    description: str = ""
    config_schema: Optional[Type[BaseModel]] = None

    def schema(self) -> Dict[str, Any]:
        """JSON schema of the plugin's config section (empty when none)."""
        if self.config_schema is None:
            return {"type": "object", "properties": {}}
        return self.config_schema.model_json_schema()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "description": self.description}


# ------------------------------------------------------------------
# Abstract base
# ------------------------------------------------------------------

class BaseChannel(ABC):
    """
    Abstract base for a messaging channel adapter.

    Subclasses must implement:
    * ``start()``  — Connect to the platform and begin listening.
    * ``stop()``   — Gracefully disconnect.
    * ``send_text()`` — Send a text message to a target.

    Optional overrides:
    * ``list_account_ids()`` / ``default_account_id()`` — multi-account
      channels. ``None`` means the channel does not define one.
    * ``notify_abort()`` — hard-stop notice when a turn is aborted.
    * ``dm_policy()`` — DM access policy name for this channel.
    """

    id: str = ""

    def __init__(self, channel_id: Optional[str] = None):
        if channel_id:
            self.id = channel_id
        if not self.id:
            raise ValueError(f"{self.__class__.__name__} has no channel id")
        self.runtime: Optional[RuntimeHandle] = None

    def set_runtime(self, runtime: RuntimeHandle) -> None:
        """Keep the registry-owned runtime handle on this instance."""
        self.runtime = runtime

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def start(self) -> None:
        """Connect and start polling / webhook listener."""

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect from the platform."""

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @abstractmethod
    async def send_text(self, target: str, text: str, *, account_id: Optional[str] = None) -> None:
        """Send a text message to a specific target."""

    async def notify_abort(self, target: str, message: str, *, account_id: Optional[str] = None) -> None:
        """Tell the target the turn was stopped. Default: plain text notice."""
        await self.send_text(target, f"Stopped: {message}", account_id=account_id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_account_ids(self, cfg: Dict[str, Any]) -> Optional[List[str]]:
        return None

    def default_account_id(self, cfg: Dict[str, Any]) -> Optional[str]:
        return None

    def dm_policy(self) -> Optional[str]:
        return None

    def router(self) -> Optional["APIRouter"]:
        """Webhook routes to mount on the host app (webhook channels only)."""
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def dispatch(self, msg: InboundMessage) -> Optional["TurnResult"]:
        """
        Forward a normalised inbound message to the host.
        Typically called by the adapter's internal event handler.
        """
        if self.runtime is None:
            logger.warning("[%s] No runtime injected, dropping message", self.id)
            return None
        return await self.runtime.dispatch(msg)

    def stats(self) -> Dict[str, Any]:
        return {"channel": self.id, "class": self.__class__.__name__}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id}>"
