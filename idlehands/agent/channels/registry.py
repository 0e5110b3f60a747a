"""
Channel Plugin Registry — Registers channel plugins and manages their adapters.

The host uses the registry to:
* Run every plugin's ``register(api)`` exactly once, in declaration order.
* Hand each plugin the registry-owned ``RuntimeHandle``.
* Start / stop all registered channels as a group.
* Enumerate plugins and channels for admin / debug output.

Usage:
    from idlehands.agent.channels.registry import ChannelPluginRegistry

    registry = ChannelPluginRegistry(RuntimeHandle(endpoint=..., model=...))
    registry.register_all([line_plugin, mattermost_plugin])
    await registry.start_channels()
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from idlehands.agent.channels.base import BaseChannel, ChannelPlugin, RuntimeHandle
from idlehands.agent.channels.webhook_auth import ChannelSecurityError

logger = logging.getLogger(__name__)


class DuplicatePluginError(Exception):
    """Two plugins (or two channels) claim the same id."""


class PluginRegistrationError(Exception):
    """A plugin's register() failed or broke the registration contract."""


@dataclass
class PluginInfo:
    """Information about a registered channel plugin."""
    id: str
    name: str
    description: str = ""
    registered_at: float = 0.0
    channels: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.registered_at == 0.0:
            self.registered_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "channels": list(self.channels),
        }


class PluginApi:
    """Capability object passed to a plugin's ``register``."""

    def __init__(self, registry: "ChannelPluginRegistry", plugin: ChannelPlugin):
        self._registry = registry
        self._plugin = plugin
        self.id = plugin.id
        self.logger = logging.getLogger(f"{__name__}.{plugin.id}")

    @property
    def runtime(self) -> RuntimeHandle:
        return self._registry.runtime

    @property
    def config(self) -> Dict[str, Any]:
        """Whole host config (``{"channels": {...}}``)."""
        return self._registry.config

    def plugin_config(self) -> Dict[str, Any]:
        """This plugin's section of ``config["channels"]``."""
        return dict((self.config.get("channels") or {}).get(self.id) or {})

    def register_channel(self, *, plugin: BaseChannel) -> None:
        """Add a channel adapter owned by this plugin."""
        self._registry._add_channel(self._plugin.id, plugin)


class ChannelPluginRegistry:
    """Owns the runtime handle, the plugin manifests and the channel adapters."""

    def __init__(self, runtime: Optional[RuntimeHandle] = None, config: Optional[Dict[str, Any]] = None):
        self.runtime = runtime or RuntimeHandle()
        self.config = config or {}
        self._plugins: Dict[str, PluginInfo] = {}
        self._channels: Dict[str, BaseChannel] = {}
        self._registered = False
        self._started: List[str] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_all(self, plugins: Sequence[ChannelPlugin]) -> None:
        """
        Run one registration pass over ``plugins`` in the given order.

        Plugin ids are checked for collisions before any ``register`` runs.
        A second pass on the same registry raises PluginRegistrationError.
        """
        if self._registered:
            raise PluginRegistrationError("Channel plugins are already registered")
        self._registered = True

        seen: Dict[str, str] = {}
        for plugin in plugins:
            if plugin.id in seen:
                raise DuplicatePluginError(
                    f'Duplicate channel plugin id "{plugin.id}" '
                    f"({seen[plugin.id]} and {plugin.name})"
                )
            seen[plugin.id] = plugin.name

        for plugin in plugins:
            self._register_one(plugin)

        logger.info(
            "[REGISTRY] Registered %d plugin(s), %d channel(s)",
            len(self._plugins), len(self._channels),
        )

    def _register_one(self, plugin: ChannelPlugin) -> None:
        if inspect.iscoroutinefunction(plugin.register):
            raise PluginRegistrationError(
                f"Plugin {plugin.id}: register() must be synchronous; defer async setup to start()"
            )

        self._plugins[plugin.id] = PluginInfo(
            id=plugin.id, name=plugin.name, description=plugin.description,
        )
        api = PluginApi(self, plugin)
        try:
            result = plugin.register(api)
        except (DuplicatePluginError, ChannelSecurityError):
            raise
        except Exception as exc:
            raise PluginRegistrationError(f"Plugin {plugin.id}: register() failed: {exc}") from exc

        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            raise PluginRegistrationError(
                f"Plugin {plugin.id}: register() returned an awaitable; it must not perform async I/O"
            )
        logger.info("[REGISTRY] Registered plugin: %s (%s)", plugin.id, plugin.name)

    def _add_channel(self, plugin_id: str, channel: BaseChannel) -> None:
        if channel.id in self._channels:
            raise DuplicatePluginError(f'Duplicate channel id "{channel.id}" (plugin {plugin_id})')
        channel.set_runtime(self.runtime)
        self._channels[channel.id] = channel
        self._plugins[plugin_id].channels.append(channel.id)
        logger.info("[REGISTRY] Registered channel: %s", channel.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_channels(self) -> None:
        """
        Start all registered channels in registration order.

        A ChannelSecurityError aborts startup. Other failures are logged and
        that channel stays stopped.
        """
        for ch in self._channels.values():
            try:
                await ch.start()
            except ChannelSecurityError:
                logger.error("[REGISTRY] Refusing to start %s: insecure configuration", ch.id)
                raise
            except Exception:
                logger.exception("[REGISTRY] Failed to start %s", ch.id)
                continue
            self._started.append(ch.id)
            logger.info("[REGISTRY] Started channel: %s", ch.id)

    async def stop_channels(self) -> None:
        """Stop all started channels gracefully."""
        for channel_id in reversed(self._started):
            ch = self._channels[channel_id]
            try:
                await ch.stop()
                logger.info("[REGISTRY] Stopped channel: %s", ch.id)
            except Exception:
                logger.exception("[REGISTRY] Failed to stop %s", ch.id)
        self._started = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_channel(self, channel_id: str) -> Optional[BaseChannel]:
        return self._channels.get(channel_id)

    def channels(self) -> List[BaseChannel]:
        return list(self._channels.values())

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self._plugins.values()]

    def is_started(self, channel_id: str) -> bool:
        return channel_id in self._started

    def stats(self) -> Dict[str, Any]:
        """Return status summary (for admin/debug)."""
        return {
            "plugins": len(self._plugins),
            "channels": [
                {**ch.stats(), "started": ch.id in self._started}
                for ch in self._channels.values()
            ],
            "runtime": self.runtime.to_dict(),
        }
