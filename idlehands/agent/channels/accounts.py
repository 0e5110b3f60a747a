"""
Accounts — Which account a channel runs as, and the routing key for a message.

Single-account channels run as ``DEFAULT_ACCOUNT_ID``. Multi-account
channels list their accounts under ``cfg["channels"][<channel>]["accounts"]``.

Usage:
    from idlehands.agent.channels.accounts import SessionKey, resolve_default_account_id

    account_id = resolve_default_account_id(channel, cfg)
    key = SessionKey.for_message("mattermost", account_id)
    str(key)  # "mattermost:default"
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"


@dataclass(frozen=True)
class SessionKey:
    """Routing destination: one (channel, account) pair."""
    channel_id: str
    account_id: str = DEFAULT_ACCOUNT_ID

    @classmethod
    def for_message(cls, channel_id: str, account_id: Optional[str] = None) -> "SessionKey":
        return cls(channel_id=channel_id, account_id=(account_id or "").strip() or DEFAULT_ACCOUNT_ID)

    @classmethod
    def parse(cls, value: str) -> "SessionKey":
        channel_id, _, account_id = value.partition(":")
        return cls.for_message(channel_id, account_id)

    def __str__(self) -> str:
        return f"{self.channel_id}:{self.account_id}"


def resolve_default_account_id(
    plugin: Any,
    cfg: Dict[str, Any],
    account_ids: Optional[Sequence[str]] = None,
) -> str:
    """
    Pick the account a channel operates as.

    Order: the channel's own ``default_account_id(cfg)``, then the first of
    ``account_ids`` (or of ``plugin.list_account_ids(cfg)`` when not given),
    then ``DEFAULT_ACCOUNT_ID``.
    """
    if account_ids is None:
        lister = getattr(plugin, "list_account_ids", None)
        account_ids = (lister(cfg) if lister else None) or []

    default_fn = getattr(plugin, "default_account_id", None)
    if default_fn is not None:
        declared = default_fn(cfg)
        if declared is not None:
            return declared

    if account_ids:
        return account_ids[0]
    return DEFAULT_ACCOUNT_ID


class AccountListHelpers:
    """Account listing for a channel whose accounts live in config."""

    def __init__(self, channel_key: str):
        self.channel_key = channel_key

    def list_configured_account_ids(self, cfg: Dict[str, Any]) -> List[str]:
        channel = ((cfg or {}).get("channels") or {}).get(self.channel_key)
        accounts = channel.get("accounts") if isinstance(channel, dict) else None
        if not isinstance(accounts, dict):
            return []
        return [k for k in accounts if k]

    def list_account_ids(self, cfg: Dict[str, Any]) -> List[str]:
        ids = self.list_configured_account_ids(cfg)
        if not ids:
            return [DEFAULT_ACCOUNT_ID]
        return sorted(ids)

    def resolve_default_account_id(self, cfg: Dict[str, Any]) -> str:
        ids = self.list_account_ids(cfg)
        if DEFAULT_ACCOUNT_ID in ids:
            return DEFAULT_ACCOUNT_ID
        return ids[0] if ids else DEFAULT_ACCOUNT_ID

    def account_config(self, cfg: Dict[str, Any], account_id: str) -> Dict[str, Any]:
        """Merged config for one account: channel-level keys overlaid by the account's own."""
        channel = ((cfg or {}).get("channels") or {}).get(self.channel_key) or {}
        base = {k: v for k, v in channel.items() if k != "accounts"}
        accounts = channel.get("accounts") or {}
        return {**base, **(accounts.get(account_id) or {})}


def format_pairing_approve_hint(channel_id: str) -> str:
    return (
        f"Approve via: idlehands pairing list {channel_id} / "
        f"idlehands pairing approve {channel_id} <code>"
    )
