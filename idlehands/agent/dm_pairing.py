"""
DM Pairing — Pairing code system for unknown senders.

When an unknown user sends a DM on a channel with the ``pairing`` policy,
they receive a pairing code. The owner approves the code from the CLI to
grant access.

Usage:
    from idlehands.agent.dm_pairing import DMPolicy, PairingManager

    mgr = PairingManager(DMPolicy.PAIRING)
    code = mgr.create_pairing("line", "U456")
    mgr.approve_pairing("line", code.code)
    assert mgr.is_paired("line", "U456")
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class DMPolicy(str, Enum):
    OPEN = "open"           # Anyone can DM
    PAIRING = "pairing"     # Require pairing code
    ALLOWLIST = "allowlist"  # Only pre-approved users
    DISABLED = "disabled"    # No DMs allowed


@dataclass
class PairingCode:
    """A DM pairing code."""
    code: str
    channel_id: str
    user_id: str
    created_at: float
    expires_at: float
    status: str = "pending"  # pending, approved, rejected
    resolved_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_pending(self, now: float) -> bool:
        return self.status == "pending" and not self.is_expired(now)

    def to_dict(self, now: float) -> Dict[str, Any]:
        return {
            "code": self.code,
            "channel": self.channel_id,
            "user_id": self.user_id,
            "status": "expired" if self.status == "pending" and self.is_expired(now) else self.status,
            "age_seconds": round(now - self.created_at, 1),
        }


class PairingManager:
    """
    Manages DM pairing codes and access policies.

    1. Unknown user sends a DM
    2. System generates a pairing code
    3. Owner approves/rejects the code
    4. User is added to the paired list on approval
    """

    def __init__(
        self,
        default_policy: DMPolicy = DMPolicy.OPEN,
        *,
        ttl_hours: float = 24,
        clock: Callable[[], float] = time.time,
    ):
        self._codes: Dict[str, PairingCode] = {}   # "channel:CODE" → PairingCode
        self._paired: Dict[str, Set[str]] = {}     # channel → user ids
        self._policies: Dict[str, DMPolicy] = {}   # channel → policy
        self._default_policy = DMPolicy(default_policy)
        self.ttl_hours = ttl_hours
        self._clock = clock

    def set_policy(self, channel_id: str, policy: DMPolicy) -> None:
        self._policies[channel_id] = DMPolicy(policy)
        logger.info("[PAIRING] Policy for %s: %s", channel_id, DMPolicy(policy).value)

    def get_policy(self, channel_id: str) -> DMPolicy:
        return self._policies.get(channel_id, self._default_policy)

    def check_access(self, channel_id: str, user_id: str) -> bool:
        """True if the user may DM the agent on this channel."""
        policy = self.get_policy(channel_id)
        if policy == DMPolicy.OPEN:
            return True
        if policy == DMPolicy.DISABLED:
            return False
        return self.is_paired(channel_id, user_id)

    def pending_for(self, channel_id: str, user_id: str) -> Optional[PairingCode]:
        now = self._clock()
        for entry in self._codes.values():
            if entry.channel_id == channel_id and entry.user_id == user_id and entry.is_pending(now):
                return entry
        return None

    def create_pairing(
        self,
        channel_id: str,
        user_id: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PairingCode:
        """Create (or reuse the pending) pairing code for an unknown user."""
        existing = self.pending_for(channel_id, user_id)
        if existing is not None:
            return existing

        now = self._clock()
        code = PairingCode(
            code=secrets.token_hex(4).upper(),  # 8-char hex code
            channel_id=channel_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl_hours * 3600,
            metadata=metadata or {},
        )
        self._codes[f"{channel_id}:{code.code}"] = code
        logger.info("[PAIRING] Created code %s for %s:%s", code.code, channel_id, user_id)
        return code

    def approve_pairing(self, channel_id: str, code: str) -> bool:
        """Approve a pairing code, granting the user access."""
        entry = self._codes.get(f"{channel_id}:{code.strip().upper()}")
        if entry is None or not entry.is_pending(self._clock()):
            return False

        entry.status = "approved"
        entry.resolved_at = self._clock()
        self.add_to_allowlist(channel_id, entry.user_id)
        logger.info("[PAIRING] Approved %s for %s:%s", entry.code, channel_id, entry.user_id)
        return True

    def reject_pairing(self, channel_id: str, code: str) -> bool:
        entry = self._codes.get(f"{channel_id}:{code.strip().upper()}")
        if entry is None or entry.status != "pending":
            return False
        entry.status = "rejected"
        entry.resolved_at = self._clock()
        return True

    def is_paired(self, channel_id: str, user_id: str) -> bool:
        return user_id in self._paired.get(channel_id, set())

    def add_to_allowlist(self, channel_id: str, user_id: str) -> None:
        self._paired.setdefault(channel_id, set()).add(user_id)

    def remove_from_allowlist(self, channel_id: str, user_id: str) -> bool:
        paired = self._paired.get(channel_id, set())
        if user_id in paired:
            paired.discard(user_id)
            return True
        return False

    def list_pending(self, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            c.to_dict(now) for c in self._codes.values()
            if c.is_pending(now) and (channel_id is None or c.channel_id == channel_id)
        ]

    def list_paired_users(self, channel_id: str) -> List[str]:
        return sorted(self._paired.get(channel_id, set()))

    def cleanup_expired(self) -> int:
        """Remove expired codes that were never resolved."""
        now = self._clock()
        expired = [k for k, v in self._codes.items() if v.status == "pending" and v.is_expired(now)]
        for k in expired:
            self._codes.pop(k, None)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "total_codes": len(self._codes),
            "pending": sum(1 for c in self._codes.values() if c.is_pending(now)),
            "approved": sum(1 for c in self._codes.values() if c.status == "approved"),
            "rejected": sum(1 for c in self._codes.values() if c.status == "rejected"),
            "policies": {k: v.value for k, v in self._policies.items()},
            "paired_users": {k: len(v) for k, v in self._paired.items()},
            "default_policy": self._default_policy.value,
        }
