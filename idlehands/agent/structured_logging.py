"""
Structured Logging — Per-subsystem structured logging with JSON output.

Every idlehands module logs through a stdlib logger under the ``idlehands``
namespace with a bracketed tag (``[REGISTRY]``, ``[HOOKS]`` …). When JSON
output is enabled the formatter adds the subsystem plus the ask/session
correlation ids of the turn currently executing.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Any, Dict

# Context variables for turn correlation
ask_id_var: ContextVar[str] = ContextVar("ask_id", default="")
session_key_var: ContextVar[str] = ContextVar("session_key", default="")

ROOT_LOGGER = "idlehands"


class Subsystem(str, Enum):
    AGENT = "agent"
    CHANNEL = "channel"
    HOOKS = "hooks"
    DISCOVERY = "discovery"
    RUNTIME = "runtime"
    TOOL = "tool"
    HOST = "host"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", _subsystem_for(record.name)),
            "message": record.getMessage(),
            "logger": record.name,
        }

        ask_id = ask_id_var.get("")
        if ask_id:
            log_entry["ask_id"] = ask_id
        session_key = session_key_var.get("")
        if session_key:
            log_entry["session_key"] = session_key

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


def _subsystem_for(logger_name: str) -> str:
    # idlehands.agent.channels.registry -> channel, idlehands.services.model_discovery -> discovery
    parts = logger_name.split(".")
    if "channels" in parts:
        return Subsystem.CHANNEL.value
    if "hooks" in parts:
        return Subsystem.HOOKS.value
    if "model_discovery" in parts:
        return Subsystem.DISCOVERY.value
    if "runtime_store" in parts:
        return Subsystem.RUNTIME.value
    if "tool_executor" in parts:
        return Subsystem.TOOL.value
    if "host" in parts:
        return Subsystem.HOST.value
    return Subsystem.AGENT.value


_configured = False


def configure_logging(level: int = logging.INFO, json_output: bool = False) -> None:
    """Attach a single stdout handler to the idlehands root logger."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger(ROOT_LOGGER)
    root.addHandler(handler)
    root.setLevel(level)
    _configured = True


def set_turn_context(ask_id: str = "", session_key: str = "") -> None:
    """Set context variables for the turn running in the current task."""
    if ask_id:
        ask_id_var.set(ask_id)
    if session_key:
        session_key_var.set(session_key)


def generate_ask_id() -> str:
    """Generate a short unique id for one agent turn."""
    return uuid.uuid4().hex[:12]
