"""
Runtime Store — Persisted set of LLM hosts, backends and models.

The store owns ``runtimes.json`` in the config directory. The schema of
each entry belongs to the setup flows that write it; this module only
enforces the identity fields every entry needs and keeps everything else
as-is.

Usage:
    from idlehands.services.runtime_store import RuntimeStore, check_runtime_gate

    store = RuntimeStore(settings.runtimes_path)
    if not check_runtime_gate(store, interactive=sys.stdin.isatty()):
        return  # no session created
"""

import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

ID_PATTERN = r"^[a-z0-9][a-z0-9-]*$"
MAX_ID_LEN = 64

SETUP_HINT = (
    "No runtime configured yet. Run `idlehands setup` to add a host, backend and model."
)


class RuntimeStoreError(Exception):
    """The runtime store could not be read or failed validation."""


class RuntimeEntry(BaseModel):
    """Identity fields shared by hosts, backends and models."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(pattern=ID_PATTERN, max_length=MAX_ID_LEN)
    display_name: str = ""
    enabled: bool = True


class RuntimeHost(RuntimeEntry):
    transport: str = "local"  # local | ssh
    connection: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("transport")
    @classmethod
    def _check_transport(cls, v: str) -> str:
        if v not in ("local", "ssh"):
            raise ValueError('expected "local" or "ssh"')
        return v


class RuntimeBackend(RuntimeEntry):
    type: str = "custom"  # vulkan | rocm | cuda | metal | cpu | custom


class RuntimeModel(RuntimeEntry):
    source: str = ""


class RuntimeConfig(BaseModel):
    """``{hosts, backends, models}`` as persisted in runtimes.json."""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = 1
    hosts: List[RuntimeHost] = Field(default_factory=list)
    backends: List[RuntimeBackend] = Field(default_factory=list)
    models: List[RuntimeModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "RuntimeConfig":
        for section in ("hosts", "backends", "models"):
            seen = set()
            for entry in getattr(self, section):
                if entry.id in seen:
                    raise ValueError(f'{section}: duplicate id "{entry.id}"')
                seen.add(entry.id)
        return self

    def enabled_models(self) -> List[RuntimeModel]:
        return [m for m in self.models if m.enabled]


def validate_runtimes(data: Any) -> RuntimeConfig:
    """Validate raw JSON data, raising RuntimeStoreError with a readable message."""
    try:
        return RuntimeConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise RuntimeStoreError(f"runtimes: {where}: {first['msg']}") from exc


def redact_config(config: RuntimeConfig) -> RuntimeConfig:
    """Return a copy safe for display (connection passwords removed)."""
    redacted = config.model_copy(deep=True)
    for host in redacted.hosts:
        if "password" in host.connection:
            host.connection["password"] = "***"
    return redacted


def is_runtime_configured(config: Optional[RuntimeConfig]) -> bool:
    """True only when hosts, backends and models are all non-empty."""
    if config is None:
        return False
    return bool(config.hosts) and bool(config.backends) and bool(config.models)


class RuntimeStore:
    """Reads and writes runtimes.json."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> RuntimeConfig:
        """Load the config. A missing file is an empty config."""
        if not self.path.exists():
            return RuntimeConfig()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise RuntimeStoreError(f"Could not read {self.path}: {exc}") from exc
        return validate_runtimes(raw)

    def save(self, config: RuntimeConfig) -> None:
        """Atomically replace runtimes.json."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = config.model_dump(mode="json")
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".runtimes.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info(
            "[RUNTIME] Saved %s (hosts=%d backends=%d models=%d)",
            self.path, len(config.hosts), len(config.backends), len(config.models),
        )

    def bootstrap(self) -> bool:
        """Create an empty runtimes.json if none exists. Returns True if created."""
        if self.path.exists():
            return False
        self.save(RuntimeConfig())
        return True


def check_runtime_gate(
    store: RuntimeStore,
    *,
    interactive: bool = False,
    out: Optional[TextIO] = None,
) -> bool:
    """
    Gate run before any agent session is created.

    Returns True when the runtime is configured. An unreadable store counts
    as "not configured". In an interactive terminal a single setup hint is
    written to ``out`` (stderr by default). Never raises.
    """
    try:
        config = store.load()
    except Exception as exc:
        logger.warning("[RUNTIME] Runtime store unreadable, treating as not configured: %s", exc)
        config = None

    if is_runtime_configured(config):
        return True

    logger.info("[RUNTIME] Runtime not configured, no session created")
    if interactive:
        stream = out if out is not None else sys.stderr
        stream.write(SETUP_HINT + "\n")
    return False
