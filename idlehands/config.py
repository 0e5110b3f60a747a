from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _default_config_dir() -> str:
    return str(Path.home() / ".config" / "idlehands")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IDLEHANDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "idlehands"
    debug: bool = False
    log_json: bool = False  # JSON structured logs on stdout
    config_dir: str = _default_config_dir()  # runtimes.json lives here

    # ── Webhook server ──────────────────────────────────────
    server_host: str = "127.0.0.1"
    server_port: int = 8787

    # ── Model endpoint ───────────────────────────────────────
    endpoint: str = "http://127.0.0.1:8080"  # OpenAI-compatible server root
    api_key: Optional[str] = None  # Bearer token for the endpoint, if any
    model: str = ""  # Empty = auto-pick from the server catalog
    preferred_model_marker: str = "qwen"  # Case-insensitive family match
    model_list_timeout_ms: int = 3000  # Catalog fetch for auto-pick
    probe_timeout_sec: float = 7.0  # Single health probe
    endpoint_wait_timeout_ms: int = 60000  # Overall wait while a backend boots
    endpoint_poll_interval_ms: int = 2500
    wait_for_endpoint_on_start: bool = True

    # ── Hooks ────────────────────────────────────────────────
    hooks_enabled: bool = True
    hooks_strict: bool = False  # Raise on handler failure / denied capability
    hooks_warn_ms: int = 250  # Log handlers slower than this
    hooks_timeout_sec: float = 5.0  # Upper bound for a single async handler
    hooks_allow_capabilities: list[str] = ["observe"]

    # ── Agent Runtime ────────────────────────────────────────
    agent_max_tool_iterations: int = 20  # Max model calls per turn
    tool_timeout_default: float = 30.0  # Default per-tool timeout in seconds
    tool_timeout_overrides: dict[str, float] = {}
    tool_max_output_chars: int = 15000
    tool_loop_warning_threshold: int = 4  # Identical calls before tool_loop warning
    tool_loop_critical_threshold: int = 8  # Identical calls before the turn is aborted
    auto_continue_max_retries: int = 0  # 0 = report loop breaks as a hard stop
    system_prompt: str = "You are idlehands, a helpful assistant reachable from chat channels."

    # ── Sessions / Lanes ─────────────────────────────────────
    lane_max_concurrent: int = 5  # Max concurrent turns across all sessions

    # ── DM Policy ────────────────────────────────────────────
    # dm_policy: pairing | allowlist | open | disabled
    dm_policy: str = "open"
    pairing_ttl_hours: int = 24

    # ── Channels ─────────────────────────────────────────────
    # Per-channel config, e.g. {"line": {"channel_secret": "..."}, "mattermost": {"accounts": {...}}}
    channels: dict[str, dict] = {}

    @property
    def runtimes_path(self) -> Path:
        return Path(self.config_dir) / "runtimes.json"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
