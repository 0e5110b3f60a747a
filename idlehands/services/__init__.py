from idlehands.services.model_discovery import (
    ModelCatalogEntry, ModelClient, NoModelsAvailable,
    auto_pick_model, probe_endpoint, wait_for_endpoint,
)
from idlehands.services.runtime_store import (
    RuntimeConfig, RuntimeStore, RuntimeStoreError,
    check_runtime_gate, is_runtime_configured,
)
from idlehands.services.llm_backend import ModelBackend, ModelReply, OpenAIChatBackend, ToolCall

__all__ = [
    "ModelCatalogEntry",
    "ModelClient",
    "NoModelsAvailable",
    "auto_pick_model",
    "probe_endpoint",
    "wait_for_endpoint",
    "RuntimeConfig",
    "RuntimeStore",
    "RuntimeStoreError",
    "check_runtime_gate",
    "is_runtime_configured",
    "ModelBackend",
    "ModelReply",
    "OpenAIChatBackend",
    "ToolCall",
]
