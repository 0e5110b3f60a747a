"""
Model Discovery — Health-check an OpenAI-compatible endpoint and pick a model.

Every call goes through ``GET {endpoint}/v1/models``. The health probe only
looks at the HTTP status; the catalog fetch parses the ``data`` array.

Usage:
    from idlehands.services.model_discovery import ModelClient, auto_pick_model, wait_for_endpoint

    if await wait_for_endpoint(settings.endpoint):
        client = ModelClient(settings.endpoint, api_key=settings.api_key)
        model = await auto_pick_model(client)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 7.0
DEFAULT_MODEL_LIST_TIMEOUT_MS = 3000
DEFAULT_WAIT_TIMEOUT_MS = 60_000
DEFAULT_WAIT_INTERVAL_MS = 2500
PREFERRED_MODEL_MARKER = "qwen"

NO_MODELS_MESSAGE = "No models found on server. Check your endpoint and that a model is loaded."

ProbeFunction = Callable[[str], Awaitable[bool]]


class NoModelsAvailable(Exception):
    """The endpoint is unreachable or has no model loaded."""


@dataclass(frozen=True)
class ModelCatalogEntry:
    """A model known to an endpoint. Catalog order is server order."""
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id}


@dataclass
class ProbeResult:
    """Outcome of one health probe."""
    ok: bool
    reason: str
    status_code: Optional[int] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 1),
        }


def endpoint_base(endpoint: Optional[str]) -> Optional[str]:
    """Normalise an endpoint to its ``.../v1`` base URL, or None when blank."""
    if not endpoint:
        return None
    e = endpoint.strip().rstrip("/")
    if not e:
        return None
    return e if e.endswith("/v1") else f"{e}/v1"


def parse_model_catalog(body: Any) -> List[ModelCatalogEntry]:
    """
    Normalise a catalog into entries, preserving order.

    Accepts the raw ``/v1/models`` response body, a bare list of
    ``{"id": ...}`` dicts, plain id strings or entries.
    """
    if isinstance(body, dict):
        body = body.get("data") or []
    if not isinstance(body, (list, tuple)):
        return []

    entries: List[ModelCatalogEntry] = []
    for item in body:
        if isinstance(item, ModelCatalogEntry):
            model_id = item.id
        elif isinstance(item, dict):
            model_id = str(item.get("id") or "")
        else:
            model_id = str(item or "")
        if model_id:
            entries.append(ModelCatalogEntry(id=model_id))
    return entries


class ModelClient:
    """Thin httpx client for the model listing API of an endpoint."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.base_url = endpoint_base(endpoint)
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def list_models(self, timeout: float = 10.0) -> List[ModelCatalogEntry]:
        """Fetch the catalog. Raises httpx errors on transport or status failure."""
        if not self.base_url:
            raise NoModelsAvailable("Model endpoint is not configured.")

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            r = await client.get(f"{self.base_url}/models", headers=self._headers())
            r.raise_for_status()
            return parse_model_catalog(r.json())

    def __repr__(self) -> str:
        return f"<ModelClient endpoint={self.endpoint!r}>"


async def probe_endpoint_status(
    endpoint: Optional[str],
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    api_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProbeResult:
    """Probe ``/v1/models`` and report why it failed. Never raises."""
    base = endpoint_base(endpoint)
    if not base:
        return ProbeResult(ok=False, reason="endpoint-not-configured")

    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    t0 = time.time()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            r = await client.get(f"{base}/models", headers=headers)
    except httpx.TimeoutException:
        return ProbeResult(ok=False, reason="timeout", latency_ms=(time.time() - t0) * 1000)
    except Exception as exc:
        return ProbeResult(
            ok=False,
            reason=str(exc).lower()[:120] or type(exc).__name__,
            latency_ms=(time.time() - t0) * 1000,
        )

    latency = (time.time() - t0) * 1000
    if r.status_code == 503:
        return ProbeResult(ok=False, reason="loading-http-503", status_code=503, latency_ms=latency)
    if not r.is_success:
        return ProbeResult(
            ok=False, reason=f"http-{r.status_code}", status_code=r.status_code, latency_ms=latency,
        )
    return ProbeResult(ok=True, reason="ok", status_code=r.status_code, latency_ms=latency)


async def probe_endpoint(
    endpoint: Optional[str],
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    api_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """True iff ``GET {endpoint}/v1/models`` answers with a 2xx status."""
    result = await probe_endpoint_status(
        endpoint, timeout=timeout, api_key=api_key, transport=transport,
    )
    if not result.ok:
        logger.debug("[DISCOVERY] Probe %s failed: %s", endpoint, result.reason)
    return result.ok


async def wait_for_endpoint(
    endpoint: Optional[str],
    timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
    interval_ms: int = DEFAULT_WAIT_INTERVAL_MS,
    *,
    probe: Optional[ProbeFunction] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> bool:
    """
    Poll the endpoint until it answers or the wait window closes.

    Returns True as soon as a probe succeeds, False once ``timeout_ms`` of
    wall clock have elapsed since the first call without a success.
    """
    probe_fn = probe or probe_endpoint
    timeout = max(0, timeout_ms) / 1000
    interval = max(0, interval_ms) / 1000

    started = clock()
    attempts = 0
    while True:
        remaining = timeout - (clock() - started)
        if attempts and remaining <= 0:
            break
        attempts += 1
        if await _probe_within(probe_fn, endpoint, remaining if timeout > 0 else None):
            logger.info("[DISCOVERY] Endpoint %s ready after %d probe(s)", endpoint, attempts)
            return True

        elapsed = clock() - started
        if elapsed >= timeout:
            break
        await sleep(min(interval, timeout - elapsed))

    logger.warning(
        "[DISCOVERY] Endpoint %s not ready after %.1fs (%d probes)",
        endpoint, clock() - started, attempts,
    )
    return False


async def _probe_within(probe_fn: ProbeFunction, endpoint: Optional[str], budget: Optional[float]) -> bool:
    """Run one probe, treating a probe that outlives ``budget`` seconds as a failure."""
    if budget is None:
        return await probe_fn(endpoint)
    try:
        return await asyncio.wait_for(probe_fn(endpoint), timeout=budget)
    except asyncio.TimeoutError:
        return False


def pick_model(
    catalog: Sequence[ModelCatalogEntry],
    preferred_marker: str = PREFERRED_MODEL_MARKER,
) -> str:
    """Preferred-family match first, then the first entry, else NoModelsAvailable."""
    marker = (preferred_marker or "").lower()
    if marker:
        for entry in catalog:
            if marker in entry.id.lower():
                return entry.id
    if catalog:
        return catalog[0].id
    raise NoModelsAvailable(NO_MODELS_MESSAGE)


async def auto_pick_model(
    client: ModelClient,
    cached: Any = None,
    *,
    timeout_ms: int = DEFAULT_MODEL_LIST_TIMEOUT_MS,
    preferred_marker: str = PREFERRED_MODEL_MARKER,
) -> str:
    """
    Select a default model from the endpoint catalog.

    ``cached`` may be a ``/v1/models`` body or a list of entries; when it is
    None the catalog is fetched and the fetch is cancelled after
    ``timeout_ms``.
    """
    if cached is not None:
        catalog = parse_model_catalog(cached)
    else:
        timeout = timeout_ms / 1000
        try:
            catalog = await asyncio.wait_for(client.list_models(timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise NoModelsAvailable(
                f"Timed out after {timeout_ms}ms listing models at {client.endpoint}. "
                "Check that the endpoint is reachable."
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            # ValueError: a 2xx body that is not JSON (proxy login page, etc.)
            raise NoModelsAvailable(
                f"Could not list models at {client.endpoint} ({exc}). "
                "Check your endpoint and that a model is loaded."
            ) from exc

    model_id = pick_model(catalog, preferred_marker)
    logger.info("[DISCOVERY] Auto-picked model %s from %d entries", model_id, len(catalog))
    return model_id


def classify_infra_error(err: Any) -> str:
    """Bucket an error as ``infra_down``, ``loading`` or ``other``."""
    msg = str(err or "").lower()
    if not msg:
        return "other"
    if "aborted" in msg or "cancel" in msg:
        return "other"
    if "503" in msg or "loading" in msg:
        return "loading"

    infra_patterns = (
        "econnrefused",
        "could not connect",
        "connection refused",
        "all connection attempts failed",
        "name or service not known",
        "connect timeout",
        "no models found",
        "endpoint",
    )
    if any(p in msg for p in infra_patterns):
        return "infra_down"
    return "other"
