"""HTTP client that POSTs sample batches to the ingest service.

One call per batch, no in-call retries: the flush engine's backoff
controller decides when the next attempt happens.

Status handling:
* 2xx            -- per-item verdict parsed from the body.
* 408/425/429/5xx -- transient (overload, gateway, timeout).
* other 4xx      -- transient as well; a whole-batch refusal carries no
                    per-item verdict, so nothing is dead-lettered on it.
* network error / timeout -- transient.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

import httpx
import structlog
from pydantic import ValidationError

from telemetry_agent.config import AgentSettings
from telemetry_agent.schemas import BatchResponse, Sample
from telemetry_agent.sink.base import ApplyResult, RemoteSink

logger = structlog.get_logger(__name__)

ENDPOINT_PATH = "/v1/telemetry/samples/batch"

_RETRYABLE_STATUS = frozenset({408, 425, 429})


class HTTPSink(RemoteSink):
    """Sends sample batches to the ingest API."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = settings.sink_base_url.rstrip("/")
        self._timeout = settings.sink_timeout_seconds
        self._token = settings.sink_auth_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=headers,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- public API ---------------------------------------------------------

    @property
    def url(self) -> str:
        return f"{self._base_url}{ENDPOINT_PATH}"

    async def apply(self, batch: Sequence[Sample]) -> ApplyResult:
        if self._client is None:
            raise RuntimeError("HTTPSink.start() must be called before apply()")

        body = {"samples": [sample.to_wire() for sample in batch]}
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            logger.warning("sink_timeout", url=self.url, error=str(exc))
            return ApplyResult.transient(f"timeout: {exc}")
        except httpx.RequestError as exc:
            logger.warning("sink_network_error", url=self.url, error=str(exc))
            return ApplyResult.transient(f"network error: {exc}")

        status = response.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            logger.warning("sink_unavailable", status=status, url=self.url)
            return ApplyResult.transient(f"HTTP {status}")
        if not 200 <= status < 300:
            logger.error(
                "sink_refused_batch",
                status=status,
                body=response.text[:500],
            )
            return ApplyResult.transient(f"HTTP {status}")

        try:
            parsed = BatchResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            logger.error("sink_bad_response", status=status, error=str(exc))
            return ApplyResult.transient(f"unparseable response: {exc}")

        batch_ids = {sample.sample_id for sample in batch}
        applied = frozenset(i for i in parsed.applied if i in batch_ids)
        rejected: Dict[str, str] = {
            item.sample_id: item.reason
            for item in parsed.rejected
            if item.sample_id in batch_ids and item.sample_id not in applied
        }
        logger.info(
            "batch_posted",
            status=status,
            size=len(batch),
            applied=len(applied),
            rejected=len(rejected),
        )
        return ApplyResult(applied_ids=applied, rejected=rejected)
