"""Embedding provider client for the asynchronous batch API.

The provider accepts a JSONL file of embedding requests, runs it as a batch
job with a completion window and later exposes an output file and, for
failed requests, an error file. Each line carries the ``custom_id`` of the
request so results can be matched back to items.

Key Responsibilities:
    - Upload request files and create batch jobs
    - Read job status and download output and error files
    - Embed single texts synchronously for the fallback path
    - Retry transport errors and 5xx/429 responses with tenacity

Collaborators:
    - Upstream: Embedding batch builder, monitor and synchronous fallback
    - Downstream: ``httpx`` client against an OpenAI compatible endpoint

Thread Safety:
    - Thread-safe: ``httpx.Client`` may be shared across threads
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import structlog
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from Enliterator_KG.config.settings import EmbeddingSettings
from Enliterator_KG.pipeline.errors import EmbeddingProviderError

logger = structlog.get_logger(__name__)

EMBEDDINGS_ENDPOINT = "/v1/embeddings"
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass(slots=True, frozen=True)
class EmbeddingRequest:
    custom_id: str
    text: str


@dataclass(slots=True, frozen=True)
class BatchJobStatus:
    """Provider-side view of one batch job."""

    id: str
    status: str
    output_file_id: str | None = None
    error_file_id: str | None = None
    request_counts: Mapping[str, int] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class EmbeddingResult:
    custom_id: str
    vector: tuple[float, ...]


class EmbeddingProvider(Protocol):
    model: str

    def submit_batch(self, requests: Sequence[EmbeddingRequest]) -> tuple[str, str]:
        """Upload ``requests`` and start a job; returns (job id, input file id)."""
        ...

    def get_batch(self, job_id: str) -> BatchJobStatus: ...

    def download_file(self, file_id: str) -> str: ...

    def embed_one(self, text: str) -> tuple[float, ...]: ...


# ==============================================================================
# FILE PARSING
# ==============================================================================


def _lines(content: str) -> Iterable[dict[str, Any]]:
    for number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            logger.warning("embedding.provider.malformed_line", line_number=number)


def parse_output_lines(content: str) -> tuple[list[EmbeddingResult], list[str]]:
    """Split an output file into embeddings and the custom ids that failed."""
    results: list[EmbeddingResult] = []
    failed: list[str] = []
    for record in _lines(content):
        custom_id = record.get("custom_id")
        if not custom_id:
            continue
        response = record.get("response") or {}
        data = (response.get("body") or {}).get("data") or []
        if response.get("status_code") == 200 and data and data[0].get("embedding"):
            results.append(EmbeddingResult(custom_id, tuple(float(v) for v in data[0]["embedding"])))
        else:
            failed.append(custom_id)
    return results, failed


def parse_error_ids(content: str) -> list[str]:
    return [record["custom_id"] for record in _lines(content) if record.get("custom_id")]


def build_request_file(requests: Sequence[EmbeddingRequest], model: str, dimensions: int | None) -> bytes:
    lines = []
    for request in requests:
        body: dict[str, Any] = {"model": model, "input": request.text}
        if dimensions:
            body["dimensions"] = dimensions
        lines.append(
            json.dumps(
                {"custom_id": request.custom_id, "method": "POST", "url": EMBEDDINGS_ENDPOINT, "body": body}
            )
        )
    return ("\n".join(lines) + "\n").encode("utf-8")


# ==============================================================================
# HTTP CLIENT
# ==============================================================================


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    return isinstance(exc, httpx.TransportError)


class OpenAIEmbeddingProvider:
    """OpenAI compatible batch and embeddings client.

    Example:
        >>> provider = OpenAIEmbeddingProvider.from_settings(settings.embedding)
        >>> job_id, file_id = provider.submit_batch([EmbeddingRequest("item-itm-000001", "text")])
    """

    def __init__(
        self,
        settings: EmbeddingSettings,
        *,
        client: httpx.Client | None = None,
        retry_wait_seconds: float = 1.0,
    ) -> None:
        self.settings = settings
        self.model = settings.model
        headers = {}
        if settings.api_key is not None:
            headers["Authorization"] = f"Bearer {settings.api_key.get_secret_value()}"
        self._client = client or httpx.Client(
            base_url=settings.base_url,
            headers=headers,
            timeout=settings.timeout_seconds,
        )
        self._retry_wait_seconds = retry_wait_seconds

    @classmethod
    def from_settings(cls, settings: EmbeddingSettings) -> OpenAIEmbeddingProvider:
        return cls(settings)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.http_retries),
            wait=wait_exponential(multiplier=self._retry_wait_seconds, max=30.0),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

        def _send() -> httpx.Response:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response

        try:
            return retrying(_send)
        except httpx.HTTPError as exc:
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            logger.warning(
                "embedding.provider.request_failed",
                method=method,
                path=path,
                status_code=status,
                error=str(exc),
            )
            raise EmbeddingProviderError(
                f"Embedding provider {method} {path} failed: {exc}",
                extra={"path": path, "status_code": status},
            ) from exc

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError(f"Embedding provider returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise EmbeddingProviderError("Embedding provider returned an unexpected payload")
        return payload

    def submit_batch(self, requests: Sequence[EmbeddingRequest]) -> tuple[str, str]:
        content = build_request_file(requests, self.model, self.settings.dimensions)
        uploaded = self._json(
            self._request(
                "POST",
                "/files",
                data={"purpose": "batch"},
                files={"file": ("embeddings.jsonl", content, "application/jsonl")},
            )
        )
        job = self._json(
            self._request(
                "POST",
                "/batches",
                json={
                    "input_file_id": uploaded["id"],
                    "endpoint": EMBEDDINGS_ENDPOINT,
                    "completion_window": self.settings.completion_window,
                },
            )
        )
        logger.info(
            "embedding.provider.batch_submitted",
            job_id=job["id"],
            input_file_id=uploaded["id"],
            requests=len(requests),
        )
        return job["id"], uploaded["id"]

    def get_batch(self, job_id: str) -> BatchJobStatus:
        payload = self._json(self._request("GET", f"/batches/{job_id}"))
        return BatchJobStatus(
            id=payload.get("id", job_id),
            status=str(payload.get("status", "")),
            output_file_id=payload.get("output_file_id"),
            error_file_id=payload.get("error_file_id"),
            request_counts=payload.get("request_counts") or {},
        )

    def download_file(self, file_id: str) -> str:
        return self._request("GET", f"/files/{file_id}/content").text

    def embed_one(self, text: str) -> tuple[float, ...]:
        body: dict[str, Any] = {"model": self.model, "input": text}
        if self.settings.dimensions:
            body["dimensions"] = self.settings.dimensions
        payload = self._json(self._request("POST", "/embeddings", json=body))
        try:
            return tuple(float(v) for v in payload["data"][0]["embedding"])
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingProviderError("Embedding response did not contain a vector") from exc

    def close(self) -> None:
        self._client.close()


__all__ = [
    "BatchJobStatus",
    "EmbeddingProvider",
    "EmbeddingRequest",
    "EmbeddingResult",
    "OpenAIEmbeddingProvider",
    "build_request_file",
    "parse_error_ids",
    "parse_output_lines",
]
