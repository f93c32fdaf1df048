"""Semantic index contract and the Gemini File Search implementation.

Uploads are asynchronous on the service side: ``upload`` returns an
operation handle and ``await_operation`` drives a bounded polling state
machine (processing -> active | failed) with exponential backoff.
"""

import asyncio
import json
import re
import time
from typing import Any, Protocol

import httpx
import logfire
from tenacity import AsyncRetrying

from sitecorpus.config import get_settings
from sitecorpus.constants import RETRYABLE_STATUS_CODES
from sitecorpus.exceptions import DocumentNotFoundError, IndexServiceError
from sitecorpus.logging_config import redact_tokens
from sitecorpus.models.index_models import DocumentMetadata, DocumentState, OperationResult
from sitecorpus.services.http_retry import retry_config

# Longest gap between two operation polls (seconds)
MAX_POLL_INTERVAL_SECONDS = 30.0

_DOCUMENT_STATES = {
    "STATE_ACTIVE": DocumentState.ACTIVE,
    "STATE_PENDING": DocumentState.PROCESSING,
    "STATE_FAILED": DocumentState.FAILED,
}


class IndexService(Protocol):
    """Protocol for the semantic indexing service."""

    async def create_container(self, display_name: str) -> str:
        """Create an index container and return its id."""
        ...

    async def upload(
        self, container_id: str, text: str, metadata: DocumentMetadata
    ) -> str:
        """Submit a document and return the upload operation handle."""
        ...

    async def await_operation(self, operation_id: str) -> OperationResult:
        """Poll an upload operation until it settles or the wait runs out.

        A wait that runs out reports ``DocumentState.PROCESSING``.
        """
        ...

    async def delete(self, document_id: str) -> bool:
        """Delete a document; returns False when it was already absent."""
        ...


def _file_name(url: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", re.sub(r"^https?://", "", url)).strip("-")
    return f"{slug[:120] or 'page'}.md"


class GeminiFileSearchIndex:
    """IndexService backed by the Gemini File Search REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        client: httpx.AsyncClient | None = None,
        retry: dict[str, Any] | None = None,
    ):
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        base = (base_url or settings.gemini_base_url).rstrip("/")
        self._api_endpoint = f"{base}/v1beta"
        self._upload_endpoint = f"{base}/upload/v1beta"
        self._timeout = timeout or settings.http_timeout_seconds
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.upload_poll_interval_seconds
        )
        self._max_wait = max_wait if max_wait is not None else settings.upload_max_wait_seconds
        self._client = client
        self._retry = retry or retry_config(max_attempts=settings.upload_max_attempts)

        logfire.debug(
            "Gemini File Search client configured",
            **redact_tokens({"api_key": self._api_key, "endpoint": self._api_endpoint}),
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        retrying = AsyncRetrying(**self._retry)
        if self._client is not None:
            return await retrying(self._send, self._client, method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await retrying(self._send, client, method, url, **kwargs)

    async def _send(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> dict[str, Any]:
        headers = {"x-goog-api-key": self._api_key, **kwargs.pop("headers", {})}
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise IndexServiceError(
                f"{method} {url} failed: {e}", transient=True
            ) from e

        if response.status_code == 404:
            raise DocumentNotFoundError(f"Not found: {url}")
        if response.status_code >= 400:
            raise IndexServiceError(
                f"{method} {url} failed: {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
                transient=response.status_code in RETRYABLE_STATUS_CODES,
            )
        if not response.content:
            return {}
        return response.json()

    async def create_container(self, display_name: str) -> str:
        data = await self._request(
            "POST",
            f"{self._api_endpoint}/fileSearchStores",
            json={"displayName": display_name},
        )
        store_name = data.get("name")
        if not store_name:
            raise IndexServiceError("Store creation returned no name")
        logfire.info(
            "File Search store created", store_name=store_name, display_name=display_name
        )
        return store_name

    async def upload(
        self, container_id: str, text: str, metadata: DocumentMetadata
    ) -> str:
        store = (
            container_id
            if container_id.startswith("fileSearchStores/")
            else f"fileSearchStores/{container_id}"
        )
        custom_metadata = [
            {"key": "url", "stringValue": metadata.url},
            {"key": "path", "stringValue": metadata.path or "/"},
        ]
        if metadata.title:
            custom_metadata.append({"key": "title", "stringValue": metadata.title[:256]})
        if metadata.updated_at:
            custom_metadata.append(
                {"key": "updated_at", "stringValue": metadata.updated_at.isoformat()}
            )
        document_metadata = {
            "displayName": metadata.title or metadata.url,
            "customMetadata": custom_metadata,
        }

        start_time = time.time()
        data = await self._request(
            "POST",
            f"{self._upload_endpoint}/{store}:uploadToFileSearchStore",
            files={
                "metadata": (None, json.dumps(document_metadata), "application/json"),
                "file": (_file_name(metadata.url), text.encode("utf-8"), "text/markdown"),
            },
        )
        operation_id = data.get("name")
        if not operation_id:
            raise IndexServiceError(f"Upload of {metadata.url} returned no operation")

        logfire.info(
            "Upload submitted",
            url=metadata.url,
            operation_id=operation_id,
            content_size_kb=round(len(text) / 1024, 2),
            done=bool(data.get("done")),
            response_time_ms=(time.time() - start_time) * 1000,
        )
        return operation_id

    async def _document_state(self, document_id: str) -> DocumentState:
        try:
            doc = await self._request("GET", f"{self._api_endpoint}/{document_id}")
        except DocumentNotFoundError:
            return DocumentState.FAILED
        # Documents without a state field are served as soon as they exist
        return _DOCUMENT_STATES.get(doc.get("state", "STATE_ACTIVE"), DocumentState.PROCESSING)

    async def await_operation(self, operation_id: str) -> OperationResult:
        deadline = time.monotonic() + self._max_wait
        interval = self._poll_interval
        polls = 0

        while True:
            polls += 1
            try:
                op = await self._request("GET", f"{self._api_endpoint}/{operation_id}")
            except DocumentNotFoundError:
                return OperationResult(
                    operation_id=operation_id,
                    state=DocumentState.FAILED,
                    error="Upload operation not found",
                )

            if op.get("done"):
                if op.get("error"):
                    return OperationResult(
                        operation_id=operation_id,
                        state=DocumentState.FAILED,
                        error=json.dumps(op["error"])[:500],
                    )
                document_id = (op.get("response") or {}).get("documentName")
                if not document_id:
                    return OperationResult(
                        operation_id=operation_id,
                        state=DocumentState.FAILED,
                        error="Operation finished without a document",
                    )
                state = await self._document_state(document_id)
                if state != DocumentState.PROCESSING:
                    logfire.info(
                        "Upload operation settled",
                        operation_id=operation_id,
                        document_id=document_id,
                        state=state.value,
                        polls=polls,
                    )
                    return OperationResult(
                        operation_id=operation_id,
                        state=state,
                        document_id=document_id,
                        error="Document processing failed" if state == DocumentState.FAILED else None,
                    )

            if time.monotonic() + interval > deadline:
                logfire.warning(
                    "Upload operation still processing after max wait",
                    operation_id=operation_id,
                    polls=polls,
                    max_wait_seconds=self._max_wait,
                )
                return OperationResult(
                    operation_id=operation_id,
                    state=DocumentState.PROCESSING,
                    document_id=(op.get("response") or {}).get("documentName"),
                )

            await asyncio.sleep(interval)
            interval = min(interval * 2, MAX_POLL_INTERVAL_SECONDS)

    async def delete(self, document_id: str) -> bool:
        try:
            await self._request(
                "DELETE",
                f"{self._api_endpoint}/{document_id}",
                params={"force": "true"},
            )
        except DocumentNotFoundError:
            logfire.warning("Document not found, already deleted", document_id=document_id)
            return False
        logfire.info("Document deleted", document_id=document_id)
        return True
