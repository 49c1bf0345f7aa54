"""
Retry wrapper for the upstream client with linear backoff.

Blocking calls are retried on transient failures:
- connection errors and timeouts
- 5xx from upstream

Never retried (permanent):
- 4xx
- malformed success bodies

Streams pass straight through and are never retried.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from ragdesk.errors import AppError, ErrorCode
from ragdesk.upstream.client import ChatRequest, ChatResponse, DifyClient
from ragdesk.upstream.events import StreamEvent

logger = logging.getLogger(__name__)


class RetryingChatClient:
    """Wraps a DifyClient with retry-on-transient-error for blocking calls."""

    def __init__(
        self,
        client: DifyClient,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.client = client
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryingChatClient":
        up = cfg.get("upstream", {})
        return cls(
            DifyClient.from_config(cfg),
            max_retries=up.get("max_retries", 3),
            retry_delay=up.get("retry_delay", 1.0),
        )

    @property
    def base_url(self) -> str:
        return self.client.base_url

    def _is_retryable(self, error: AppError) -> bool:
        if error.code == ErrorCode.CONNECTION_FAILED:
            return True
        return error.code == ErrorCode.UPSTREAM_API_ERROR and error.status_code >= 500

    def _backoff_seconds(self, attempt: int) -> float:
        """Backoff after the Nth failed attempt (linear)."""
        return attempt * self.retry_delay

    async def send_blocking(self, request: ChatRequest) -> ChatResponse:
        attempts = self.max_retries + 1
        last_error: AppError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await self.client.send_once(request)
            except AppError as e:
                if not self._is_retryable(e):
                    logger.debug("Upstream non-retryable %s: %s", e.code.value, e.message)
                    raise
                last_error = e

            if attempt < attempts:
                backoff = self._backoff_seconds(attempt)
                logger.warning(
                    "Upstream transient failure (%s), retry in %.1fs (%d/%d)",
                    last_error.message,
                    backoff,
                    attempt,
                    self.max_retries,
                )
                await asyncio.sleep(backoff)

        logger.error(
            "Upstream exhausted %d attempts (last: %s)", attempts, last_error.message
        )
        raise AppError(
            ErrorCode.CONNECTION_FAILED,
            f"Upstream unavailable after {attempts} attempts: {last_error.message}",
            502,
        ) from last_error

    def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        return self.client.stream_chat(request)
