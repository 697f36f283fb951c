"""
Shared retry/backoff POST helper for the external collaborators.
"""

import asyncio

import httpx

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.errors import FatalError, TransientError

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
BACKOFF_FACTOR = 2


class JsonServiceClient:
    """Base for small JSON-over-HTTP collaborators with retry handling."""

    service_name = "external"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        app_settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        cfg = app_settings or default_settings
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = cfg.EXTERNAL_REQUEST_TIMEOUT_S
        self.max_retries = max(cfg.EXTERNAL_MAX_RETRIES, 1)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post_with_retry(self, path: str, body: dict, operation: str) -> dict:
        """
        POST ``body`` as JSON and return the decoded response.

        Transport errors and 429/5xx responses are retried with exponential
        backoff; once retries run out a ``TransientError`` is raised so the
        job queue applies its own backoff on top. Any other error status is a
        ``FatalError``.
        """
        url = f"{self.base_url}{path}"
        last_error: Exception | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = await client.post(url, json=body, headers=self._headers())

                    if response.status_code in RETRY_STATUS_CODES:
                        last_error = httpx.HTTPStatusError(
                            f"{response.status_code} from {self.service_name}",
                            request=response.request,
                            response=response,
                        )
                        if attempt < self.max_retries:
                            wait_time = BACKOFF_FACTOR ** (attempt - 1)
                            logger.warning(
                                "External service transient status",
                                service=self.service_name,
                                operation=operation,
                                status_code=response.status_code,
                                attempt=attempt,
                                wait_time=wait_time,
                            )
                            await asyncio.sleep(wait_time)
                            continue
                        break

                    if response.is_error:
                        raise FatalError(
                            f"{self.service_name} {operation} rejected with "
                            f"{response.status_code}",
                            context={"status_code": response.status_code, "operation": operation},
                        )
                    return response.json() if response.content else {}

                except httpx.RequestError as exc:
                    last_error = exc
                    if attempt == self.max_retries:
                        break

                    wait_time = BACKOFF_FACTOR ** (attempt - 1)
                    logger.warning(
                        "External service request error, retrying",
                        service=self.service_name,
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                    )
                    await asyncio.sleep(wait_time)

        logger.error(
            "External service unavailable",
            service=self.service_name,
            operation=operation,
            attempts=self.max_retries,
            error=str(last_error),
        )
        raise TransientError(
            f"{self.service_name} {operation} failed: {last_error}",
            context={"service": self.service_name, "operation": operation},
        )
