"""HTTP client for the checker sidecar.

One read endpoint returns a JSON result envelope. A non-2xx status and a
malformed body are distinct, task-fatal failures.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from avs_pipeline.core.config import CheckerConfig
from avs_pipeline.core.exceptions import (
    CheckerHTTPError,
    CheckerTransportError,
    EnvelopeDecodeError,
)
from avs_pipeline.core.models import TaskResultEnvelope

logger = logging.getLogger("avs.pipeline.checker")

UNREADABLE_BODY = "Unable to read body"


class CheckerClient:
    def __init__(
        self,
        config: Optional[CheckerConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or CheckerConfig()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def url_for(self, checker_address: str) -> str:
        return f"{checker_address.rstrip('/')}/{self.config.endpoint.lstrip('/')}"

    async def fetch_results(self, checker_address: str, file_reference: str) -> TaskResultEnvelope:
        """Ask the checker to process ``file_reference`` and decode its envelope.

        Raises:
            CheckerTransportError: The sidecar could not be reached.
            CheckerHTTPError: Non-2xx status; carries the body verbatim.
            EnvelopeDecodeError: The body is not a valid envelope.
        """
        url = self.url_for(checker_address)
        params = {}
        if self.config.reference_param and file_reference:
            params[self.config.reference_param] = file_reference

        logger.debug("Sending GET request to: %s", url)
        try:
            response = await self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise CheckerTransportError(f"Checker request to {url} failed: {e}") from e

        if not response.is_success:
            try:
                body = response.text
            except (UnicodeDecodeError, httpx.HTTPError):
                body = UNREADABLE_BODY
            logger.error("Request failed: %s. Body: %s", response.status_code, body)
            raise CheckerHTTPError(response.status_code, body)

        body_bytes = response.content
        logger.debug("Response Body: %s", body_bytes.decode("utf-8", errors="replace"))

        try:
            return TaskResultEnvelope.model_validate_json(body_bytes)
        except ValidationError as e:
            raise EnvelopeDecodeError(
                f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}",
                body=body_bytes.decode("utf-8", errors="replace"),
            ) from e
