"""
Execution Backend.

The orchestrator never runs tests or edits code itself. It talks to an
execution backend through two opaque calls:

- execute(request, attempt, change_ref) -> RawExecutionOutput
- apply_fix(plan) -> FixApplication

HttpExecutionBackend implements both against a remote execution service
with automatic retry (exponential backoff via tenacity) on transport
errors and 5xx responses. Artifact bytes travel base64-encoded.

Wire format:
    POST {base_url}/executions
        {"run_id", "attempt", "target", "criteria"}
        -> {"test_name", "execution_kind", "outcome", "artifacts": [
               {"detail", "content_base64", "captured_at", "label"}
           ], "claimed_actions", "change_ref", "metadata"}

    POST {base_url}/fixes
        FixPlan as JSON -> FixApplication as JSON
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from proofgate.config.environment import get_backend_token
from proofgate.config.models import BackendConfig
from proofgate.errors import BackendResponseError, BackendUnavailableError
from proofgate.models.evidence import ClaimedAction, RawArtifact, RawExecutionOutput
from proofgate.models.fixing import FixApplication, FixPlan
from proofgate.models.workflow import VerificationRequest
from proofgate.version import __version__

logger = logging.getLogger(__name__)

EXECUTIONS_ENDPOINT = "/executions"
FIXES_ENDPOINT = "/fixes"


@runtime_checkable
class ExecutionBackend(Protocol):
    """Opaque execution handle used by the orchestrator."""

    async def execute(
        self,
        request: VerificationRequest,
        attempt: int,
        change_ref: str,
    ) -> RawExecutionOutput:
        """Run the test against a code-change handle and return raw output."""
        ...

    async def apply_fix(self, plan: FixPlan) -> FixApplication:
        """Apply a fix strategy and return the changed-code handle."""
        ...


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, BackendUnavailableError):
        return True
    return isinstance(error, BackendResponseError) and (error.status_code or 0) >= 500


def parse_execution_output(data: dict[str, Any]) -> RawExecutionOutput:
    """Build RawExecutionOutput from the service's JSON payload.

    Raises:
        BackendResponseError: If the payload is malformed
    """
    try:
        artifacts = [
            RawArtifact(
                detail=item["detail"],
                content=base64.b64decode(item.get("content_base64", ""), validate=True),
                label=item.get("label", ""),
                **({"captured_at": item["captured_at"]} if item.get("captured_at") else {}),
            )
            for item in data.get("artifacts", [])
        ]
        claimed = [
            ClaimedAction.model_validate(item)
            if isinstance(item, dict) and "expected_artifact" in item
            else ClaimedAction.from_description(
                item["description"] if isinstance(item, dict) else str(item)
            )
            for item in data.get("claimed_actions", [])
        ]
        return RawExecutionOutput(
            test_name=data.get("test_name", ""),
            execution_kind=data.get("execution_kind", "api"),
            outcome=data.get("outcome"),
            artifacts=artifacts,
            claimed_actions=claimed,
            change_ref=data.get("change_ref"),
            metadata=data.get("metadata", {}),
        )
    except (KeyError, TypeError, binascii.Error, ValidationError) as e:
        raise BackendResponseError(f"Malformed execution payload: {e}") from e


class HttpExecutionBackend:
    """Execution backend backed by a remote HTTP service.

    Usage:
        async with HttpExecutionBackend(config.backend) as backend:
            raw = await backend.execute(request, attempt=1, change_ref="abc123")
    """

    def __init__(
        self,
        config: BackendConfig | None = None,
        token: str | None = None,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        """Initialize the backend.

        Args:
            config: Service URL, timeout and retry count
            token: Bearer token (defaults to PROOFGATE_BACKEND_TOKEN)
            backoff_multiplier: Exponential backoff multiplier in seconds
            backoff_max: Maximum wait between retries in seconds
        """
        self._config = config or BackendConfig()
        if not self._config.base_url:
            raise ValueError("Execution backend requires backend.base_url")
        self._token = token if token is not None else get_backend_token()
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpExecutionBackend:
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Content-Type": "application/json",
                "User-Agent": f"proofgate/{__version__}",
            }
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url or "",
                headers=headers,
                timeout=self._config.timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Opaque calls
    # -------------------------------------------------------------------------

    async def execute(
        self,
        request: VerificationRequest,
        attempt: int,
        change_ref: str,
    ) -> RawExecutionOutput:
        body = {
            "run_id": request.run_id,
            "attempt": attempt,
            "target": change_ref,
            "criteria": list(request.criteria),
        }
        data = await self._post(EXECUTIONS_ENDPOINT, body)
        return parse_execution_output(data)

    async def apply_fix(self, plan: FixPlan) -> FixApplication:
        data = await self._post(FIXES_ENDPOINT, plan.model_dump(mode="json"))
        try:
            return FixApplication.model_validate(data)
        except ValidationError as e:
            raise BackendResponseError(f"Malformed fix payload: {e}") from e

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        client = self._ensure_client()

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(multiplier=self._backoff_multiplier, max=self._backoff_max),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                attempt_num = attempt.retry_state.attempt_number
                logger.debug(f"POST {path} (attempt {attempt_num}/{self._config.max_retries})")
                try:
                    response = await client.post(path, json=body)
                except httpx.TransportError as e:
                    logger.warning(f"Execution service unreachable on {path}: {e}")
                    raise BackendUnavailableError(f"Execution service unreachable: {e}") from e
                return self._handle_response(response)

        raise BackendUnavailableError(f"No response from {path}")

    @staticmethod
    def _handle_response(response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            try:
                message = response.json().get("error", response.text)
            except (json.JSONDecodeError, AttributeError):
                message = response.text
            if response.status_code >= 500:
                logger.warning(f"Execution service error {response.status_code}: {message}")
            raise BackendResponseError(
                f"Execution service returned {response.status_code}: {message}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise BackendResponseError(f"Invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise BackendResponseError("Expected a JSON object response")
        return data
