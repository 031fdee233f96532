"""Generation service integration: one webhook per chain step.

Each step is a signed JSON POST. Server errors, rate limiting and timeouts are
retried with exponential backoff; anything else is surfaced as
``UpstreamError`` so the orchestrator can fail the step.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import httpx

from app.config import settings
from app.core.exceptions import StepWebhookNotConfiguredError, UpstreamError
from app.services.steps.chain import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    StepInvocation,
    StepResponse,
    get_step,
)

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


def to_kebab_case(key: str) -> str:
    """``targetMarket`` -> ``target-market``."""
    return _CAMEL_BOUNDARY.sub(r"\1-\2", key).lower()


def with_kebab_aliases(inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``inputs`` adding a kebab-case alias for every camelCase key."""
    result = dict(inputs)
    for key, value in inputs.items():
        alias = to_kebab_case(key)
        if alias not in result:
            result[alias] = value
    return result


def sign_request_body(*, secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_backoff_delay(
    attempt: int,
    *,
    initial_delay_seconds: float,
    max_delay_seconds: float,
    backoff_multiplier: float,
) -> float:
    """Delay before retry number ``attempt`` (0-indexed)."""
    return min(initial_delay_seconds * (backoff_multiplier**attempt), max_delay_seconds)


def build_request_body(invocation: StepInvocation, *, timestamp: str | None = None) -> dict[str, Any]:
    step = get_step(invocation.step)
    inputs = (
        with_kebab_aliases(invocation.inputs) if step.kebab_case_inputs else dict(invocation.inputs)
    )
    body: dict[str, Any] = {
        "submissionId": invocation.submission_id,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "step": invocation.step,
        "inputs": inputs,
    }
    if invocation.previous_output:
        body["previousOutput"] = invocation.previous_output
    if step.wrap_request_in_payload:
        return {"payload": body}
    return body


def parse_step_response(data: Any) -> StepResponse:
    """Read ``{status, payload}`` answers; legacy bare payloads count as completed.

    The payload is returned still wrapped: envelope removal is the
    normalizer's job so callbacks and direct responses are handled alike.
    """
    head = data[0] if isinstance(data, list) and data else data
    status = (
        STATUS_FAILED
        if isinstance(head, dict) and head.get("status") == STATUS_FAILED
        else STATUS_COMPLETED
    )
    return StepResponse(status=status, payload=data, raw=data)


class GenerationServiceClient:
    """Client for the per-step generation webhooks.

    Usable as an async context manager (one shared ``httpx.AsyncClient``) or
    directly, in which case a client is opened per call.
    """

    def __init__(
        self,
        *,
        auth_token: str | None = None,
        signature_secret: str | None = None,
        timeout: float | None = None,
        retry_policy: Mapping[str, float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.auth_token = auth_token if auth_token is not None else settings.generation_auth_token
        self.signature_secret = (
            signature_secret
            if signature_secret is not None
            else settings.generation_signature_secret
        )
        self.timeout = timeout if timeout is not None else settings.generation_timeout_seconds
        policy = dict(retry_policy or settings.get_retry_policy())
        self.max_retries = int(policy["max_retries"])
        self.initial_delay_seconds = float(policy["initial_delay_seconds"])
        self.max_delay_seconds = float(policy["max_delay_seconds"])
        self.backoff_multiplier = float(policy["backoff_multiplier"])
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GenerationServiceClient":
        self._client = self._build_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    def _headers(self, raw_body: bytes) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if self.signature_secret:
            headers["X-Signature"] = sign_request_body(
                secret=self.signature_secret,
                raw_body=raw_body,
            )
        return headers

    def _delay(self, attempt: int) -> float:
        return compute_backoff_delay(
            attempt,
            initial_delay_seconds=self.initial_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )

    async def invoke(self, invocation: StepInvocation) -> StepResponse:
        """Run one step and return its parsed response."""
        url = settings.get_step_webhook_url(invocation.step)
        if not url:
            raise StepWebhookNotConfiguredError(invocation.step)

        raw_body = json.dumps(build_request_body(invocation), default=str).encode("utf-8")
        headers = self._headers(raw_body)
        log_context = {"step": invocation.step, "submission_id": invocation.submission_id}

        if self._client is not None:
            response = await self._post_with_retries(self._client, url, raw_body, headers, log_context)
        else:
            async with self._build_client() as client:
                response = await self._post_with_retries(client, url, raw_body, headers, log_context)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(
                invocation.step,
                "response is not valid JSON",
                http_status=response.status_code,
            ) from e

        parsed = parse_step_response(data)
        logger.info(
            "Generation step response received",
            extra={
                **log_context,
                "status": parsed.status,
                "is_array": isinstance(data, list),
                "data_keys": list(data.keys())[:10] if isinstance(data, dict) else [],
            },
        )
        return parsed

    async def _post_with_retries(
        self,
        client: httpx.AsyncClient,
        url: str,
        raw_body: bytes,
        headers: dict[str, str],
        log_context: dict[str, Any],
    ) -> httpx.Response:
        step_name = log_context["step"]
        attempt = 0
        while True:
            try:
                response = await client.post(url, content=raw_body, headers=headers)
            except httpx.TimeoutException as e:
                if attempt >= self.max_retries:
                    logger.warning("Generation step timed out", extra={**log_context, "attempt": attempt + 1})
                    raise UpstreamError(step_name, "request timed out") from e
                delay = self._delay(attempt)
                logger.warning(
                    "Generation step timeout, retrying",
                    extra={**log_context, "attempt": attempt + 1, "delay_seconds": delay},
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except httpx.HTTPError as e:
                logger.warning("Generation step HTTP error", extra={**log_context, "error": str(e)})
                raise UpstreamError(step_name, str(e)) from e

            retryable = response.status_code >= 500 or response.status_code == 429
            if retryable and attempt < self.max_retries:
                delay = self._delay(attempt)
                logger.warning(
                    "Generation step rate limited, retrying"
                    if response.status_code == 429
                    else "Generation step server error, retrying",
                    extra={
                        **log_context,
                        "http_status": response.status_code,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                    },
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if response.is_error:
                logger.warning(
                    "Generation step request failed",
                    extra={
                        **log_context,
                        "http_status": response.status_code,
                        "error_text": response.text[:500],
                    },
                )
                raise UpstreamError(
                    step_name,
                    f"{response.status_code} {response.reason_phrase} - {response.text[:500]}",
                    http_status=response.status_code,
                )
            return response
