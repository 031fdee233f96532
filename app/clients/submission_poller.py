"""Read/poll client for submission status.

A small explicit state machine over ``asyncio.sleep``::

    idle -> polling -> (cooldown -> polling)* -> settled | gave_up

Polling continues while any step (or the submission itself) is pending. A
429 from the read endpoint parks the client for a fixed cooldown window and
every later poll uses the slower steady interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, Literal

import httpx

from app.config import settings
from app.core.exceptions import PollGaveUpError, RateLimitExceededError, SubmissionNotFoundError
from app.services.steps.chain import COMPONENT_STATUS_KEY, STATUS_PENDING

logger = logging.getLogger(__name__)

PollState = Literal["idle", "polling", "cooldown", "settled", "gave_up"]
Sleeper = Callable[[float], Awaitable[Any]]


def is_settled(snapshot: Mapping[str, Any]) -> bool:
    """True once neither the submission nor any step is pending."""
    if snapshot.get("status") == STATUS_PENDING:
        return False
    components = snapshot.get("components")
    status_map = components.get(COMPONENT_STATUS_KEY) if isinstance(components, Mapping) else None
    if isinstance(status_map, Mapping) and STATUS_PENDING in status_map.values():
        return False
    return True


class SubmissionPoller:
    """Polls ``GET /submissions/{id}`` until the submission settles."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        interval_seconds: float | None = None,
        steady_interval_seconds: float | None = None,
        cooldown_seconds: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper = asyncio.sleep,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.get_poll_interval()
        )
        self.steady_interval_seconds = (
            steady_interval_seconds
            if steady_interval_seconds is not None
            else settings.poll_steady_interval_seconds
        )
        self.cooldown_seconds = (
            cooldown_seconds
            if cooldown_seconds is not None
            else settings.poll_rate_limit_cooldown_seconds
        )
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.poll_max_attempts)
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._state: PollState = "idle"
        self.attempts = 0

    @property
    def state(self) -> PollState:
        return self._state

    def _submission_url(self, submission_id: str) -> str:
        return f"{self.base_url}{settings.api_v1_prefix}/submissions/{submission_id}"

    async def fetch(self, client: httpx.AsyncClient, submission_id: str) -> dict[str, Any]:
        """One read of the submission record."""
        response = await client.get(self._submission_url(submission_id))
        if response.status_code == 429:
            raise RateLimitExceededError("submission reads")
        if response.status_code == 404:
            raise SubmissionNotFoundError(submission_id)
        response.raise_for_status()
        return response.json()

    async def observe(self, submission_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield every successful snapshot until the submission settles.

        Raises:
            PollGaveUpError: the attempt cap was reached while still pending.
            SubmissionNotFoundError: the submission does not exist.
        """
        interval = self.interval_seconds
        self.attempts = 0
        self._state = "polling"
        log_context = {"submission_id": submission_id}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while True:
                if self.attempts >= self.max_attempts:
                    self._state = "gave_up"
                    logger.warning(
                        "Polling gave up",
                        extra={**log_context, "attempts": self.attempts},
                    )
                    raise PollGaveUpError(submission_id, self.attempts)

                self.attempts += 1
                try:
                    snapshot = await self.fetch(client, submission_id)
                except RateLimitExceededError:
                    self._state = "cooldown"
                    interval = self.steady_interval_seconds
                    logger.info(
                        "Rate limited while polling, cooling down",
                        extra={
                            **log_context,
                            "cooldown_seconds": self.cooldown_seconds,
                            "next_interval_seconds": interval,
                        },
                    )
                    await self._sleep(self.cooldown_seconds)
                    self._state = "polling"
                    continue
                except SubmissionNotFoundError:
                    self._state = "idle"
                    raise
                except httpx.HTTPError as e:
                    logger.warning(
                        "Poll request failed, retrying next tick",
                        extra={**log_context, "attempt": self.attempts, "error": str(e)},
                    )
                    await self._sleep(interval)
                    continue

                yield snapshot
                if is_settled(snapshot):
                    self._state = "settled"
                    logger.info(
                        "Submission settled",
                        extra={
                            **log_context,
                            "status": snapshot.get("status"),
                            "attempts": self.attempts,
                        },
                    )
                    return
                await self._sleep(interval)

    async def wait_until_settled(self, submission_id: str) -> dict[str, Any]:
        """Poll to completion and return the final snapshot."""
        last: dict[str, Any] = {}
        async for snapshot in self.observe(submission_id):
            last = snapshot
        return last
