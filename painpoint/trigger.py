"""HTTP hand-off from one pipeline stage to the next.

A trigger is never retried: a non-2xx answer or a timeout becomes a
StageTriggerError so the calling job fails visibly instead of risking
duplicate downstream work.
"""

import json
import logging
import time
from typing import Callable

import httpx

from painpoint.errors import StageTriggerError

logger = logging.getLogger(__name__)


class StageTrigger:
    """Posts stage hand-off requests."""

    def __init__(
        self,
        api_key: str = "",
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            api_key: Shared secret sent as ``X-API-Key`` when set.
            transport: Optional httpx transport (tests use MockTransport).
            clock: Monotonic clock the request deadline is measured on.
        """
        self.api_key = api_key
        self._transport = transport
        self.clock = clock

    def trigger_next(
        self,
        stage_url: str,
        payload: dict,
        timeout: float,
        step: str = "next_stage",
        details: dict | None = None,
    ) -> dict:
        """POST ``payload`` to ``stage_url`` and wait up to ``timeout`` seconds.

        httpx only bounds each connect, read and write on its own, so the
        body is streamed and checked against a wall-clock deadline.

        Args:
            stage_url: Endpoint of the next stage.
            payload: JSON body, normally the job id plus stage parameters.
            timeout: Hard limit for the whole request in seconds.
            step: Name of the hand-off, used in the error.
            details: Work already completed, copied into the error.

        Returns:
            Decoded JSON response body (empty dict if the body is not JSON).

        Raises:
            StageTriggerError: Non-2xx response, timeout or connection error.
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        deadline = self.clock() + timeout
        timed_out = StageTriggerError(step, f"timed out after {timeout:.0f}s", details)

        logger.info(f"[Trigger] {step}: POST {stage_url} (timeout {timeout:.0f}s)")
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                with client.stream("POST", stage_url, json=payload, headers=headers) as response:
                    chunks = []
                    for chunk in response.iter_bytes():
                        if self.clock() > deadline:
                            logger.warning(f"[Trigger] {step}: deadline passed while reading the response")
                            raise timed_out
                        chunks.append(chunk)
                    status_code = response.status_code
                    ok = response.is_success
        except httpx.TimeoutException as e:
            raise timed_out from e
        except httpx.HTTPError as e:
            raise StageTriggerError(step, f"request failed: {e}", details) from e

        if self.clock() > deadline:
            raise timed_out

        body = b"".join(chunks)
        if not ok:
            text = body.decode("utf-8", errors="replace")[:200]
            raise StageTriggerError(step, f"HTTP {status_code}: {text}", details)

        logger.info(f"[Trigger] {step}: {status_code}")
        try:
            data = json.loads(body)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}
