"""
Paced, retrying request queue for rate-limited HTTP backends.

See https://github.com/Blockstream/esplora/issues/449#issuecomment-1546000515
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from btcexplorer.constants import (
    DEFAULT_HARD_RETRY_BUDGET,
    DEFAULT_SOFT_RETRY_BUDGET,
    SOFT_ERROR_STATUSES,
)
from btcexplorer.errors import ExhaustedRetriesError
from btcexplorer.throttle import ThrottleController


def is_soft_error(status_code: int) -> bool:
    return status_code in SOFT_ERROR_STATUSES


class RequestQueue:
    """
    Issue HTTP requests through a shared ThrottleController.

    Each fetch has two attempt budgets:

    - soft budget: every attempt that ends in 429/5xx or a transport error.
      When it runs out on an errored response, that response is returned and
      the caller must inspect its status.
    - hard budget: transport errors only (much smaller). When it runs out the
      original exception is re-raised.

    A permit is held for one attempt only, so throttling paces requests but
    does not reserve queue positions.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        throttle: ThrottleController | None = None,
        soft_retry_budget: int = DEFAULT_SOFT_RETRY_BUDGET,
        hard_retry_budget: int = DEFAULT_HARD_RETRY_BUDGET,
    ):
        self.client = client
        self.throttle = throttle or ThrottleController()
        self.soft_retry_budget = soft_retry_budget
        self.hard_retry_budget = hard_retry_budget

    async def fetch(self, url: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        """
        Send a request, retrying soft and hard errors within their budgets.

        Args:
            url: Absolute request URL
            method: HTTP method
            **kwargs: Passed through to httpx.AsyncClient.request

        Returns:
            The first non-soft-error response, or the last soft-error response
            once the soft budget is spent

        Raises:
            httpx.HTTPError: The original transport error once the hard budget is spent
            ExhaustedRetriesError: The soft budget ran out on a transport error
        """
        soft_attempts = 0
        hard_attempts = 0

        while True:
            if self.throttle.throttled:
                delay = self.throttle.jitter_delay()
                logger.debug(f"Throttled, sleeping {delay:.3f}s before {method} {url}")
                await asyncio.sleep(delay)

            permit = await self.throttle.admit()
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                self.throttle.record_hard_error()
                soft_attempts += 1
                hard_attempts += 1
                logger.warning(
                    f"{method} {url} failed ({type(e).__name__}: {e}), "
                    f"attempt {hard_attempts}/{self.hard_retry_budget}"
                )
                if hard_attempts >= self.hard_retry_budget:
                    logger.error(f"Giving up on {method} {url} after {hard_attempts} errors")
                    raise
                if soft_attempts >= self.soft_retry_budget:
                    raise ExhaustedRetriesError(
                        f"Maximum retries exceeded for {method} {url}"
                    ) from e
                continue
            finally:
                self.throttle.release(permit)

            if is_soft_error(response.status_code):
                self.throttle.record_soft_error()
                soft_attempts += 1
                logger.debug(
                    f"{method} {url} returned {response.status_code}, "
                    f"attempt {soft_attempts}/{self.soft_retry_budget}"
                )
                if soft_attempts >= self.soft_retry_budget:
                    logger.warning(
                        f"Soft retry budget exhausted for {method} {url}, "
                        f"returning status {response.status_code}"
                    )
                    return response
                continue

            if response.is_success:
                self.throttle.record_success()
            else:
                self.throttle.record_completion()
            return response
