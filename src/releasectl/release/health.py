"""Liveness endpoint polling."""

import threading
import time
from datetime import datetime
from typing import Callable

import httpx

from releasectl.config import HealthConfig
from releasectl.core.exceptions import HealthCheckTimeout
from releasectl.core.logging import get_logger
from releasectl.release.models import HealthCheckResult

logger = get_logger(__name__)

# Floor for a single request timeout so near-deadline probes still get a chance
MIN_REQUEST_TIMEOUT = 0.05


class HealthVerifier:
    """Poll a liveness endpoint until it returns 2xx or the deadline passes.

    Connection errors, request timeouts and non-2xx responses all count as
    "not yet healthy". The wait between probes is cancellable; a cancelled
    wait is reported the same way as a timeout.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        interval: float = 2.0,
        request_timeout: float = 5.0,
        initial_delay: float = 0.0,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.interval = interval
        self.request_timeout = request_timeout
        self.initial_delay = initial_delay
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cancelled = threading.Event()

    @classmethod
    def from_config(cls, config: HealthConfig, client: httpx.Client | None = None) -> "HealthVerifier":
        return cls(
            timeout=config.timeout,
            interval=config.interval,
            request_timeout=config.request_timeout,
            initial_delay=config.initial_delay,
            client=client,
        )

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def cancel(self) -> None:
        """Interrupt a pending wait."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; return True if cancelled."""
        if seconds <= 0:
            return self._cancelled.is_set()
        return self._cancelled.wait(seconds)

    def probe(self, url: str, timeout: float | None = None) -> HealthCheckResult:
        """Issue a single liveness request."""
        request_timeout = timeout if timeout is not None else self.request_timeout
        started = time.perf_counter()
        timestamp = datetime.utcnow()

        try:
            response = self.client.get(url, timeout=request_timeout)
        except httpx.HTTPError as e:
            return HealthCheckResult(
                target=url,
                timestamp=timestamp,
                healthy=False,
                latency=time.perf_counter() - started,
                error=f"{type(e).__name__}: {e}",
            )

        healthy = 200 <= response.status_code < 300
        return HealthCheckResult(
            target=url,
            timestamp=timestamp,
            healthy=healthy,
            latency=time.perf_counter() - started,
            status_code=response.status_code,
            error=None if healthy else f"HTTP {response.status_code}",
        )

    def wait_until_healthy(self, url: str) -> list[HealthCheckResult]:
        """Poll ``url`` until it is healthy.

        Returns:
            All probe results, the last one healthy

        Raises:
            HealthCheckTimeout: If the deadline passes or the wait is cancelled
        """
        deadline = self._clock() + self.timeout
        results: list[HealthCheckResult] = []

        if self.initial_delay > 0:
            if self._sleep(min(self.initial_delay, self.timeout)):
                raise self._timeout(url, results, cancelled=True)

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._timeout(url, results)

            result = self.probe(url, timeout=max(min(self.request_timeout, remaining), MIN_REQUEST_TIMEOUT))
            results.append(result)

            if result.healthy:
                logger.info(f"{url} healthy after {len(results)} attempt(s)")
                return results

            logger.debug(f"Probe {len(results)} of {url} not healthy: {result.error}")

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._timeout(url, results)
            if self._sleep(min(self.interval, remaining)):
                raise self._timeout(url, results, cancelled=True)

    def _timeout(
        self,
        url: str,
        results: list[HealthCheckResult],
        cancelled: bool = False,
    ) -> HealthCheckTimeout:
        last_error = results[-1].error if results else None
        what = "cancelled" if cancelled else f"timed out after {self.timeout}s"
        logger.warning(f"Health check of {url} {what} ({len(results)} attempts)")
        return HealthCheckTimeout(
            f"Health check of {url} {what}",
            url=url,
            timeout_seconds=self.timeout,
            attempts=len(results),
            last_error=last_error,
        )
