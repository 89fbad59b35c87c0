from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .settings import settings


class HealthResult(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timedOut"


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 0.5
    factor: float = 2.0
    cap_s: float = 8.0

    def delay(self, attempt: int) -> float:
        """Delay after the `attempt`-th failed probe (0-based)."""
        return min(self.cap_s, self.base_s * (self.factor ** attempt))

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(base_s=settings.health_base_s, factor=settings.health_factor, cap_s=settings.health_cap_s)


def check_health(
    url: str, timeout_s: float | None = None, client: httpx.Client | None = None
) -> tuple[bool, str, float | None]:
    """Call a service health endpoint once.

    HTTP 200 is healthy. Returns (is_healthy, message, latency_ms); latency is
    None when the service did not answer at all.
    """
    timeout_s = settings.health_request_timeout_s if timeout_s is None else timeout_s
    start = time.time()
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout_s)
        else:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url)
    except httpx.HTTPError as e:
        return False, f"No response: {type(e).__name__}", None
    latency_ms = round((time.time() - start) * 1000.0, 2)
    if resp.status_code != 200:
        return False, f"HTTP {resp.status_code}", latency_ms
    return True, "Healthy", latency_ms


def wait_healthy(
    service_name: str,
    endpoint: str,
    timeout_s: float,
    backoff: BackoffPolicy | None = None,
    *,
    check: Callable[[str], tuple[bool, str, float | None]] = check_health,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[HealthResult, str]:
    """Poll `endpoint` until it answers 200 or the budget runs out.

    Failed probes are retried with exponential backoff. Once the budget is
    spent the result is UNHEALTHY if the last probe got an HTTP answer and
    TIMED_OUT if the service never answered.
    """
    backoff = backoff or BackoffPolicy.from_settings()
    deadline = clock() + timeout_s
    attempt = 0
    answered = False
    msg = "not probed"
    while True:
        ok, msg, latency = check(endpoint)
        if ok:
            return HealthResult.HEALTHY, f"{service_name}: {msg} after {attempt + 1} probe(s)"
        answered = latency is not None
        remaining = deadline - clock()
        if remaining <= 0:
            break
        sleep(min(backoff.delay(attempt), remaining))
        attempt += 1
    result = HealthResult.UNHEALTHY if answered else HealthResult.TIMED_OUT
    return result, f"{service_name}: {msg} (gave up after {attempt + 1} probe(s))"
