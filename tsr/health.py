from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from .docker_ops import DockerRuntime


logger = logging.getLogger("tsr")


def check_http(url: str, timeout_s: float = 2.0, accept_below: int = 500) -> tuple[bool, str, float | None]:
    """Call a service over HTTP.

    Any status below ``accept_below`` counts as ready: login pages and
    redirects (302, 401, 403) mean the application is serving.
    Returns (is_ready, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code >= accept_below:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def http_probe(url: str, timeout_s: float = 2.0) -> Callable[[], bool]:
    def probe() -> bool:
        ok, _, _ = check_http(url, timeout_s=timeout_s)
        return ok

    return probe


def exec_probe(runtime: DockerRuntime, container: str, cmd: list[str]) -> Callable[[], bool]:
    """Ready when ``cmd`` exits 0 inside ``container`` (e.g. ``mysqladmin ping``)."""

    def probe() -> bool:
        return runtime.exec(container, cmd).ok

    return probe


def running_probe(runtime: DockerRuntime, container: str) -> Callable[[], bool]:
    def probe() -> bool:
        ref = runtime.get_container(container)
        return ref is not None and ref.running

    return probe


def all_of(*probes: Callable[[], bool]) -> Callable[[], bool]:
    def probe() -> bool:
        return all(p() for p in probes)

    return probe


def wait_until(
    probe: Callable[[], bool],
    max_attempts: int,
    interval_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[bool, int]:
    """Poll ``probe`` up to ``max_attempts`` times with a fixed interval.

    A probe that raises counts as not ready for that attempt.
    Returns (became_ready, attempts_used).
    """
    max_attempts = max(1, int(max_attempts))
    for attempt in range(1, max_attempts + 1):
        try:
            if probe():
                return True, attempt
        except Exception as e:
            logger.warning("Readiness probe raised on attempt %d/%d: %s: %s", attempt, max_attempts, type(e).__name__, e)
        if attempt < max_attempts:
            sleep(interval_s)
    return False, max_attempts
