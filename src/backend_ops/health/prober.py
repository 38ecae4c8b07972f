"""
Health Prober

Polls a liveness endpoint with bounded retries and exponential backoff. This is
the only gate that can declare a deployment good.

HostHealthProber issues the same GET with curl on the backend host, for hosts
whose application port is not reachable from the operator's machine.
"""

import json
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from ..exceptions import ChannelError
from ..remote.channel import RemoteChannel, RemoteHost
from ..utils.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]


def healthy_status(body: Any) -> bool:
    """Default predicate: the JSON body reports ``status == "healthy"``."""
    return isinstance(body, dict) and body.get("status") == "healthy"


@dataclass
class HealthCheckResult:
    """Outcome of one health-gate evaluation."""
    passed: bool
    attempts: int
    last_latency: Optional[float] = None
    last_error: Optional[str] = None
    url: Optional[str] = None

    def summary(self) -> str:
        outcome = "passed" if self.passed else "failed"
        latency = f"{self.last_latency * 1000:.0f}ms" if self.last_latency is not None else "n/a"
        text = f"health check {outcome} after {self.attempts} attempt(s), last latency {latency}"
        if self.last_error and not self.passed:
            text += f", last error: {self.last_error}"
        return text


class HealthProber:
    """Bounded-retry liveness check."""

    def __init__(self, request_timeout: float = 5.0, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def check_once(self, url: str, predicate: Predicate = healthy_status):
        """Issue a single GET. Returns (passed, latency, error)."""
        started = self._clock()
        try:
            response = self.session.get(url, timeout=self.request_timeout)
        except requests.Timeout:
            return False, self._clock() - started, f"timed out after {self.request_timeout}s"
        except requests.RequestException as e:
            return False, self._clock() - started, f"connection error: {e}"
        latency = self._clock() - started

        if not 200 <= response.status_code < 300:
            return False, latency, f"HTTP {response.status_code}"

        try:
            body = response.json()
        except ValueError:
            return False, latency, "response body is not JSON"

        if not predicate(body):
            return False, latency, f"unhealthy body: {body!r}"
        return True, latency, None

    def probe(self, url: str, max_attempts: int = 3, initial_delay: float = 1.0,
              backoff_multiplier: float = 2.0, predicate: Predicate = healthy_status,
              max_delay: float = 30.0) -> HealthCheckResult:
        """Poll ``url`` until it passes or ``max_attempts`` are used.

        Sleeps ``initial_delay * backoff_multiplier ** (attempt - 1)`` (capped at
        ``max_delay``) between attempts.
        """
        policy = BackoffPolicy(
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            multiplier=backoff_multiplier,
            max_delay=max_delay,
        )
        return self.probe_with_policy(url, policy, predicate)

    def probe_with_policy(self, url: str, policy: BackoffPolicy,
                          predicate: Predicate = healthy_status) -> HealthCheckResult:
        result = HealthCheckResult(passed=False, attempts=0, url=url)

        for attempt in range(1, policy.max_attempts + 1):
            passed, latency, error = self.check_once(url, predicate)
            result.attempts = attempt
            result.last_latency = latency
            result.last_error = error

            if passed:
                result.passed = True
                logger.info(f"✅ Health check passed: {url} (attempt {attempt}/{policy.max_attempts})")
                return result

            logger.warning(f"Health check failed (attempt {attempt}/{policy.max_attempts}): {error}")
            if attempt < policy.max_attempts:
                self._sleep(policy.delay_for(attempt))

        logger.error(f"❌ Health check failed after {policy.max_attempts} attempts: {url}")
        return result


class HostHealthProber(HealthProber):
    """Liveness check run with curl on the host itself over the remote channel."""

    CURL_TIMEOUT_EXIT = 28

    def __init__(self, channel: RemoteChannel, host: RemoteHost, request_timeout: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(request_timeout=request_timeout, sleep=sleep, clock=clock)
        self.channel = channel
        self.host = host

    def check_once(self, url: str, predicate: Predicate = healthy_status):
        started = self._clock()
        command = f"curl -s --max-time {self.request_timeout:g} -w '\\n%{{http_code}}' {shlex.quote(url)}"
        try:
            result = self.channel.exec(self.host, command, timeout=self.request_timeout + 5, check=False)
        except ChannelError as e:
            return False, self._clock() - started, f"connection error: {e}"
        latency = self._clock() - started

        if result.exit_code == self.CURL_TIMEOUT_EXIT:
            return False, latency, f"timed out after {self.request_timeout}s"
        if not result.ok:
            return False, latency, f"connection error: curl exited with {result.exit_code}"

        text, _, status = result.stdout.rpartition("\n")
        try:
            status_code = int(status.strip())
        except ValueError:
            return False, latency, "no HTTP status in curl output"
        if not 200 <= status_code < 300:
            return False, latency, f"HTTP {status_code}"

        try:
            body = json.loads(text)
        except ValueError:
            return False, latency, "response body is not JSON"

        if not predicate(body):
            return False, latency, f"unhealthy body: {body!r}"
        return True, latency, None
