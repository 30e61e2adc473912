"""Bounded waiting for thread services to report healthy."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import requests

from iso_threads.control_plane.providers import ExternalResourceProvider
from iso_threads.errors import ExternalCommandError

logger = logging.getLogger(__name__)

READY_STATES = {"healthy", "running"}
HTTP_PROBE_TIMEOUT_S = 5.0


@dataclass
class HealthReport:
    ready: list[str] = field(default_factory=list)
    pending: dict[str, str] = field(default_factory=dict)
    waited_s: float = 0.0

    @property
    def timed_out(self) -> bool:
        return bool(self.pending)

    def summary(self) -> str:
        if not self.pending:
            return f"all services ready after {self.waited_s:.0f}s"
        waiting = ", ".join(f"{name} ({state})" for name, state in sorted(self.pending.items()))
        return f"not ready after {self.waited_s:.0f}s: {waiting}"


class HealthWaiter:
    def __init__(
        self,
        provider: ExternalResourceProvider,
        *,
        timeout_s: float,
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.sleep = sleep
        self.clock = clock

    def wait_for_containers(self, names: Iterable[str]) -> HealthReport:
        """Poll until every container is ready or the timeout elapses (never raises on timeout)."""

        started = self.clock()
        deadline = started + self.timeout_s
        report = HealthReport(pending={name: "unknown" for name in names})
        while True:
            for name in list(report.pending):
                try:
                    state = self.provider.container_health(name)
                except ExternalCommandError as exc:
                    state = f"error: {exc}"
                if state in READY_STATES:
                    del report.pending[name]
                    report.ready.append(name)
                    logger.info("%s is %s", name, state)
                else:
                    report.pending[name] = state
            if not report.pending or self.clock() >= deadline:
                break
            self.sleep(min(self.poll_interval_s, max(0.0, deadline - self.clock())))
        report.waited_s = self.clock() - started
        if report.timed_out:
            logger.warning("health check timed out: %s", report.summary())
        return report

    def wait_for_http(self, url: str) -> bool:
        """Poll ``url`` until it answers with a non-error status or the timeout elapses."""

        deadline = self.clock() + self.timeout_s
        while True:
            try:
                response = requests.get(url, timeout=HTTP_PROBE_TIMEOUT_S)
                if response.status_code < 400:
                    logger.info("%s answered %s", url, response.status_code)
                    return True
                logger.debug("%s answered %s", url, response.status_code)
            except requests.RequestException as exc:
                logger.debug("%s not reachable yet: %s", url, exc)
            if self.clock() >= deadline:
                logger.warning("application at %s did not become ready", url)
                return False
            self.sleep(min(self.poll_interval_s, max(0.0, deadline - self.clock())))
