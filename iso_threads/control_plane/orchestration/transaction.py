"""Ordered steps with compensating actions, run by a small transaction runner.

Each ``Step`` pairs an action with an optional rollback and a failure policy:

- ``rollback``: a failure stops the run and compensates every started step in
  reverse order, the failing step first (its rollback must tolerate partial work);
- ``warn``: a failure is recorded as a warning and the run continues;
- ``fatal``: a failure stops the run without compensation.

Rollback failures never mask the original error; they are collected as warnings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

StepPolicy = Literal["rollback", "warn", "fatal"]
STEP_POLICIES = ("rollback", "warn", "fatal")

SUCCEEDED = "succeeded"
WARNED = "warned"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[], Any]
    rollback: Callable[[], Any] | None = None
    policy: StepPolicy = "rollback"
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.policy not in STEP_POLICIES:
            raise ValueError(f"unknown_step_policy:{self.policy}")


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: str
    detail: str = ""


@dataclass
class TransactionReport:
    outcomes: list[StepOutcome] = field(default_factory=list)
    failed_step: str | None = None
    error: Exception | None = None
    rolled_back: list[str] = field(default_factory=list)
    rollback_warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    def names(self, status: str) -> list[str]:
        return [outcome.name for outcome in self.outcomes if outcome.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self.names(SUCCEEDED)

    @property
    def warnings(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == WARNED]

    @property
    def skipped(self) -> list[str]:
        return self.names(SKIPPED)


class TransactionRunner:
    def __init__(self, steps: Iterable[Step], *, label: str = "transaction") -> None:
        self.steps = list(steps)
        self.label = label

    def run(self) -> TransactionReport:
        report = TransactionReport()
        started: list[Step] = []
        for step in self.steps:
            if not step.enabled:
                report.outcomes.append(StepOutcome(step.name, SKIPPED))
                logger.debug("%s: skipped %s", self.label, step.name)
                continue
            started.append(step)
            logger.info("%s: %s", self.label, step.name)
            try:
                step.action()
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__
                if step.policy == "warn":
                    logger.warning("%s: %s failed, continuing: %s", self.label, step.name, detail)
                    report.outcomes.append(StepOutcome(step.name, WARNED, detail))
                    continue
                logger.error("%s: %s failed: %s", self.label, step.name, detail)
                report.outcomes.append(StepOutcome(step.name, FAILED, detail))
                report.failed_step = step.name
                report.error = exc
                if step.policy == "rollback":
                    self._compensate(reversed(started), report)
                return report
            report.outcomes.append(StepOutcome(step.name, SUCCEEDED))
        return report

    def _compensate(self, steps: Iterable[Step], report: TransactionReport) -> None:
        for step in steps:
            if step.rollback is None:
                continue
            try:
                step.rollback()
            except Exception as exc:
                message = f"{step.name}: {exc}"
                logger.warning("%s: rollback of %s failed: %s", self.label, step.name, exc)
                report.rollback_warnings.append(message)
            else:
                logger.info("%s: rolled back %s", self.label, step.name)
                report.rolled_back.append(step.name)
