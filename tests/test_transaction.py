from __future__ import annotations

import pytest

from iso_threads.control_plane.orchestration.transaction import Step, TransactionRunner


def _recording_step(
    events: list[str], name: str, *, fail: bool = False, rollback_fails: bool = False, **kwargs
) -> Step:
    def action() -> None:
        events.append(f"do {name}")
        if fail:
            raise RuntimeError(f"{name} broke")

    def rollback() -> None:
        events.append(f"undo {name}")
        if rollback_fails:
            raise RuntimeError(f"{name} undo broke")

    return Step(name, action, rollback, **kwargs)


def test_all_steps_succeed() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [_recording_step(events, "a"), _recording_step(events, "b")]
    ).run()

    assert report.ok
    assert report.succeeded == ["a", "b"]
    assert events == ["do a", "do b"]


def test_failure_rolls_back_started_steps_in_reverse_order() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [
            _recording_step(events, "a"),
            _recording_step(events, "b"),
            _recording_step(events, "c", fail=True),
            _recording_step(events, "d"),
        ]
    ).run()

    assert not report.ok
    assert report.failed_step == "c"
    assert str(report.error) == "c broke"
    assert events == ["do a", "do b", "do c", "undo c", "undo b", "undo a"]
    assert report.rolled_back == ["c", "b", "a"]


def test_rollback_failure_is_collected_and_compensation_continues() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [
            _recording_step(events, "a"),
            _recording_step(events, "b", rollback_fails=True),
            _recording_step(events, "c", fail=True),
        ]
    ).run()

    assert report.failed_step == "c"
    assert report.rollback_warnings == ["b: b undo broke"]
    assert report.rolled_back == ["c", "a"]


def test_warn_policy_records_warning_and_continues() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [
            _recording_step(events, "a", fail=True, policy="warn"),
            _recording_step(events, "b"),
        ]
    ).run()

    assert report.ok
    assert [outcome.name for outcome in report.warnings] == ["a"]
    assert report.warnings[0].detail == "a broke"
    assert report.succeeded == ["b"]


def test_fatal_policy_stops_without_compensation() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [
            _recording_step(events, "a"),
            _recording_step(events, "b", fail=True, policy="fatal"),
            _recording_step(events, "c"),
        ]
    ).run()

    assert report.failed_step == "b"
    assert events == ["do a", "do b"]
    assert report.rolled_back == []


def test_disabled_steps_are_skipped() -> None:
    events: list[str] = []
    report = TransactionRunner(
        [_recording_step(events, "a", enabled=False), _recording_step(events, "b")]
    ).run()

    assert report.skipped == ["a"]
    assert events == ["do b"]


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown_step_policy:retry"):
        Step("a", lambda: None, policy="retry")  # type: ignore[arg-type]
