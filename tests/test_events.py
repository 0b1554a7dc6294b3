"""Event model and error taxonomy tests."""

from __future__ import annotations

import pydantic
import pytest

from toolrunner.runtime import (
    AbnormalExitError,
    ElevationError,
    Outcome,
    OutputEvent,
    ProcessRunnerError,
    SpawnError,
    SpawnFailure,
    SpawnFailureKind,
    StartedEvent,
    StreamName,
    TerminationEvent,
)


class TestTerminationEvent:
    """Normalization and outcome classification."""

    def test_from_returncode_exit(self):
        event = TerminationEvent.from_returncode(3)
        assert event.exit_code == 3
        assert event.signal is None

    def test_from_returncode_signal(self):
        event = TerminationEvent.from_returncode(-9)
        assert event.exit_code is None
        assert event.signal == 9

    @pytest.mark.parametrize(
        "event, outcome",
        [
            (TerminationEvent(exit_code=0), Outcome.COMPLETED),
            (TerminationEvent(exit_code=1), Outcome.ABNORMAL_EXIT),
            (TerminationEvent(signal=15), Outcome.CANCELLED),
            (TerminationEvent(signal=9), Outcome.SIGNALLED),
            (
                TerminationEvent(
                    error=SpawnFailure(kind=SpawnFailureKind.NOT_FOUND, message="command not found")
                ),
                Outcome.SPAWN_FAILED,
            ),
            (
                TerminationEvent(
                    exit_code=126,
                    error=SpawnFailure(kind=SpawnFailureKind.ELEVATION_DECLINED, message="declined"),
                ),
                Outcome.SPAWN_FAILED,
            ),
        ],
    )
    def test_outcome(self, event: TerminationEvent, outcome: Outcome):
        assert event.outcome is outcome
        assert event.succeeded is (outcome is Outcome.COMPLETED)

    def test_frozen(self):
        event = TerminationEvent(exit_code=0)
        with pytest.raises(pydantic.ValidationError):
            event.exit_code = 1  # type: ignore[misc]

    def test_serializes(self):
        event = TerminationEvent(signal=15)
        data = event.model_dump()
        assert data["kind"] == "termination"
        assert data["signal"] == 15
        assert data["exit_code"] is None
        assert data["error"] is None


class TestOtherEvents:
    """StartedEvent and OutputEvent."""

    def test_started(self):
        event = StartedEvent(process_identifier="4242")
        assert event.kind == "started"
        assert event.timestamp > 0

    def test_output_defaults(self):
        event = OutputEvent(stream=StreamName.STDERR, text="warning")
        assert event.kind == "output"
        assert event.stream is StreamName.STDERR
        assert event.diagnostic is False

    def test_output_stream_from_string(self):
        event = OutputEvent(stream="stdout", text="line")
        assert event.stream is StreamName.STDOUT


class TestSpawnFailure:
    """SpawnFailure <-> SpawnError."""

    def test_round_trip_keeps_kind(self):
        error = SpawnError("dirb", SpawnFailureKind.NOT_FOUND, "command not found")
        failure = SpawnFailure.from_error(error)

        assert failure.kind is SpawnFailureKind.NOT_FOUND
        rebuilt = failure.to_error("dirb")
        assert type(rebuilt) is SpawnError
        assert str(rebuilt) == "dirb: command not found"

    @pytest.mark.parametrize(
        "kind",
        [
            SpawnFailureKind.ELEVATION_UNAVAILABLE,
            SpawnFailureKind.ELEVATION_DECLINED,
            SpawnFailureKind.ELEVATION_FAILED,
        ],
    )
    def test_elevation_kinds_become_elevation_errors(self, kind: SpawnFailureKind):
        assert kind.is_elevation
        error = SpawnFailure(kind=kind, message="pkexec refused").to_error("tiger")
        assert isinstance(error, ElevationError)
        assert isinstance(error, SpawnError)

    def test_plain_kinds_are_not_elevation(self):
        assert not SpawnFailureKind.NOT_FOUND.is_elevation
        assert not SpawnFailureKind.PERMISSION_DENIED.is_elevation
        assert not SpawnFailureKind.OS_ERROR.is_elevation


class TestErrors:
    """Exception hierarchy and messages."""

    def test_hierarchy(self):
        assert issubclass(SpawnError, ProcessRunnerError)
        assert issubclass(ElevationError, SpawnError)
        assert issubclass(AbnormalExitError, ProcessRunnerError)
        assert not issubclass(AbnormalExitError, SpawnError)

    def test_spawn_error_attributes(self):
        error = SpawnError("exiftool", SpawnFailureKind.PERMISSION_DENIED, "permission denied")
        assert error.program == "exiftool"
        assert error.kind is SpawnFailureKind.PERMISSION_DENIED
        assert error.message == "permission denied"

    def test_abnormal_exit_message(self):
        exited = AbnormalExitError("rtsort", "partial", 2, None)
        assert str(exited) == "rtsort exited with code 2"
        assert exited.output == "partial"

        killed = AbnormalExitError("rtsort", "", None, 9)
        assert str(killed) == "rtsort terminated by signal 9"
