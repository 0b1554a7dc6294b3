"""HandleRegistry tests.

Covers:
- Registering and removing handles
- Signalling one or all live children
- Liveness queries and on-empty callbacks
"""

from __future__ import annotations

import signal
from unittest import mock

import pytest

from toolrunner.runtime import HandleRegistry, Invocation, ProcessHandle, TerminationEvent


def make_handle(pid: str, program: str = "dirb") -> ProcessHandle:
    return ProcessHandle(process_identifier=pid, invocation=Invocation(program))


@pytest.fixture
def send_signal_mock():
    with mock.patch("toolrunner.runtime.registry.send_signal", return_value=True) as patched:
        yield patched


class TestRegistration:
    """register / unregister / get."""

    def test_register_and_unregister(self):
        registry = HandleRegistry()
        handle = make_handle("1001")

        registry.register(handle)
        assert "1001" in registry
        assert registry.total_count == 1
        assert registry.get("1001") is handle

        assert registry.unregister("1001") is True
        assert "1001" not in registry
        assert registry.total_count == 0

    def test_register_duplicate_raises_error(self):
        registry = HandleRegistry()
        registry.register(make_handle("1001"))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(make_handle("1001", "tiger"))

    def test_register_without_identifier_raises_error(self):
        registry = HandleRegistry()

        with pytest.raises(ValueError):
            registry.register(make_handle(""))

    def test_unregister_nonexistent_returns_false(self):
        assert HandleRegistry().unregister("nonexistent") is False

    def test_get_unknown(self):
        assert HandleRegistry().get("1001") is None


class TestSignalling:
    """signal / cancel / cancel_all."""

    def test_signal_live_handle(self, send_signal_mock):
        registry = HandleRegistry()
        registry.register(make_handle("1001"))

        assert registry.signal("1001", 9) is True
        send_signal_mock.assert_called_once_with("1001", 9, group=True)

    def test_signal_unknown_is_noop(self, send_signal_mock):
        assert HandleRegistry().signal("1001") is False
        send_signal_mock.assert_not_called()

    def test_signal_terminated_handle_is_noop(self, send_signal_mock):
        registry = HandleRegistry()
        handle = make_handle("1001")
        registry.register(handle)
        handle.finish(TerminationEvent(exit_code=0))

        assert registry.signal("1001") is False
        send_signal_mock.assert_not_called()

    def test_cancel_sends_sigterm(self, send_signal_mock):
        registry = HandleRegistry()
        registry.register(make_handle("1001"))

        assert registry.cancel("1001") is True
        send_signal_mock.assert_called_once_with("1001", signal.SIGTERM, group=True)

    def test_cancel_reports_undelivered(self, send_signal_mock):
        send_signal_mock.return_value = False
        registry = HandleRegistry()
        registry.register(make_handle("1001"))

        assert registry.cancel("1001") is False

    def test_cancel_all(self, send_signal_mock):
        registry = HandleRegistry()
        for pid in ("1001", "1002", "1003"):
            registry.register(make_handle(pid))
        registry.get("1003").finish(TerminationEvent(exit_code=0))

        count = registry.cancel_all()

        assert count == 2
        signalled = [call.args[0] for call in send_signal_mock.call_args_list]
        assert signalled == ["1001", "1002"]

    def test_cancel_all_empty(self, send_signal_mock):
        assert HandleRegistry().cancel_all() == 0


class TestQueries:
    """Liveness queries."""

    def test_has_active_handles(self):
        registry = HandleRegistry()
        assert registry.has_active_handles() is False

        handle = make_handle("1001")
        registry.register(handle)
        assert registry.has_active_handles() is True

        handle.finish(TerminationEvent(signal=15))
        assert registry.has_active_handles() is False

    def test_counts(self):
        registry = HandleRegistry()
        registry.register(make_handle("1001"))
        registry.register(make_handle("1002"))
        registry.get("1002").finish(TerminationEvent(exit_code=1))

        assert registry.active_count == 1
        assert registry.total_count == 2
        assert len(registry) == 2

    def test_list_active_in_registration_order(self):
        registry = HandleRegistry()
        handles = [make_handle(pid) for pid in ("3", "1", "2")]
        for handle in handles:
            registry.register(handle)

        assert registry.list_active() == handles


class TestOnEmptyCallbacks:
    """Callbacks fired when the last handle leaves."""

    def test_fires_when_last_handle_removed(self):
        registry = HandleRegistry()
        callback = mock.MagicMock()
        registry.add_on_empty_callback(callback)
        registry.register(make_handle("1001"))
        registry.register(make_handle("1002"))

        registry.unregister("1001")
        callback.assert_not_called()

        registry.unregister("1002")
        callback.assert_called_once()

    def test_removed_callback_not_called(self):
        registry = HandleRegistry()
        callback = mock.MagicMock()
        registry.add_on_empty_callback(callback)
        registry.remove_on_empty_callback(callback)
        registry.register(make_handle("1001"))

        registry.unregister("1001")

        callback.assert_not_called()

    def test_failing_callback_does_not_stop_others(self):
        registry = HandleRegistry()
        failing = mock.MagicMock(side_effect=RuntimeError("boom"))
        second = mock.MagicMock()
        registry.add_on_empty_callback(failing)
        registry.add_on_empty_callback(second)
        registry.register(make_handle("1001"))

        assert registry.unregister("1001") is True
        second.assert_called_once()


class TestProcessHandle:
    """Handle bookkeeping used by the registry."""

    def test_finish_is_single_fire(self):
        terminations = []
        handle = ProcessHandle(
            process_identifier="1001",
            invocation=Invocation("dirb"),
            on_termination=terminations.append,
        )

        first = TerminationEvent(exit_code=0)
        assert handle.finish(first) is True
        assert handle.finish(TerminationEvent(signal=9)) is False

        assert terminations == [first]
        assert handle.process_identifier == ""
        assert handle.pid is None
        assert handle.termination is first

    def test_no_data_after_finish(self):
        from toolrunner.runtime import OutputEvent, StreamName

        data = []
        handle = ProcessHandle(
            process_identifier="1001",
            invocation=Invocation("dirb"),
            on_data=data.append,
        )

        handle.deliver(OutputEvent(stream=StreamName.STDOUT, text="before"))
        handle.finish(TerminationEvent(exit_code=0))
        handle.deliver(OutputEvent(stream=StreamName.STDOUT, text="after"))

        assert data == ["before"]

    def test_pid(self):
        assert make_handle("1001").pid == 1001

    @pytest.mark.asyncio
    async def test_wait(self):
        handle = make_handle("1001")
        event = TerminationEvent(exit_code=2)
        handle.finish(event)
        assert await handle.wait() is event
