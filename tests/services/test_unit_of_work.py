"""
Tests for the unit of work: commit-then-notify, retry on transient errors,
the attempt budget and the commit / rollback callbacks.
"""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from leaseledger.core.clock import Deadline
from leaseledger.core.errors import StateConflict, TransientFailure
from leaseledger.services.notifications import Notification
from leaseledger.services.unit_of_work import UnitOfWork, is_transient


def _note(kind: str = "rent.paid") -> Notification:
    return Notification(kind=kind, recipient_ids=["someone"], subject="s", message="m")


class Flaky:
    """Operation that raises ``exc`` for the first ``failures`` calls."""

    def __init__(self, uow: UnitOfWork, failures: int, exc: Exception | None = None):
        self.uow = uow
        self.failures = failures
        self.exc = exc or StaleDataError("version mismatch")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        self.uow.notify(_note(f"attempt.{self.calls}"))
        if self.calls <= self.failures:
            raise self.exc
        return "done"


class TestRun:
    async def test_notifications_sent_after_commit(self, uow, notifier):
        async def op():
            uow.notify(_note())
            assert notifier.sent == []
            return 42

        assert await uow.run(op) == 42
        assert notifier.kinds() == ["rent.paid"]

    async def test_notifications_without_recipients_are_dropped(self, uow, notifier):
        async def op():
            uow.notify(Notification(kind="rent.paid", recipient_ids=[], subject="s", message="m"))

        await uow.run(op)
        assert notifier.sent == []

    async def test_retries_transient_failures(self, uow, notifier):
        op = Flaky(uow, failures=2)
        assert await uow.run(op) == "done"
        assert op.calls == 3
        # staged notifications from rolled-back attempts are discarded
        assert notifier.kinds() == ["attempt.3"]

    async def test_gives_up_after_attempt_budget(self, uow, notifier):
        op = Flaky(uow, failures=10)
        with pytest.raises(TransientFailure):
            await uow.run(op)
        assert op.calls == uow.attempts
        assert notifier.sent == []

    async def test_expired_deadline_stops_retrying(self, uow, clock):
        op = Flaky(uow, failures=10)
        with pytest.raises(TransientFailure):
            await uow.run(op, Deadline(0, clock))
        assert op.calls == 1

    async def test_domain_errors_are_not_retried(self, uow, notifier):
        op = Flaky(uow, failures=1, exc=StateConflict("no"))
        with pytest.raises(StateConflict):
            await uow.run(op)
        assert op.calls == 1
        assert notifier.sent == []


class TestCallbacks:
    async def test_after_commit_runs_once_committed(self, uow):
        events = []

        async def op():
            uow.after_commit(lambda: events.append("committed"))
            uow.on_rollback(lambda: events.append("rolled back"))

        await uow.run(op)
        assert events == ["committed"]

    async def test_rollback_callbacks_run_per_failed_attempt(self, uow):
        events = []
        op = Flaky(uow, failures=1)

        async def wrapped():
            uow.on_rollback(lambda: events.append("discard"))
            uow.after_commit(lambda: events.append("committed"))
            return await op()

        await uow.run(wrapped)
        assert events == ["discard", "committed"]

    async def test_failing_callback_does_not_break_commit(self, uow, notifier):
        async def op():
            uow.after_commit(lambda: 1 / 0)
            uow.notify(_note())
            return "ok"

        assert await uow.run(op) == "ok"
        assert notifier.kinds() == ["rent.paid"]


class TestIsTransient:
    def test_classification(self):
        assert is_transient(StaleDataError("x"))
        assert not is_transient(StateConflict("x"))
        assert not is_transient(ValueError("x"))
