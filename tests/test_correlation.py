"""Tests for mcplink.correlation — matching responses to waiting callers."""

import logging
import threading
import time

import pytest

from mcplink.correlation import CorrelationTable, normalize_id
from mcplink.errors import (
    DuplicateIdError,
    MCPTimeoutError,
    RequestCancelledError,
    TransportClosedError,
    UnmatchedResponseError,
)
from mcplink.types import ErrorObject, Notification, Response


def ok(request_id, result="ok"):
    return Response(id=request_id, result=result)


class TestRegisterResolve:
    def test_resolve_delivers_response(self):
        table = CorrelationTable()
        pending = table.register(1)
        table.resolve(ok(1, {"value": 42}))
        assert pending.wait(1).result == {"value": 42}
        assert len(table) == 0

    def test_error_response_is_delivered_not_raised(self):
        table = CorrelationTable()
        pending = table.register(2)
        table.resolve(Response(id=2, error=ErrorObject(code=-32000, message="not found")))
        response = pending.wait(1)
        assert response.is_error
        assert response.error.code == -32000

    def test_duplicate_id_rejected(self):
        table = CorrelationTable()
        table.register(1)
        with pytest.raises(DuplicateIdError):
            table.register(1)
        assert len(table) == 1

    def test_id_reusable_after_resolution(self):
        table = CorrelationTable()
        table.register(1)
        table.resolve(ok(1))
        assert table.register(1) is not None

    def test_unmatched_response_leaves_pending_untouched(self):
        table = CorrelationTable()
        pending = table.register(1)
        with pytest.raises(UnmatchedResponseError) as info:
            table.resolve(ok(99))
        assert info.value.request_id == 99
        assert len(table) == 1
        assert not pending.done

    def test_late_duplicate_response_is_unmatched(self):
        table = CorrelationTable()
        pending = table.register(1)
        table.resolve(ok(1, "first"))
        with pytest.raises(UnmatchedResponseError):
            table.resolve(ok(1, "second"))
        assert pending.wait(0).result == "first"

    def test_whole_float_id_matches_int(self):
        assert normalize_id(1.0) == 1
        assert normalize_id("1") == "1"
        table = CorrelationTable()
        pending = table.register(1)
        assert 1.0 in table
        table.resolve(Response.model_construct(id=1.0, result="ok"))
        assert pending.wait(0).result == "ok"

    def test_string_and_int_ids_are_distinct(self):
        table = CorrelationTable()
        table.register(1)
        table.register("1")
        assert len(table) == 2


class TestWait:
    def test_wait_times_out_and_leaves_entry(self):
        table = CorrelationTable()
        pending = table.register(5)
        with pytest.raises(MCPTimeoutError) as info:
            pending.wait(0.05)
        assert info.value.request_id == 5
        assert 5 in table

    def test_wait_uses_registration_deadline(self):
        table = CorrelationTable()
        pending = table.register(5, timeout=0.05)
        assert pending.deadline is not None
        with pytest.raises(MCPTimeoutError):
            pending.wait()

    def test_first_delivery_wins(self):
        table = CorrelationTable()
        pending = table.register(1)
        assert pending.deliver(ok(1, "a"))
        assert not pending.deliver(ok(1, "b"))
        assert pending.wait(0).result == "a"


class TestCancel:
    def test_cancel_wakes_waiter(self):
        table = CorrelationTable()
        pending = table.register(3)
        assert table.cancel(3)
        with pytest.raises(RequestCancelledError):
            pending.wait(1)
        assert 3 not in table

    def test_cancel_with_reason(self):
        table = CorrelationTable()
        pending = table.register(3)
        table.cancel(3, MCPTimeoutError("late", request_id=3))
        with pytest.raises(MCPTimeoutError):
            pending.wait(1)

    def test_cancel_unknown_id(self):
        assert CorrelationTable().cancel(123) is False

    def test_cancel_only_affects_its_request(self):
        table = CorrelationTable()
        a = table.register(1)
        b = table.register(2)
        table.cancel(1)
        table.resolve(ok(2, "b"))
        with pytest.raises(RequestCancelledError):
            a.wait(0)
        assert b.wait(0).result == "b"


class TestDrain:
    def test_drain_fails_every_waiter(self):
        table = CorrelationTable()
        entries = [table.register(i) for i in range(5)]
        error = TransportClosedError("gone")
        assert table.drain_all(error) == 5
        assert len(table) == 0
        for entry in entries:
            with pytest.raises(TransportClosedError):
                entry.wait(0)

    def test_register_after_drain_fails(self):
        table = CorrelationTable()
        table.drain_all(TransportClosedError("gone"))
        assert table.closed
        with pytest.raises(TransportClosedError):
            table.register(1)

    def test_drain_wakes_blocked_threads(self):
        table = CorrelationTable()
        errors = []

        def waiter(i):
            pending = table.register(i)
            try:
                pending.wait(5)
            except TransportClosedError as e:
                errors.append(e)

        threads = [threading.Thread(target=waiter, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        deadline = time.monotonic() + 5
        while len(table) < 8 and time.monotonic() < deadline:
            time.sleep(0.01)
        table.drain_all(TransportClosedError("gone"))
        for t in threads:
            t.join(2)
        assert len(errors) == 8


class TestNotifications:
    def test_sink_receives_notifications(self):
        seen = []
        table = CorrelationTable(notification_sink=seen.append)
        note = Notification(method="notifications/progress", params={"progress": 1})
        table.dispatch_notification(note)
        assert seen == [note]

    def test_no_sink_is_fine(self):
        CorrelationTable().dispatch_notification(Notification(method="x"))

    def test_sink_errors_are_logged(self, caplog):
        def sink(notification):
            raise RuntimeError("boom")

        table = CorrelationTable(notification_sink=sink)
        with caplog.at_level(logging.ERROR, logger='mcplink'):
            table.dispatch_notification(Notification(method="x"))
        assert "boom" in caplog.text


class TestConcurrency:
    def test_concurrent_registration_of_same_id(self):
        table = CorrelationTable()
        barrier = threading.Barrier(16)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                table.register(7)
                outcomes.append("ok")
            except DuplicateIdError:
                outcomes.append("dup")

        threads = [threading.Thread(target=attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("dup") == 15

    def test_out_of_order_resolution(self):
        table = CorrelationTable()
        ids = list(range(1, 21))
        entries = {i: table.register(i) for i in ids}
        results = {}

        def wait(i):
            results[i] = entries[i].wait(5).result

        threads = [threading.Thread(target=wait, args=(i,)) for i in ids]
        for t in threads:
            t.start()
        for i in reversed(ids):
            table.resolve(ok(i, f"result-{i}"))
        for t in threads:
            t.join(5)
        assert results == {i: f"result-{i}" for i in ids}
