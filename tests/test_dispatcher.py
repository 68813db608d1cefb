"""Unit tests for vigil.workers.dispatcher.MessageDispatcher and the event channel it drains."""

import unittest
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

from vigil.models import QueuedMessage
from vigil.schemas.messages import PollProviderScanMessage
from vigil.services.event_channel import DatabaseEventChannel
from vigil.workers.dispatcher import (
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PROCESSING,
    ClaimedMessage,
    MessageDispatcher,
)


def _row(message_id: int, kind: str, payload: dict) -> QueuedMessage:
    return QueuedMessage(id=message_id, kind=kind, payload=payload, status="pending")


class DispatcherTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.sessions: list[MagicMock] = []
        self.handler = MagicMock()
        self.dispatcher = MessageDispatcher(
            self._new_session,
            lambda session: {PollProviderScanMessage.kind: self.handler},
            batch_size=5,
        )

    def _new_session(self) -> MagicMock:
        session = MagicMock()
        self.sessions.append(session)
        return session


class TestClaim(DispatcherTestCase):
    def test_claim_marks_rows_processing(self) -> None:
        session = MagicMock()
        rows = [_row(1, "poll_provider_scan", {"scan_id": 3, "attempt_number": 2})]
        query = session.query.return_value.filter.return_value.order_by.return_value.limit.return_value
        query.with_for_update.return_value.all.return_value = rows

        claimed = self.dispatcher.claim(session, 5)

        query.with_for_update.assert_called_once_with(skip_locked=True)
        self.assertEqual(claimed, [ClaimedMessage(id=1, kind="poll_provider_scan", payload={"scan_id": 3, "attempt_number": 2})])
        self.assertEqual(rows[0].status, STATUS_PROCESSING)
        self.assertIsNotNone(rows[0].claimed_at)
        session.commit.assert_called_once()


    def test_stale_processing_row_is_reclaimed(self) -> None:
        dispatcher = MessageDispatcher(
            self._new_session,
            lambda session: {},
            claim_timeout=timedelta(seconds=120),
        )
        session = MagicMock()
        abandoned = _row(7, "poll_provider_scan", {"scan_id": 3, "attempt_number": 12})
        abandoned.status = STATUS_PROCESSING
        abandoned.claimed_at = datetime.now(UTC) - timedelta(minutes=30)
        query = session.query.return_value.filter.return_value.order_by.return_value.limit.return_value
        query.with_for_update.return_value.all.return_value = [abandoned]

        claimed = dispatcher.claim(session, 5)

        self.assertEqual([(c.id, c.payload["attempt_number"]) for c in claimed], [(7, 12)])
        self.assertEqual(abandoned.status, STATUS_PROCESSING)
        self.assertGreater(abandoned.claimed_at, datetime.now(UTC) - timedelta(minutes=1))

        criterion = session.query.return_value.filter.call_args.args[0]
        self.assertIn("queued_messages.claimed_at <=", str(criterion))
        params = criterion.compile().params
        self.assertIn(STATUS_PROCESSING, params.values())
        cutoffs = sorted(v for v in params.values() if isinstance(v, datetime))
        self.assertEqual(cutoffs[-1] - cutoffs[0], timedelta(seconds=120))


class TestProcess(DispatcherTestCase):
    def test_handler_receives_decoded_message(self) -> None:
        status, error = self.dispatcher._process(
            ClaimedMessage(id=1, kind="poll_provider_scan", payload={"scan_id": 3, "attempt_number": 2})
        )
        self.assertEqual((status, error), (STATUS_DONE, None))
        message = self.handler.call_args.args[0]
        self.assertIsInstance(message, PollProviderScanMessage)
        self.assertEqual(message.attempt_number, 2)
        self.sessions[0].close.assert_called_once()

    def test_unknown_kind_fails_without_session(self) -> None:
        status, error = self.dispatcher._process(ClaimedMessage(id=1, kind="reindex", payload={}))
        self.assertEqual(status, STATUS_FAILED)
        self.assertIn("reindex", error)
        self.assertEqual(self.sessions, [])

    def test_invalid_payload_fails(self) -> None:
        status, error = self.dispatcher._process(
            ClaimedMessage(id=1, kind="poll_provider_scan", payload={"scan_id": 3, "attempt_number": 0})
        )
        self.assertEqual(status, STATUS_FAILED)
        self.assertIn("Invalid payload", error)
        self.handler.assert_not_called()

    def test_known_kind_without_handler_fails(self) -> None:
        status, error = self.dispatcher._process(
            ClaimedMessage(id=1, kind="start_provider_scan", payload={"scan_id": 3})
        )
        self.assertEqual(status, STATUS_FAILED)
        self.assertIn("No handler", error)

    def test_handler_exception_fails_and_rolls_back(self) -> None:
        self.handler.side_effect = RuntimeError("boom")
        status, error = self.dispatcher._process(
            ClaimedMessage(id=1, kind="poll_provider_scan", payload={"scan_id": 3})
        )
        self.assertEqual((status, error), (STATUS_FAILED, "boom"))
        self.sessions[0].rollback.assert_called_once()
        self.sessions[0].close.assert_called_once()


class TestRunOnce(DispatcherTestCase):
    def test_each_claimed_message_is_marked_once(self) -> None:
        claimed = [
            ClaimedMessage(id=1, kind="poll_provider_scan", payload={"scan_id": 3}),
            ClaimedMessage(id=2, kind="bogus", payload={}),
        ]
        self.dispatcher.claim = MagicMock(return_value=claimed)
        self.dispatcher._mark = MagicMock()

        self.assertEqual(self.dispatcher.run_once(), 2)

        control = self.sessions[0]
        self.dispatcher.claim.assert_called_once_with(control, 5)
        marks = [(c.args[1], c.args[2]) for c in self.dispatcher._mark.call_args_list]
        self.assertEqual(marks, [(1, STATUS_DONE), (2, STATUS_FAILED)])
        control.close.assert_called_once()

    def test_empty_queue(self) -> None:
        self.dispatcher.claim = MagicMock(return_value=[])
        self.assertEqual(self.dispatcher.run_once(batch_size=1), 0)
        self.dispatcher.claim.assert_called_once_with(self.sessions[0], 1)


class TestDatabaseEventChannel(unittest.TestCase):
    def test_publish_persists_row(self) -> None:
        session = MagicMock()
        before = datetime.now(UTC)
        DatabaseEventChannel(session).publish(
            PollProviderScanMessage(scan_id=8, attempt_number=4), delay=timedelta(seconds=30)
        )

        row = session.add.call_args.args[0]
        self.assertIsInstance(row, QueuedMessage)
        self.assertEqual(row.kind, "poll_provider_scan")
        self.assertEqual(row.payload, {"scan_id": 8, "attempt_number": 4})
        self.assertEqual(row.status, "pending")
        self.assertGreaterEqual(row.available_at, before + timedelta(seconds=30))
        session.commit.assert_called_once()


if __name__ == "__main__":
    unittest.main()
