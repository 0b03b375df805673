"""Tests for the MongoDB store wrapper (run against mongomock)."""
from datetime import timedelta
from unittest.mock import MagicMock

import mongomock
import pytest

import settings
from store import ASSIGNMENTS, EMAIL_LOG, CheckInStore


class TestDocuments:

    def test_datetimes_come_back_local_and_truncated(self, store, local):
        stamp = local(2026, 3, 9, 9) + timedelta(microseconds=123456)
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1, 'dueDate': stamp})
        doc = store.get(ASSIGNMENTS, doc_id)
        assert doc['dueDate'] == stamp.replace(microsecond=123000)
        assert doc['dueDate'].tzinfo is not None
        assert doc['dueDate'].utcoffset() == timedelta(hours=11)

    def test_get_accepts_string_ids(self, store):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1})
        assert store.get(ASSIGNMENTS, str(doc_id))['_id'] == doc_id
        assert store.get(ASSIGNMENTS, 'not-an-id') is None

    def test_update_with_guard(self, store):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1, 'status': 'pending'})
        assert not store.update(ASSIGNMENTS, doc_id, {'status': 'missed'}, guard={'status': 'completed'})
        assert store.update(ASSIGNMENTS, doc_id, {'status': 'missed'}, guard={'status': 'pending'})
        assert store.get(ASSIGNMENTS, doc_id)['status'] == 'missed'

    def test_one_assignment_per_week(self, store):
        store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 2})
        with pytest.raises(mongomock.DuplicateKeyError):
            store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 2})


class TestBatchWrite:

    def test_upserts_are_idempotent(self, store):
        ops = [store.upsert_op({'clientId': 'c', 'formId': 'f', 'recurringWeek': w},
                               {'clientId': 'c', 'formId': 'f', 'recurringWeek': w, 'status': 'pending'})
               for w in range(1, 6)]
        assert store.batch_write(ASSIGNMENTS, ops) == 5
        assert store.batch_write(ASSIGNMENTS, ops) == 0
        assert len(store.series('c')) == 5

    def test_chunks_at_the_batch_limit(self, monkeypatch):
        monkeypatch.setattr(settings, 'BATCH_LIMIT', 3)
        db = MagicMock()
        db.__getitem__.return_value.bulk_write.return_value.upserted_count = 1
        store = CheckInStore(db)
        assert store.batch_write(ASSIGNMENTS, [object()] * 7) == 3
        chunks = [call.args[0] for call in db[ASSIGNMENTS].bulk_write.call_args_list]
        assert [len(chunk) for chunk in chunks] == [3, 3, 1]

    def test_empty_batch_does_nothing(self, store):
        assert store.batch_write(ASSIGNMENTS, []) == 0


class TestMarkers:

    def test_claim_once(self, store):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1})
        assert store.mark_sent_if_unset(doc_id, 'reminder24hSent', True)
        assert not store.mark_sent_if_unset(doc_id, 'reminder24hSent', True)

    def test_false_counts_as_unset(self, store):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1,
                                            'windowClosedEmailSent': False})
        assert store.mark_sent_if_unset(doc_id, 'windowClosedEmailSent', True)

    def test_stale_timestamps_can_be_reclaimed(self, store, local):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1,
                                            'lastOverdueEmailSentAt': local(2026, 3, 10, 7)})
        now = local(2026, 3, 10, 20)
        interval = settings.OVERDUE_REMINDER_INTERVAL
        assert not store.mark_sent_if_unset(doc_id, 'lastOverdueEmailSentAt', now, reclaim_before=now - interval)
        later = local(2026, 3, 11, 7)
        assert store.mark_sent_if_unset(doc_id, 'lastOverdueEmailSentAt', later, reclaim_before=later - interval)

    def test_release_only_our_claim(self, store, local):
        doc_id = store.insert(ASSIGNMENTS, {'clientId': 'c', 'formId': 'f', 'recurringWeek': 1})
        claimed = local(2026, 3, 10, 7)
        store.mark_sent_if_unset(doc_id, 'lastOverdueEmailSentAt', claimed)
        assert not store.release_marker(doc_id, 'lastOverdueEmailSentAt', local(2026, 3, 9, 7), None)
        assert store.release_marker(doc_id, 'lastOverdueEmailSentAt', claimed, None)
        assert store.get(ASSIGNMENTS, doc_id)['lastOverdueEmailSentAt'] is None


def test_email_log(store, local):
    store.log_email('overdue', 'abc', 'alex@example.com', 'Overdue', False, error='boom', sent_at=local(2026, 3, 10, 7))
    entry = store.db[EMAIL_LOG].find_one()
    assert entry['kind'] == 'overdue'
    assert entry['success'] is False
    assert entry['error'] == 'boom'
