"""MongoDB-backed document store for the check-in core.

One ``CheckInStore`` is created per process and passed to whoever needs it.
Datetimes go in as naive UTC with millisecond precision (what BSON keeps)
and come back out as timezone-aware local datetimes.
"""
import logging
from datetime import datetime

import pytz
from bson.objectid import ObjectId
from pymongo import MongoClient, ASCENDING, DESCENDING, ReturnDocument, UpdateOne

import settings

logger = logging.getLogger(__name__)

ASSIGNMENTS = 'check_in_assignments'
RESPONSES = 'form_responses'
CLIENTS = 'clients'
COACHES = 'coaches'
USERS = 'users'
EMAIL_LOG = 'email_audit_log'


def to_store(value):
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(pytz.utc).replace(tzinfo=None)
        return value.replace(microsecond=value.microsecond // 1000 * 1000)
    if isinstance(value, dict):
        return {k: to_store(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_store(v) for v in value]
    return value


def from_store(value):
    if isinstance(value, datetime):
        return settings.as_local(value)
    if isinstance(value, dict):
        return {k: from_store(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_store(v) for v in value]
    return value


def coerce_id(doc_id):
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


class CheckInStore:
    def __init__(self, db):
        self.db = db
        self.assignments = db[ASSIGNMENTS]
        self.responses = db[RESPONSES]
        self.email_log = db[EMAIL_LOG]

    @classmethod
    def from_uri(cls, uri=None, db_name=None):
        client = MongoClient(uri or settings.MONGO_URI)
        return cls(client[db_name or settings.MONGO_DB_NAME])

    def ensure_indexes(self):
        # One assignment per (client, form, week).
        self.assignments.create_index(
            [('clientId', ASCENDING), ('formId', ASCENDING), ('recurringWeek', ASCENDING)],
            unique=True
        )
        self.assignments.create_index([('status', ASCENDING), ('dueDate', ASCENDING)])
        self.assignments.create_index([('coachId', ASCENDING)])
        self.responses.create_index([('assignmentId', ASCENDING)], unique=True)
        self.db[USERS].create_index([('email', ASCENDING)], unique=True, sparse=True)
        self.email_log.create_index([('sentAt', DESCENDING)])

    # --- generic document access ---

    def get(self, collection, doc_id):
        doc = self.db[collection].find_one({'_id': coerce_id(doc_id)})
        return from_store(doc) if doc else None

    def query(self, collection, sort=None, **equals):
        cursor = self.db[collection].find(to_store(equals))
        if sort:
            cursor = cursor.sort(sort)
        return [from_store(doc) for doc in cursor]

    def find(self, collection, filter_doc, sort=None):
        cursor = self.db[collection].find(to_store(filter_doc))
        if sort:
            cursor = cursor.sort(sort)
        return [from_store(doc) for doc in cursor]

    def insert(self, collection, doc):
        return self.db[collection].insert_one(to_store(doc)).inserted_id

    def update(self, collection, doc_id, fields, guard=None):
        """Sets ``fields`` on one document; ``guard`` adds extra filter conditions. Returns True if it matched."""
        filter_doc = {'_id': coerce_id(doc_id)}
        filter_doc.update(to_store(guard or {}))
        result = self.db[collection].update_one(filter_doc, {'$set': to_store(fields)})
        return result.matched_count == 1

    def find_one_and_set(self, collection, filter_doc, fields):
        doc = self.db[collection].find_one_and_update(
            to_store(filter_doc),
            {'$set': to_store(fields)},
            return_document=ReturnDocument.AFTER
        )
        return from_store(doc) if doc else None

    def upsert_op(self, filter_doc, doc):
        return UpdateOne(to_store(filter_doc), {'$setOnInsert': to_store(doc)}, upsert=True)

    def set_op(self, doc_id, fields):
        return UpdateOne({'_id': coerce_id(doc_id)}, {'$set': to_store(fields)})

    def batch_write(self, collection, operations):
        """Runs bulk operations in chunks of at most BATCH_LIMIT. Returns the number of upserted documents."""
        operations = list(operations)
        upserted = 0
        for start in range(0, len(operations), settings.BATCH_LIMIT):
            chunk = operations[start:start + settings.BATCH_LIMIT]
            result = self.db[collection].bulk_write(chunk, ordered=False)
            upserted += result.upserted_count
        if operations:
            logger.debug("batch_write %s: %d ops, %d upserted", collection, len(operations), upserted)
        return upserted

    # --- assignments ---

    def open_assignments(self):
        """Assignments that may still need a reminder."""
        return self.find(ASSIGNMENTS, {'status': {'$in': ['pending', 'active', 'overdue']}}, sort=[('dueDate', ASCENDING)])

    def series(self, client_id, form_id=None):
        filter_doc = {'clientId': client_id}
        if form_id is not None:
            filter_doc['formId'] = form_id
        return self.find(ASSIGNMENTS, filter_doc, sort=[('dueDate', ASCENDING)])

    def mark_sent_if_unset(self, assignment_id, marker, value, reclaim_before=None):
        """Sets ``marker`` to ``value`` only if it is still unset (or older than ``reclaim_before``).

        Returns True when this caller won the claim; concurrent scans can never both win.
        """
        unset = [{marker: None}, {marker: False}]
        if reclaim_before is not None:
            unset.append({marker: {'$lt': to_store(reclaim_before)}})
        result = self.assignments.update_one(
            {'_id': coerce_id(assignment_id), '$or': unset},
            {'$set': {marker: to_store(value)}}
        )
        return result.modified_count == 1

    def release_marker(self, assignment_id, marker, claimed, previous):
        """Restores ``previous`` if the marker still holds our ``claimed`` value."""
        result = self.assignments.update_one(
            {'_id': coerce_id(assignment_id), marker: to_store(claimed)},
            {'$set': {marker: to_store(previous)}}
        )
        return result.modified_count == 1

    # --- email audit log ---

    def log_email(self, kind, assignment_id, recipient, subject, success, error=None, sent_at=None):
        self.email_log.insert_one(to_store({
            'kind': kind,
            'assignmentId': str(assignment_id),
            'recipient': recipient,
            'subject': subject,
            'success': success,
            'error': error,
            'sentAt': sent_at or settings.now_local(),
        }))
