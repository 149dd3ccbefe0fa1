"""
In-memory stand-ins for the Firestore client used by the app test suites.

Only the calls the services make are supported: documents, where/order_by/
limit queries, add, on_snapshot, SERVER_TIMESTAMP and Increment transforms.
Transactional functions are exercised through their undecorated body
(`unwrap(fn)`) with FakeTransaction applying writes immediately.
"""

import copy
import itertools
import uuid
from concurrent.futures import Executor, Future
from datetime import timedelta
from types import SimpleNamespace

from django.utils import timezone
from firebase_admin import firestore
from google.api_core.exceptions import NotFound


def unwrap(transactional_fn):
    """Body of a @firestore.transactional function."""
    return transactional_fn.to_wrap


class FakeSnapshot:
    def __init__(self, doc_id, data, reference=None):
        self.id = doc_id
        self._data = copy.deepcopy(data) if data is not None else None
        self.reference = reference

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeWatch:
    def __init__(self, owner, callback):
        self.owner = owner
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self.active = False
        self.owner.watches.remove(self)


def _apply_transforms(current, updates):
    result = dict(current or {})
    for key, value in updates.items():
        if value is firestore.SERVER_TIMESTAMP:
            result[key] = timezone.now()
        elif isinstance(value, firestore.Increment):
            result[key] = (result.get(key) or 0) + value.value
        elif value is firestore.DELETE_FIELD:
            result.pop(key, None)
        else:
            result[key] = copy.deepcopy(value)
    return result


class FakeDocumentReference:
    def __init__(self, collection, doc_id):
        self.collection = collection
        self.id = doc_id
        self.watches = []

    @property
    def _store(self):
        return self.collection.docs

    def get(self, transaction=None):
        self.collection.db.check('get')
        return FakeSnapshot(self.id, self._store.get(self.id), self)

    def set(self, data, merge=False):
        self.collection.db.check('set')
        base = self._store.get(self.id) if merge else {}
        self._store[self.id] = _apply_transforms(base, data)
        self.collection.db.writes.append(('set', self.collection.name, self.id, dict(data)))

    def update(self, data):
        self.collection.db.check('update')
        if self.id not in self._store:
            raise NotFound(f"No document to update: {self.collection.name}/{self.id}")
        self._store[self.id] = _apply_transforms(self._store[self.id], data)
        self.collection.db.writes.append(('update', self.collection.name, self.id, dict(data)))

    def on_snapshot(self, callback):
        watch = FakeWatch(self, callback)
        self.watches.append(watch)
        return watch

    def emit(self):
        """Deliver the current document to document watchers."""
        snapshot = self.get()
        for watch in list(self.watches):
            watch.callback([snapshot], [], timezone.now())


class FakeQuery:
    def __init__(self, collection, filters=None, order=None, limit_count=None):
        self.collection = collection
        self.filters = list(filters or [])
        self.order = order
        self.limit_count = limit_count

    def where(self, field, op, value):
        return FakeQuery(self.collection, self.filters + [(field, op, value)], self.order, self.limit_count)

    def order_by(self, field, direction=None):
        return FakeQuery(self.collection, self.filters, (field, direction), self.limit_count)

    def limit(self, count):
        return FakeQuery(self.collection, self.filters, self.order, count)

    @staticmethod
    def _matches(data, field, op, value):
        if field not in data:
            return False
        actual = data[field]
        if op == '==':
            return actual == value
        if op == '>=':
            return actual >= value
        if op == '<=':
            return actual <= value
        if op == 'in':
            return actual in value
        raise ValueError(f"Unsupported operator {op}")

    def stream(self):
        self.collection.db.check('stream')
        rows = [
            (doc_id, data) for doc_id, data in self.collection.docs.items()
            if all(self._matches(data, f, op, v) for f, op, v in self.filters)
        ]
        if self.order:
            field, direction = self.order
            rows = [row for row in rows if field in row[1]]
            rows.sort(key=lambda row: row[1][field], reverse=direction == firestore.Query.DESCENDING)
        if self.limit_count:
            rows = rows[:self.limit_count]
        return [FakeSnapshot(doc_id, data, self.collection.document(doc_id)) for doc_id, data in rows]


class FakeCollection(FakeQuery):
    def __init__(self, db, name):
        super().__init__(self)
        self.db = db
        self.name = name
        self.docs = {}
        self.refs = {}
        self.watches = []

    def document(self, doc_id=None):
        doc_id = doc_id or uuid.uuid4().hex
        if doc_id not in self.refs:
            self.refs[doc_id] = FakeDocumentReference(self, doc_id)
        return self.refs[doc_id]

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return timezone.now(), ref

    def on_snapshot(self, callback):
        watch = FakeWatch(self, callback)
        self.watches.append(watch)
        return watch

    def emit(self, doc_ids, change_type='MODIFIED'):
        """Deliver a change event for the given documents to collection watchers."""
        changes = [
            SimpleNamespace(type=SimpleNamespace(name=change_type), document=self.document(doc_id).get())
            for doc_id in doc_ids
        ]
        for watch in list(self.watches):
            watch.callback([], changes, timezone.now())


class FakeTransaction:
    def __init__(self, db):
        self.db = db

    def update(self, ref, data):
        ref.update(data)

    def set(self, ref, data, merge=False):
        ref.set(data, merge=merge)


class FakeFirestore:
    """
    Firestore client double. Set `failures` to {'get': SomeError(...)} (or
    'set', 'update', 'stream', '*') to make those calls raise.
    """

    def __init__(self):
        self.collections = {}
        self.failures = {}
        self.writes = []
        self._tx_ids = itertools.count(1)

    def collection(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(self, name)
        return self.collections[name]

    def transaction(self):
        next(self._tx_ids)
        return FakeTransaction(self)

    def check(self, operation):
        error = self.failures.get(operation) or self.failures.get('*')
        if error is not None:
            raise error

    def seed(self, collection, doc_id, data):
        self.collection(collection).docs[doc_id] = copy.deepcopy(data)

    def data(self, collection, doc_id):
        return copy.deepcopy(self.collection(collection).docs.get(doc_id))


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now
