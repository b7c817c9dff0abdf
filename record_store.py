"""
Persistence access for the catalog, one RecordStore per model.

The store owns every query and commit made on behalf of the views. It is
given the Flask-SQLAlchemy handle explicitly so the connection lifecycle
stays with whoever created the app.
"""

import unicodedata
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError, SQLAlchemyError


class StoreUnavailable(RuntimeError):
    """
    The database could not be reached or refused the operation.
    """


class RecordNotFound(LookupError):
    def __init__(self, model, record_id):
        super().__init__(f"{model.__name__} {record_id} not found")
        self.model = model
        self.record_id = record_id


class DeleteBlocked(Exception):
    """
    Raised instead of deleting a record that other records still reference.
    """

    def __init__(self, record, dependents):
        super().__init__(f"{record!r} has {len(dependents)} dependent record(s)")
        self.record = record
        self.dependents = dependents


def collate(value: str) -> str:
    """
    Comparison key ignoring case but not accents.
    """
    return unicodedata.normalize("NFKD", value or "").casefold()


class RecordStore:
    """
    CRUD access for one model.

    Args:
        db: the Flask-SQLAlchemy extension.
        model: mapped class handled by this store.
        order_by: columns giving the canonical listing order.
        joins: relationships outer-joined for listing (sorting by a parent).
        dependents: callable taking a record id and returning a query over
            the records that reference it; None when nothing can.
    """

    def __init__(self, db, model, order_by=(), joins=(), dependents=None):
        self.db = db
        self.model = model
        self.order_by = order_by
        self.joins = joins
        self.dependents = dependents

    @contextmanager
    def _guard(self):
        try:
            yield
        except OperationalError as exc:
            self.db.session.rollback()
            raise StoreUnavailable(str(exc.orig)) from exc

    def _commit(self):
        try:
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            raise

    def list(self, *criteria):
        """
        All records in canonical order, optionally filtered.
        """
        with self._guard():
            query = self.model.query
            for relationship in self.joins:
                query = query.outerjoin(relationship)
            if criteria:
                query = query.filter(*criteria)
            return query.order_by(*self.order_by).all()

    def count(self, *criteria) -> int:
        with self._guard():
            return self.model.query.filter(*criteria).count()

    def get(self, record_id):
        with self._guard():
            record = self.db.session.get(self.model, record_id)
        if record is None:
            raise RecordNotFound(self.model, record_id)
        return record

    def get_many(self, ids):
        if not ids:
            return []
        with self._guard():
            return self.model.query.filter(self.model.id.in_(ids)).all()

    def get_with_dependents(self, record_id):
        """
        Fetch a record and the records referencing it.

        The two queries run concurrently, each on a worker thread with its
        own app context and session. Both are awaited before the primary
        result is inspected; the results are then merged into the request
        session so lazy relationships keep working.

        Returns:
            (record, dependents)

        Raises:
            RecordNotFound: the primary record does not exist.
        """
        app = current_app._get_current_object()

        def in_app_context(fetch):
            with app.app_context():
                return fetch()

        def fetch_primary():
            return self.db.session.get(self.model, record_id)

        def fetch_dependents():
            if self.dependents is None:
                return []
            return self.dependents(record_id).all()

        with self._guard():
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="record-store") as pool:
                primary_future = pool.submit(in_app_context, fetch_primary)
                dependents_future = pool.submit(in_app_context, fetch_dependents)
                record = primary_future.result()
                dependents = dependents_future.result()

        if record is None:
            raise RecordNotFound(self.model, record_id)

        session = self.db.session
        record = session.merge(record, load=False)
        dependents = [session.merge(dependent, load=False) for dependent in dependents]
        return record, dependents

    def find_by_collated(self, attribute: str, value: str):
        """
        First record whose `attribute` equals `value` ignoring case.
        """
        key = collate(value)
        for record in self.list():
            if collate(getattr(record, attribute)) == key:
                return record
        return None

    def create(self, fields: dict):
        record = self.model(**fields)
        with self._guard():
            self.db.session.add(record)
            self._commit()
        return record

    def update(self, record_id, fields: dict):
        """
        Overwrite the supplied fields of an existing record; fields not
        supplied keep their stored values.
        """
        record = self.get(record_id)
        with self._guard():
            for name, value in fields.items():
                setattr(record, name, value)
            self._commit()
        return record

    def delete_if_unreferenced(self, record_id):
        """
        Delete a record unless other records reference it.

        Raises:
            RecordNotFound: nothing to delete.
            DeleteBlocked: dependents exist; nothing was changed.
        """
        record = self.get(record_id)
        with self._guard():
            dependents = self.dependents(record_id).all() if self.dependents else []
            if dependents:
                raise DeleteBlocked(record, dependents)
            self.db.session.delete(record)
            self._commit()
        return record
