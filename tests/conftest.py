import importlib

import pytest

from data_models import db, Author, Book, Genre, BookInstance


@pytest.fixture
def catalog(tmp_path, monkeypatch):
    # Give every test its own database file and reload the app so it binds to it.
    db_file = tmp_path / "library.sqlite"
    monkeypatch.setenv("LIBRARY_DATABASE_URI", f"sqlite:///{db_file}")
    monkeypatch.delenv("OPENLIBRARY_LOOKUP", raising=False)

    import app as app_module
    app_module = importlib.reload(app_module)

    flask_app = app_module.create_app()
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.create_all()

    yield app_module

    with flask_app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def app(catalog):
    return catalog.app


@pytest.fixture
def client(app):
    return app.test_client()


class Seeder:
    """
    Inserts records directly, bypassing the forms.
    """

    def __init__(self, app):
        self.app = app

    def _add(self, record):
        with self.app.app_context():
            db.session.add(record)
            db.session.commit()
            return record.id

    def author(self, first_name="Patrick", family_name="Rothfuss", **fields):
        return self._add(Author(first_name=first_name, family_name=family_name, **fields))

    def genre(self, name="Fantasy"):
        return self._add(Genre(name=name))

    def book(self, author_id, title="The Name of the Wind", genre_ids=(), **fields):
        with self.app.app_context():
            genres = Genre.query.filter(Genre.id.in_(genre_ids)).all() if genre_ids else []
            book = Book(
                title=title,
                author_id=author_id,
                summary=fields.pop("summary", "A summary."),
                isbn=fields.pop("isbn", "9780756404741"),
                genres=genres,
                **fields,
            )
            db.session.add(book)
            db.session.commit()
            return book.id

    def copy(self, book_id, imprint="Gollancz, 2011", status="Available", **fields):
        return self._add(BookInstance(book_id=book_id, imprint=imprint, status=status, **fields))

    def count(self, model):
        with self.app.app_context():
            return model.query.count()

    def fetch(self, model, record_id, *attributes):
        """
        Attribute values of one stored record, or None when it is gone.
        """
        with self.app.app_context():
            record = db.session.get(model, record_id)
            if record is None:
                return None
            return {name: getattr(record, name) for name in attributes}


@pytest.fixture
def seed(app):
    return Seeder(app)
