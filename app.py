"""
Local Library - a catalog of authors, books, genres and book copies built
with Flask and SQLAlchemy.

Features:
- List, detail, create, update and delete pages for every record kind
- Form validation before anything is written
- Deletes blocked while other records still reference the target
- Genre names kept unique regardless of case
- Book summaries optionally fetched from Open Library by ISBN when left blank
"""

import os

from flask import Flask, request, render_template, redirect, url_for
from markupsafe import Markup, escape

import open_library
from data_models import db, Author, Book, Genre, BookInstance, BOOK_INSTANCE_STATUSES
from record_store import RecordStore, RecordNotFound, DeleteBlocked, StoreUnavailable
from validation import Draft, Field, FieldError, Form


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-key")

basedir = os.path.abspath(os.path.dirname(__file__))
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
    "LIBRARY_DATABASE_URI",
    f"sqlite:///{os.path.join(basedir, 'data/library.sqlite')}",
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}
if app.config['SQLALCHEMY_DATABASE_URI'].startswith("sqlite"):
    # Detail pages read from worker threads.
    app.config["SQLALCHEMY_ENGINE_OPTIONS"]["connect_args"] = {"check_same_thread": False}
app.config["OPENLIBRARY_LOOKUP"] = env_flag("OPENLIBRARY_LOOKUP", False)
app.logger.setLevel(os.environ.get("LIBRARY_LOG_LEVEL", "INFO").upper())
db.init_app(app)


authors = RecordStore(
    db, Author,
    order_by=(Author.family_name, Author.first_name),
    dependents=lambda author_id: Book.query.filter_by(author_id=author_id).order_by(Book.title),
)
genres = RecordStore(
    db, Genre,
    order_by=(Genre.name,),
    dependents=lambda genre_id: Book.query.filter(Book.genres.any(Genre.id == genre_id)).order_by(Book.title),
)
books = RecordStore(
    db, Book,
    order_by=(Book.title,),
    joins=(Book.author,),
    dependents=lambda book_id: BookInstance.query.filter_by(book_id=book_id).order_by(BookInstance.id),
)
book_instances = RecordStore(
    db, BookInstance,
    order_by=(Book.title, BookInstance.imprint),
    joins=(BookInstance.book,),
)


author_form = Form(
    Field("first_name")
    .trim()
    .min_length(1, "First name must be specified")
    .escape()
    .alphanumeric("First name has non-alphanumeric characters"),
    Field("family_name")
    .trim()
    .min_length(1, "Family name must be specified")
    .escape()
    .alphanumeric("Family name has non-alphanumeric characters"),
    Field("date_of_birth", "Invalid date of birth").optional().is_date(),
    Field("date_of_death", "Invalid date of death").optional().is_date(),
)

genre_form = Form(
    Field("name", "Genre name must contain at least 3 characters")
    .trim()
    .min_length(3)
    .max_length(100, "Genre name must not exceed 100 characters")
    .escape(),
)

book_form = Form(
    Field("title", "Title must not be empty").trim().min_length(1).escape(),
    Field("author", "Author must not be empty").trim().min_length(1).to_int("Invalid author"),
    Field("summary").trim().escape(),
    Field("isbn", "ISBN must not be empty").trim().min_length(1).escape(),
    Field("genre", "Invalid genre", multiple=True).trim().to_int(),
)

bookinstance_form = Form(
    Field("book", "Book must be specified").trim().min_length(1).to_int("Invalid book"),
    Field("imprint", "Imprint must be specified").trim().min_length(1).escape(),
    Field("status", "Invalid status").trim().one_of(BOOK_INSTANCE_STATUSES),
    Field("due_back", "Invalid date").optional().is_date(),
)


def create_app():
    """
    Factory hook (for testing)
    """
    return app


@app.template_filter("stored")
def stored_text(value):
    """
    Strings are escaped when a form is accepted, so stored text is
    rendered without escaping it again.
    """
    return Markup(value or "")


@app.errorhandler(RecordNotFound)
def record_not_found(exc):
    app.logger.warning("id not found on %s %s: %s", request.method, request.path, exc.record_id)
    message = f"{exc.model.__name__} not found"
    return render_template("error.html", title="Not Found", message=message), 404


@app.errorhandler(404)
def page_not_found(exc):
    return render_template("error.html", title="Not Found", message=exc.description), 404


@app.errorhandler(StoreUnavailable)
def store_unavailable(exc):
    app.logger.error("database unavailable: %s", exc, exc_info=exc)
    message = "The catalog database is unavailable. Please try again later."
    return render_template("error.html", title="Service Unavailable", message=message), 503


@app.route("/")
def home():
    """
    Send the bare root to the catalog home.
    """
    return redirect(url_for("catalog_index"))


@app.route("/catalog")
def catalog_index():
    """
    Site home: record counts for every kind.
    """
    counts = {
        "books": books.count(),
        "copies": book_instances.count(),
        "available": book_instances.count(BookInstance.status == "Available"),
        "authors": authors.count(),
        "genres": genres.count(),
    }
    return render_template("index.html", title="Local Library Home", counts=counts)


# --- Authors ---

@app.get("/catalog/authors")
def author_list():
    """
    All authors, ordered by family name.
    """
    return render_template("author_list.html", title="Author List", author_list=authors.list())


@app.get("/catalog/author/<int:author_id>")
def author_detail(author_id):
    """
    Author with their books.
    """
    author, author_books = authors.get_with_dependents(author_id)
    return render_template("author_detail.html", title="Author Detail", author=author, author_books=author_books)


@app.get("/catalog/author/create")
def author_create_get():
    """
    Empty author form.
    """
    return render_template("author_form.html", title="Create Author", draft=Draft())


@app.post("/catalog/author/create")
def author_create_post():
    """
    Validate and save a new author, or redisplay the form with errors.
    """
    submission = author_form.validate(request.form)
    if not submission.valid:
        return render_template(
            "author_form.html", title="Create Author", draft=submission.draft, errors=submission.errors
        )

    author = authors.create(submission.data)
    app.logger.info("created author %s", author.id)
    return redirect(author.url)


@app.get("/catalog/author/<int:author_id>/delete")
def author_delete_get(author_id):
    """
    Delete confirmation; lists books that block the delete.
    """
    try:
        author, author_books = authors.get_with_dependents(author_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", author_id)
        return redirect(url_for("author_list"))
    return render_template("author_delete.html", title="Delete Author", author=author, author_books=author_books)


@app.post("/catalog/author/<int:author_id>/delete")
def author_delete_post(author_id):
    """
    Delete the author unless books still reference it.
    """
    try:
        authors.delete_if_unreferenced(author_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", author_id)
    except DeleteBlocked as blocked:
        app.logger.info("delete of author %s blocked by %d book(s)", author_id, len(blocked.dependents))
        return render_template(
            "author_delete.html", title="Delete Author", author=blocked.record, author_books=blocked.dependents
        )
    else:
        app.logger.info("deleted author %s", author_id)
    return redirect(url_for("author_list"))


@app.get("/catalog/author/<int:author_id>/update")
def author_update_get(author_id):
    """
    Author form prefilled from the stored record.
    """
    author = authors.get(author_id)
    draft = Draft.from_record(author, author_form.names)
    return render_template("author_form.html", title="Update Author", draft=draft)


@app.post("/catalog/author/<int:author_id>/update")
def author_update_post(author_id):
    """
    Validate and save changes to an existing author.
    """
    submission = author_form.validate(request.form)
    if not submission.valid:
        return render_template(
            "author_form.html", title="Update Author", draft=submission.draft, errors=submission.errors
        )

    author = authors.update(author_id, submission.data)
    return redirect(author.url)


# --- Genres ---

@app.get("/catalog/genres")
def genre_list():
    """
    All genres by name.
    """
    return render_template("genre_list.html", title="Genre List", genre_list=genres.list())


@app.get("/catalog/genre/<int:genre_id>")
def genre_detail(genre_id):
    """
    Genre with its books.
    """
    genre, genre_books = genres.get_with_dependents(genre_id)
    return render_template("genre_detail.html", title="Genre Detail", genre=genre, genre_books=genre_books)


@app.get("/catalog/genre/create")
def genre_create_get():
    """
    Empty genre form.
    """
    return render_template("genre_form.html", title="Create Genre", draft=Draft())


@app.post("/catalog/genre/create")
def genre_create_post():
    """
    Save a new genre. An existing genre with the same name (ignoring case) is shown instead.
    """
    submission = genre_form.validate(request.form)
    if not submission.valid:
        return render_template(
            "genre_form.html", title="Create Genre", draft=submission.draft, errors=submission.errors
        )

    existing = genres.find_by_collated("name", submission.data["name"])
    if existing is not None:
        return redirect(existing.url)

    genre = genres.create(submission.data)
    app.logger.info("created genre %s", genre.id)
    return redirect(genre.url)


@app.get("/catalog/genre/<int:genre_id>/delete")
def genre_delete_get(genre_id):
    """
    Delete confirmation; lists books that block the delete.
    """
    try:
        genre, genre_books = genres.get_with_dependents(genre_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", genre_id)
        return redirect(url_for("genre_list"))
    return render_template("genre_delete.html", title="Delete Genre", genre=genre, genre_books=genre_books)


@app.post("/catalog/genre/<int:genre_id>/delete")
def genre_delete_post(genre_id):
    """
    Delete the genre unless books still reference it.
    """
    try:
        genres.delete_if_unreferenced(genre_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", genre_id)
    except DeleteBlocked as blocked:
        app.logger.info("delete of genre %s blocked by %d book(s)", genre_id, len(blocked.dependents))
        return render_template(
            "genre_delete.html", title="Delete Genre", genre=blocked.record, genre_books=blocked.dependents
        )
    else:
        app.logger.info("deleted genre %s", genre_id)
    return redirect(url_for("genre_list"))


@app.get("/catalog/genre/<int:genre_id>/update")
def genre_update_get(genre_id):
    """
    Genre form prefilled from the stored record.
    """
    genre = genres.get(genre_id)
    return render_template("genre_form.html", title="Update Genre", draft=Draft.from_record(genre, genre_form.names))


@app.post("/catalog/genre/<int:genre_id>/update")
def genre_update_post(genre_id):
    """
    Rename a genre. Clashing with another genre's name (ignoring case) is a form error.
    """
    submission = genre_form.validate(request.form)
    if not submission.valid:
        return render_template(
            "genre_form.html", title="Update Genre", draft=submission.draft, errors=submission.errors
        )

    genres.get(genre_id)
    existing = genres.find_by_collated("name", submission.data["name"])
    if existing is not None and existing.id != genre_id:
        errors = [FieldError("name", "A genre with this name already exists")]
        return render_template("genre_form.html", title="Update Genre", draft=submission.draft, errors=errors)

    genre = genres.update(genre_id, submission.data)
    return redirect(genre.url)


# --- Books ---

def book_fields(data: dict) -> dict:
    """
    Map validated book form data onto model attributes. A blank summary is
    looked up on Open Library when enabled.
    """
    summary = data["summary"]
    if not summary and app.config["OPENLIBRARY_LOOKUP"]:
        summary = str(escape(open_library.fetch_summary_by_isbn(data["isbn"]) or ""))

    return {
        "title": data["title"],
        "author_id": data["author"],
        "summary": summary,
        "isbn": data["isbn"],
        "genres": genres.get_many(data["genre"]),
    }


def render_book_form(title, draft, errors=None):
    return render_template(
        "book_form.html",
        title=title,
        draft=draft,
        errors=errors,
        authors=authors.list(),
        genres=genres.list(),
    )


@app.get("/catalog/books")
def book_list():
    """
    All books by title; supports search by title or author via ?q=
    """
    q = request.args.get("q", "").strip()
    criteria = []
    if q:
        # Stored text was escaped on the way in; search it the same way.
        like = f"%{str(escape(q))}%"
        criteria.append(
            Book.title.ilike(like) | Author.family_name.ilike(like) | Author.first_name.ilike(like)
        )
    return render_template("book_list.html", title="Book List", book_list=books.list(*criteria), q=q)


@app.get("/catalog/book/<int:book_id>")
def book_detail(book_id):
    """
    Book with its copies.
    """
    book, copies = books.get_with_dependents(book_id)
    return render_template("book_detail.html", title=book.title, book=book, book_instances=copies)


@app.get("/catalog/book/create")
def book_create_get():
    """
    Empty book form with author and genre choices.
    """
    return render_book_form("Create Book", Draft(genre=[]))


@app.post("/catalog/book/create")
def book_create_post():
    """
    Validate and save a new book.
    """
    submission = book_form.validate(request.form)
    if not submission.valid:
        return render_book_form("Create Book", submission.draft, submission.errors)

    book = books.create(book_fields(submission.data))
    app.logger.info("created book %s", book.id)
    return redirect(book.url)


@app.get("/catalog/book/<int:book_id>/delete")
def book_delete_get(book_id):
    """
    Delete confirmation; lists copies that block the delete.
    """
    try:
        book, copies = books.get_with_dependents(book_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", book_id)
        return redirect(url_for("book_list"))
    return render_template("book_delete.html", title="Delete Book", book=book, book_instances=copies)


@app.post("/catalog/book/<int:book_id>/delete")
def book_delete_post(book_id):
    """
    Delete the book unless copies still reference it.
    """
    try:
        books.delete_if_unreferenced(book_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", book_id)
    except DeleteBlocked as blocked:
        app.logger.info("delete of book %s blocked by %d copies", book_id, len(blocked.dependents))
        return render_template(
            "book_delete.html", title="Delete Book", book=blocked.record, book_instances=blocked.dependents
        )
    else:
        app.logger.info("deleted book %s", book_id)
    return redirect(url_for("book_list"))


@app.get("/catalog/book/<int:book_id>/update")
def book_update_get(book_id):
    """
    Book form prefilled from the stored record and its genres.
    """
    book = books.get(book_id)
    draft = Draft.from_record(book, ["title", "summary", "isbn"])
    draft["author"] = book.author_id
    draft["genre"] = [genre.id for genre in book.genres]
    return render_book_form("Update Book", draft)


@app.post("/catalog/book/<int:book_id>/update")
def book_update_post(book_id):
    """
    Validate and save changes to an existing book.
    """
    submission = book_form.validate(request.form)
    if not submission.valid:
        return render_book_form("Update Book", submission.draft, submission.errors)

    book = books.update(book_id, book_fields(submission.data))
    return redirect(book.url)


# --- Book instances ---

def bookinstance_fields(data: dict) -> dict:
    # The book id is stored as submitted; nothing checks that it exists.
    return {
        "book_id": data["book"],
        "imprint": data["imprint"],
        "status": data["status"],
        "due_back": data["due_back"],
    }


def render_bookinstance_form(title, draft, errors=None):
    return render_template(
        "bookinstance_form.html",
        title=title,
        draft=draft,
        errors=errors,
        book_list=books.list(),
        statuses=BOOK_INSTANCE_STATUSES,
    )


@app.get("/catalog/bookinstances")
def bookinstance_list():
    """
    All copies by book title.
    """
    return render_template(
        "bookinstance_list.html", title="Book Instance List", bookinstance_list=book_instances.list()
    )


@app.get("/catalog/bookinstance/<int:bookinstance_id>")
def bookinstance_detail(bookinstance_id):
    """
    A single copy.
    """
    bookinstance = book_instances.get(bookinstance_id)
    return render_template("bookinstance_detail.html", title="Book Instance Detail", bookinstance=bookinstance)


@app.get("/catalog/bookinstance/create")
def bookinstance_create_get():
    """
    Empty copy form; status defaults to Maintenance.
    """
    return render_bookinstance_form("Create Book Instance", Draft(status="Maintenance"))


@app.post("/catalog/bookinstance/create")
def bookinstance_create_post():
    """
    Validate and save a new copy.
    """
    submission = bookinstance_form.validate(request.form)
    if not submission.valid:
        return render_bookinstance_form("Create Book Instance", submission.draft, submission.errors)

    bookinstance = book_instances.create(bookinstance_fields(submission.data))
    app.logger.info("created book instance %s", bookinstance.id)
    return redirect(bookinstance.url)


@app.get("/catalog/bookinstance/<int:bookinstance_id>/delete")
def bookinstance_delete_get(bookinstance_id):
    """
    Delete confirmation for a copy.
    """
    try:
        bookinstance = book_instances.get(bookinstance_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", bookinstance_id)
        return redirect(url_for("bookinstance_list"))
    return render_template("bookinstance_delete.html", title="Delete Book Instance", bookinstance=bookinstance)


@app.post("/catalog/bookinstance/<int:bookinstance_id>/delete")
def bookinstance_delete_post(bookinstance_id):
    """
    Delete the copy. Nothing references copies.
    """
    try:
        book_instances.delete_if_unreferenced(bookinstance_id)
    except RecordNotFound:
        app.logger.info("id not found on delete: %s", bookinstance_id)
    else:
        app.logger.info("deleted book instance %s", bookinstance_id)
    return redirect(url_for("bookinstance_list"))


@app.get("/catalog/bookinstance/<int:bookinstance_id>/update")
def bookinstance_update_get(bookinstance_id):
    """
    Copy form prefilled from the stored record.
    """
    bookinstance = book_instances.get(bookinstance_id)
    draft = Draft.from_record(bookinstance, ["imprint", "status", "due_back"])
    draft["book"] = bookinstance.book_id
    return render_bookinstance_form("Update Book Instance", draft)


@app.post("/catalog/bookinstance/<int:bookinstance_id>/update")
def bookinstance_update_post(bookinstance_id):
    """
    Validate and save changes to an existing copy.
    """
    submission = bookinstance_form.validate(request.form)
    if not submission.valid:
        return render_bookinstance_form("Update Book Instance", submission.draft, submission.errors)

    bookinstance = book_instances.update(bookinstance_id, bookinstance_fields(submission.data))
    return redirect(bookinstance.url)


def main():
    """
    Create the tables and run the development server.
    """
    os.makedirs(os.path.join(basedir, "data"), exist_ok=True)
    with app.app_context():
        db.create_all()

    try:
        app.run(debug=env_flag("FLASK_DEBUG", False))
    finally:
        with app.app_context():
            db.engine.dispose()


if __name__ == "__main__":
    main()
