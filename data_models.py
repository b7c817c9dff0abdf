from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

BOOK_INSTANCE_STATUSES = ("Available", "Maintenance", "Loaned", "Reserved")


book_genres = db.Table(
    "book_genres",
    db.Column("book_id", db.Integer, db.ForeignKey("books.id"), primary_key=True),
    db.Column("genre_id", db.Integer, db.ForeignKey("genres.id"), primary_key=True),
)


class Author(db.Model):
    """
    Author model storing names and optional life dates.
    """
    __tablename__ = 'authors'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    first_name = db.Column(db.String(100), nullable=False)
    family_name = db.Column(db.String(100), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=True)
    date_of_death = db.Column(db.Date, nullable=True)

    books = db.relationship("Book", back_populates="author")

    @property
    def name(self) -> str:
        """
        Display name "family, first"; empty if either part is missing.
        """
        if self.first_name and self.family_name:
            return f"{self.family_name}, {self.first_name}"
        return ""

    @property
    def lifespan(self) -> str:
        birth = self.date_of_birth.isoformat() if self.date_of_birth else ""
        death = self.date_of_death.isoformat() if self.date_of_death else ""
        return f"{birth} - {death}"

    @property
    def url(self) -> str:
        return f"/catalog/author/{self.id}"

    def __repr__(self):
        return f"Author(id = {self.id}, name = {self.name})"

    def __str__(self):
        return self.name


class Genre(db.Model):
    """
    Genre model; names are unique under case-insensitive comparison,
    checked before insert rather than by a constraint.
    """
    __tablename__ = 'genres'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(100), nullable=False)

    books = db.relationship("Book", secondary=book_genres, back_populates="genres")

    @property
    def url(self) -> str:
        return f"/catalog/genre/{self.id}"

    def __repr__(self):
        return f"<Genre id={self.id} name='{self.name}'>"

    def __str__(self):
        return self.name


class Book(db.Model):
    """
    Book model storing title, summary, ISBN, author link and genres.
    """
    __tablename__ = 'books'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    title = db.Column(db.String(200), nullable=False)
    summary = db.Column(db.Text, nullable=False, default="")
    isbn = db.Column(db.String(20), nullable=False)

    author_id = db.Column(db.Integer, db.ForeignKey("authors.id"), nullable=False)
    author = db.relationship("Author", back_populates="books")

    genres = db.relationship(
        "Genre",
        secondary=book_genres,
        back_populates="books",
        order_by="Genre.name",
    )
    instances = db.relationship("BookInstance", back_populates="book")

    @property
    def url(self) -> str:
        return f"/catalog/book/{self.id}"

    def __repr__(self):
        return f"<Book id={self.id} title='{self.title}'>"

    def __str__(self):
        return self.title


class BookInstance(db.Model):
    """
    A physical copy of a book. The book reference is stored as submitted;
    nothing checks that the book exists.
    """
    __tablename__ = 'book_instances'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    imprint = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="Maintenance")
    due_back = db.Column(db.Date, nullable=True)

    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)
    book = db.relationship("Book", back_populates="instances")

    @property
    def url(self) -> str:
        return f"/catalog/bookinstance/{self.id}"

    @property
    def due_back_formatted(self) -> str:
        if not self.due_back:
            return ""
        return f"{self.due_back:%b} {self.due_back.day}, {self.due_back.year}"

    def __repr__(self):
        return f"<BookInstance id={self.id} book_id={self.book_id} status='{self.status}'>"

    def __str__(self):
        return f"{self.imprint} ({self.status})"
