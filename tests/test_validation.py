import datetime

from markupsafe import Markup
from werkzeug.datastructures import MultiDict

from validation import Draft, Field, FieldError, Form, parse_date


def name_field():
    return (
        Field("first_name")
        .trim()
        .min_length(1, "First name must be specified")
        .escape()
        .alphanumeric("First name has non-alphanumeric characters")
    )


def test_valid_submission_is_trimmed():
    submission = Form(name_field()).validate(MultiDict({"first_name": "  Ursula "}))

    assert submission.valid
    assert submission.data == {"first_name": "Ursula"}
    assert submission.errors == []


def test_chain_reports_first_failing_rule_only():
    submission = Form(name_field()).validate(MultiDict({"first_name": "   "}))

    assert not submission.valid
    assert submission.errors == [FieldError("first_name", "First name must be specified")]


def test_escape_runs_before_later_rules():
    submission = Form(name_field()).validate(MultiDict({"first_name": "<b>"}))

    assert submission.errors == [FieldError("first_name", "First name has non-alphanumeric characters")]
    assert submission.draft["first_name"] == "&lt;b&gt;"
    assert isinstance(submission.draft["first_name"], Markup)


def test_escaped_data_is_plain_str():
    form = Form(Field("title").trim().min_length(1).escape())
    submission = form.validate(MultiDict({"title": "Salt & Pepper"}))

    assert submission.data["title"] == "Salt &amp; Pepper"
    assert type(submission.data["title"]) is str


def test_fields_are_validated_independently_and_in_order():
    form = Form(
        name_field(),
        Field("family_name").trim().min_length(1, "Family name must be specified"),
        Field("name", "Genre name must contain at least 3 characters").trim().min_length(3),
    )
    submission = form.validate(MultiDict({"first_name": "", "family_name": "Le Guin", "name": "ab"}))

    assert [error.field for error in submission.errors] == ["first_name", "name"]
    assert submission.errors[1].message == "Genre name must contain at least 3 characters"
    assert submission.data["family_name"] == "Le Guin"


def test_optional_date_left_empty_is_not_provided():
    form = Form(Field("date_of_birth", "Invalid date of birth").optional().is_date())

    for formdata in (MultiDict({"date_of_birth": ""}), MultiDict()):
        submission = form.validate(formdata)
        assert submission.valid
        assert submission.data["date_of_birth"] is None


def test_date_is_converted_or_rejected():
    form = Form(Field("due_back", "Invalid date").optional().is_date())

    assert form.validate(MultiDict({"due_back": "2024-02-29"})).data["due_back"] == datetime.date(2024, 2, 29)

    submission = form.validate(MultiDict({"due_back": "2023-02-30"}))
    assert submission.errors == [FieldError("due_back", "Invalid date")]
    assert submission.draft["due_back"] == "2023-02-30"


def test_one_of_and_to_int():
    form = Form(
        Field("status", "Invalid status").trim().one_of(("Available", "Loaned")),
        Field("book", "Book must be specified").trim().min_length(1).to_int("Invalid book"),
    )

    submission = form.validate(MultiDict({"status": "Lost", "book": "abc"}))
    assert submission.errors == [
        FieldError("status", "Invalid status"),
        FieldError("book", "Invalid book"),
    ]

    submission = form.validate(MultiDict({"status": "Loaned", "book": " 7 "}))
    assert submission.data == {"status": "Loaned", "book": 7}


def test_multiple_values():
    form = Form(Field("genre", "Invalid genre", multiple=True).trim().to_int())

    assert form.validate(MultiDict([("genre", "1"), ("genre", "3")])).data["genre"] == [1, 3]
    assert form.validate(MultiDict()).data["genre"] == []

    submission = form.validate(MultiDict([("genre", "1"), ("genre", "x")]))
    assert submission.errors == [FieldError("genre", "Invalid genre")]


def test_draft_from_record_marks_stored_text_safe():
    class Record:
        name = "Sci &amp; Fi"
        born = datetime.date(1929, 10, 21)

    draft = Draft.from_record(Record(), ["name", "born", "missing"])

    assert isinstance(draft["name"], Markup)
    assert str(Markup("{}").format(draft["name"])) == "Sci &amp; Fi"
    assert draft["born"] == datetime.date(1929, 10, 21)
    assert draft["missing"] is None
    assert "id" not in draft


def test_parse_date():
    assert parse_date("1929-10-21") == datetime.date(1929, 10, 21)
