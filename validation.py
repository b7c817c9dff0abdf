"""
Declarative form validation.

Each form field gets a rule chain built from small steps (sanitizers,
predicates, converters). Chains run in declared order, stop at the first
failing predicate and are independent of each other:

    form = Form(
        Field("name").trim().min_length(3, "Too short").escape(),
        Field("born", "Invalid date").optional().is_date(),
    )
    submission = form.validate(request.form)
"""

from datetime import datetime
from typing import NamedTuple

from markupsafe import Markup, escape


class FieldError(NamedTuple):
    field: str
    message: str


class Draft(dict):
    """
    Values entered into a form, kept for redisplay. A draft never holds a
    record identifier; the identifier of the record being edited always
    comes from the route.
    """

    @classmethod
    def from_record(cls, record, names):
        """
        Pre-fill a draft from a persisted record. Stored strings were escaped
        on the way in, so they are marked safe here.
        """
        draft = cls()
        for name in names:
            value = getattr(record, name, None)
            draft[name] = Markup(value) if isinstance(value, str) else value
        return draft


def parse_date(date_str: str):
    """
    Parse a HTML <input type="date"> ('YYYY-MM-DD') into a datetime.date.

    Raises:
        ValueError for anything that is not a calendar date.
    """
    return datetime.strptime(date_str, "%Y-%m-%d").date()


_SANITIZE = "sanitize"
_CHECK = "check"
_CONVERT = "convert"


class Field:
    """
    Rule chain for one form field.

    `message` is the default reported when a predicate has no message of
    its own.
    """

    def __init__(self, name: str, message: str = "Invalid value", multiple: bool = False):
        self.name = name
        self.message = message
        self.multiple = multiple
        self.is_optional = False
        self.steps = []

    def optional(self):
        """
        Skip the chain when the submitted value is empty; the cleaned value
        is None.
        """
        self.is_optional = True
        return self

    def trim(self):
        self.steps.append((_SANITIZE, lambda value: value.strip(), None))
        return self

    def escape(self):
        self.steps.append((_SANITIZE, escape, None))
        return self

    def check(self, predicate, message: str | None = None):
        self.steps.append((_CHECK, predicate, message))
        return self

    def min_length(self, length: int, message: str | None = None):
        return self.check(lambda value: len(value) >= length, message)

    def max_length(self, length: int, message: str | None = None):
        return self.check(lambda value: len(value) <= length, message)

    def alphanumeric(self, message: str | None = None):
        return self.check(lambda value: value.isalnum(), message)

    def one_of(self, choices, message: str | None = None):
        return self.check(lambda value: value in choices, message)

    def is_date(self, message: str | None = None):
        self.steps.append((_CONVERT, parse_date, message))
        return self

    def to_int(self, message: str | None = None):
        self.steps.append((_CONVERT, int, message))
        return self

    def clean(self, raw):
        """
        Run the chain over one raw value.

        Returns:
            (value, message): the value as far as the chain got, and the
            failure message or None.
        """
        value = raw if raw is not None else ""
        if self.is_optional and not value:
            return None, None

        for kind, step, message in self.steps:
            if kind == _SANITIZE:
                value = step(value)
            elif kind == _CHECK:
                if not step(value):
                    return value, message or self.message
            else:
                try:
                    value = step(value)
                except (TypeError, ValueError):
                    return value, message or self.message
        return value, None

    def run(self, formdata):
        if not self.multiple:
            return self.clean(formdata.get(self.name))

        values = []
        for raw in formdata.getlist(self.name):
            value, message = self.clean(raw)
            if message:
                return values + [value], message
            values.append(value)
        return values, None


def _plain(value):
    # Markup only matters for redisplay; persist ordinary strings.
    if isinstance(value, Markup):
        return str(value)
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class Submission:
    def __init__(self):
        self.draft = Draft()
        self.data = {}
        self.errors = []

    @property
    def valid(self) -> bool:
        return not self.errors


class Form:
    """
    An ordered set of field chains validated together.
    """

    def __init__(self, *fields: Field):
        self.fields = fields

    @property
    def names(self):
        return [field.name for field in self.fields]

    def validate(self, formdata) -> Submission:
        submission = Submission()
        for field in self.fields:
            value, message = field.run(formdata)
            submission.draft[field.name] = value
            submission.data[field.name] = _plain(value)
            if message:
                submission.errors.append(FieldError(field.name, message))
        return submission
