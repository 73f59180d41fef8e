"""
src/entities/errors.py

Exceptions raised by action providers. The tool layer classifies them into
client-facing error envelopes (see tools/errors.py).
"""


from typing import Any, Dict, List, Optional, Sequence


class ActionError(Exception):
    """Base class for classified provider errors."""

    error_class = "unknown"


class FieldError:
    """One offending field (or argument) of an invalid request."""

    def __init__(
            self,
            field: Optional[str],
            message: str,
            *,
            path: Sequence[str] = (),
            pointer: Optional[str] = None,
            code: str = "invalid",
            title: str = "InvalidAttribute",
            meta: Optional[Dict[str, Any]] = None,
    ):

        self.field = field
        self.message = message
        self.path = list(path)
        self.pointer = pointer
        self.code = code
        self.title = title
        self.meta = meta

    def __repr__(self) -> str:

        return f"FieldError(field={self.field!r}, message={self.message!r})"


class InvalidError(ActionError):
    """The request does not fit the operation (bad or missing input)."""

    error_class = "invalid"

    def __init__(self, errors: List[FieldError]):

        self.errors = list(errors)
        super().__init__("; ".join(f"{e.field or 'request'}: {e.message}" for e in self.errors))

    @classmethod
    def single(cls, field: Optional[str], message: str, **kwargs: Any) -> "InvalidError":

        return cls([FieldError(field, message, **kwargs)])


class ForbiddenError(ActionError):
    """The actor may not perform the operation."""

    error_class = "forbidden"

    def __init__(self, entity: str, operation: str):

        self.entity = entity
        self.operation = operation
        super().__init__(f"forbidden: {entity}.{operation}")


class NotFoundError(ActionError):
    """An identity filter matched no record."""

    error_class = "not_found"

    def __init__(self, entity: str, conditions: Dict[str, Any]):

        self.entity = entity
        self.conditions = dict(conditions)
        keys = ", ".join(f"{k}={v!r}" for k, v in self.conditions.items())
        super().__init__(f"{entity} not found ({keys or 'no identity given'})")
