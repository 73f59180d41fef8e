"""
src/tools/errors.py

Translate provider exceptions into the error envelope returned to the model.

The envelope is a JSON list of entries:
    {"id", "status", "code", "title", "detail", "source": {"pointer"}, "meta"}
with unset members left out.

- ForbiddenError -> one 403 "forbidden" entry
- InvalidError   -> one 400 entry per offending field, pointing at /input/<field>
- NotFoundError  -> one 404 "not_found" entry
- anything else  -> one 500 "something_went_wrong" entry with a correlation id;
                    the traceback is only included when show_raised_errors is on
"""


import json
import logging
import traceback
import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from entities.errors import FieldError, ForbiddenError, InvalidError, NotFoundError


logger = logging.getLogger(__name__)


class ErrorEntry(BaseModel):

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: int
    code: str
    title: str
    detail: Optional[str] = None
    source: Optional[Dict[str, str]] = None
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:

        return self.model_dump(exclude_none=True)


def class_to_status(error_class: str) -> int:
    """Turn an error class into an HTTP status code."""

    return {"forbidden": 403, "invalid": 400, "not_found": 404}.get(error_class, 500)

def source_pointer(field: str, path: Sequence[str] = ()) -> str:
    """JSON pointer for an input field, e.g. /input/address/city."""

    return "/input/" + "/".join([*map(str, path), str(field)])

def _field_entry(err: FieldError) -> ErrorEntry:

    pointer = err.pointer

    if pointer is None and err.field is not None:
        pointer = source_pointer(err.field, err.path)

    return ErrorEntry(
        status=class_to_status("invalid"),
        code=err.code,
        title=err.title,
        detail=f"{err.field}: {err.message}" if err.field else err.message,
        source={"pointer": pointer} if pointer else None,
        meta=err.meta,
    )

def to_error_entries(error: BaseException, show_raised_errors: bool = False) -> List[ErrorEntry]:
    """
    Classify an exception raised while running a tool.

    Args:
        error: The exception caught by the execution engine.
        show_raised_errors: Include the raw traceback in 500 entries.

    Returns:
        One or more ErrorEntry objects (never empty).
    """

    if isinstance(error, ForbiddenError):
        return [ErrorEntry(status=403, code="forbidden", title="Forbidden", detail="forbidden")]

    if isinstance(error, InvalidError):
        return [_field_entry(e) for e in error.errors] or [
            ErrorEntry(status=400, code="invalid", title="Invalid", detail=str(error))
        ]

    if isinstance(error, NotFoundError):
        return [ErrorEntry(
            status=class_to_status("not_found"),
            code="not_found",
            title="NotFound",
            detail=str(error),
            meta={"entity": error.entity, "identity": error.conditions} if error.conditions else None,
        )]

    error_id = str(uuid.uuid4())
    formatted = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    logger.warning("`%s`: unclassified tool error\n\n%s", error_id, formatted)

    if show_raised_errors:
        detail = f"Raised error: {error_id}\n\n{formatted}"
    else:
        detail = f"Something went wrong. Error id: {error_id}"

    return [ErrorEntry(
        id=error_id,
        status=class_to_status(getattr(error, "error_class", "unknown")),
        code="something_went_wrong",
        title="SomethingWentWrong",
        detail=detail,
    )]

def serialize_errors(entries: Sequence[ErrorEntry]) -> str:

    return json.dumps([e.to_dict() for e in entries], default=str)
