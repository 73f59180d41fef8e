"""
src/entities/query.py

Query description handed to action providers, plus the filter language used
in tool calls:

- field map:   {"title": {"eq": "Hello"}, "views": {"gt": 10}}
- bare value:  {"title": "Hello"}  (same as {"eq": ...})
- combinators: {"or": [<filter>, ...]}, {"and": [...]}, {"not": <filter>}
- condition list: [{"field": "title", "operator": "eq", "value": "Hello"},
                   {"or": [{"field": ..., "operator": ..., "value": ...}]}]

Evaluation helpers (matches/apply/aggregate) serve the in-memory provider.
"""


from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from entities.errors import InvalidError


OPERATORS = ("eq", "not_eq", "gt", "gte", "lt", "lte", "in", "contains", "is_nil")
COMBINATORS = ("and", "or", "not")


@dataclass(frozen=True)
class SortSpec:

    field: str
    descending: bool = False


@dataclass(frozen=True)
class IdentityFilter:
    """Equality conditions that pin down a single record."""

    conditions: Tuple[Tuple[str, Any], ...]

    def as_dict(self) -> Dict[str, Any]:

        return dict(self.conditions)

    def to_filter(self) -> Dict[str, Any]:

        return {"and": [{name: {"eq": value}} for name, value in self.conditions]}

    def matches(self, record: Dict[str, Any]) -> bool:

        return all(record.get(name) == value for name, value in self.conditions)


@dataclass(frozen=True)
class Query:

    entity: str
    operation: str
    filter: Optional[Dict[str, Any]] = None
    identity: Optional[IdentityFilter] = None
    sort: Tuple[SortSpec, ...] = ()
    limit: Optional[int] = None
    offset: int = 0
    input: Dict[str, Any] = field(default_factory=dict)
    load: Tuple[str, ...] = ()

    def without_pagination(self) -> "Query":

        return replace(self, limit=None, offset=0)


# --- Normalisation -------------------------------------------------------------
def normalize_filter(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Turn any accepted filter form into the canonical field-map form.

    Returns None for "no filter" (None, empty dict, empty list).
    Raises InvalidError for shapes that are not a filter at all.
    """

    if raw is None or raw == {} or raw == []:
        return None

    if isinstance(raw, dict):
        return raw

    if isinstance(raw, list):
        return {"and": [_condition_to_filter(c, i) for i, c in enumerate(raw)]}

    raise InvalidError.single(None, "filter must be an object or a list of conditions", pointer="/filter")


def _condition_to_filter(condition: Any, index: int) -> Dict[str, Any]:

    if isinstance(condition, dict) and {"field", "operator"} <= set(condition):
        return {condition["field"]: {condition["operator"]: condition.get("value")}}

    if isinstance(condition, dict) and isinstance(condition.get("or"), list):
        return {"or": [_condition_to_filter(c, index) for c in condition["or"]]}

    raise InvalidError.single(
        None,
        "conditions need 'field', 'operator' and 'value' keys",
        pointer=f"/filter/{index}",
    )


def iter_filter_fields(flt: Optional[Dict[str, Any]], pointer: str = "/filter") -> Iterator[Tuple[str, str, str]]:
    """
    Yield (field, operator, json-pointer) for every field condition in a canonical filter.

    Raises:
        InvalidError: a combinator operand is not a filter object.
    """

    if not flt:
        return

    if not isinstance(flt, dict):
        raise InvalidError.single(None, "expected a filter object", pointer=pointer)

    for key, value in flt.items():
        if key in ("and", "or"):
            if not isinstance(value, (dict, list)):
                raise InvalidError.single(None, f"'{key}' takes a filter or a list of filters", pointer=f"{pointer}/{key}")
            for i, sub in enumerate(_as_list(value)):
                yield from iter_filter_fields(sub, f"{pointer}/{key}/{i}")
        elif key == "not":
            if not isinstance(value, dict):
                raise InvalidError.single(None, "'not' takes a filter object", pointer=f"{pointer}/not")
            yield from iter_filter_fields(value, f"{pointer}/not")
        elif isinstance(value, dict):
            for op in value:
                yield key, op, f"{pointer}/{key}/{op}"
        else:
            yield key, "eq", f"{pointer}/{key}"


def _as_list(value: Any) -> List[Any]:

    return value if isinstance(value, list) else [value]


# --- Evaluation ----------------------------------------------------------------
def matches(record: Dict[str, Any], flt: Optional[Dict[str, Any]]) -> bool:

    if not flt:
        return True

    for key, value in flt.items():
        if key == "and":
            ok = all(matches(record, sub) for sub in _as_list(value))
        elif key == "or":
            ok = any(matches(record, sub) for sub in _as_list(value))
        elif key == "not":
            ok = not matches(record, value)
        elif isinstance(value, dict):
            ok = all(_compare(record.get(key), op, expected) for op, expected in value.items())
        else:
            ok = _compare(record.get(key), "eq", value)

        if not ok:
            return False

    return True


def _compare(actual: Any, op: str, expected: Any) -> bool:

    if op == "eq":
        return actual == expected
    if op == "not_eq":
        return actual != expected
    if op == "is_nil":
        return (actual is None) == bool(expected)
    if op == "in":
        return actual in (expected or [])
    if op == "contains":
        return actual is not None and str(expected).lower() in str(actual).lower()

    if actual is None or expected is None:
        return False

    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        raise InvalidError.single(None, f"cannot compare {actual!r} with {expected!r}", pointer="/filter")

    raise InvalidError.single(None, f"unknown filter operator '{op}'", pointer="/filter")


def sort_records(records: List[Dict[str, Any]], sort: Sequence[SortSpec]) -> List[Dict[str, Any]]:
    """Stable multi-key sort; missing values go last in either direction."""

    out = list(records)

    for spec in reversed(list(sort)):
        present = [r for r in out if r.get(spec.field) is not None]
        missing = [r for r in out if r.get(spec.field) is None]
        try:
            present.sort(key=lambda r: r[spec.field], reverse=spec.descending)
        except TypeError:
            raise InvalidError.single(spec.field, "has values of different types and cannot be sorted", pointer="/sort")
        out = present + missing

    return out


def apply(records: List[Dict[str, Any]], query: Query) -> List[Dict[str, Any]]:
    """Filter, sort and paginate a record list according to `query`."""

    selected = [
        r for r in records
        if (query.identity is None or query.identity.matches(r)) and matches(r, query.filter)
    ]
    selected = sort_records(selected, query.sort)

    start = query.offset or 0
    end = None if query.limit is None else start + query.limit

    return selected[start:end]


def aggregate(records: List[Dict[str, Any]], kind: str, field_name: str) -> Any:

    values = [r.get(field_name) for r in records if r.get(field_name) is not None]

    if kind == "count":
        return len(values)
    if not values:
        return None
    if kind == "min":
        return min(values)
    if kind == "max":
        return max(values)
    if kind == "sum":
        return sum(values)
    if kind == "avg":
        return sum(values) / len(values)

    raise InvalidError.single(None, f"unknown aggregate '{kind}'", pointer="/result_type/aggregate")
