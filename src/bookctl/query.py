from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from bookctl.errors import MalformedRequestError

Document = dict[str, Any]


class SortDirection(int, Enum):
    ASCENDING = 1
    DESCENDING = -1

    @classmethod
    def parse(cls, value: str | int | SortDirection) -> SortDirection:
        if isinstance(value, SortDirection):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            if value in (1, -1):
                return cls(value)
            raise MalformedRequestError(f"Sort direction must be 1 or -1, got {value!r}.")
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"asc", "ascending", "1", "+"}:
                return cls.ASCENDING
            if normalized in {"desc", "descending", "-1", "-"}:
                return cls.DESCENDING
        raise MalformedRequestError(f"Unknown sort direction: {value!r}")


ASCENDING = SortDirection.ASCENDING
DESCENDING = SortDirection.DESCENDING


class Operator(str, Enum):
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"


def check_field_path(path: object, *, what: str = "field") -> str:
    if not isinstance(path, str) or not path.strip():
        raise MalformedRequestError(f"{what.capitalize()} name must be a non-empty string.")
    if path.startswith("$"):
        raise MalformedRequestError(f"{what.capitalize()} name {path!r} must not start with '$'.")
    if any(not part for part in path.split(".")):
        raise MalformedRequestError(f"{what.capitalize()} name {path!r} has an empty path segment.")
    return path


@dataclass(frozen=True, slots=True)
class Clause:
    field: str
    op: Operator
    value: Any

    def __post_init__(self) -> None:
        check_field_path(self.field)
        if not isinstance(self.op, Operator):
            try:
                object.__setattr__(self, "op", Operator(self.op))
            except ValueError as exc:
                raise MalformedRequestError(f"Unknown filter operator: {self.op!r}") from exc
        if self.op is Operator.IN:
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise MalformedRequestError(f"'in' clause on {self.field!r} needs a list of values.")
            object.__setattr__(self, "value", tuple(self.value))

    def condition(self) -> Any:
        if self.op is Operator.EQ:
            return self.value
        if self.op is Operator.IN:
            return {self.op.value: list(self.value)}
        return {self.op.value: self.value}


@dataclass(frozen=True, slots=True)
class Filter:
    """Conjunction of field clauses.

    Each builder method returns a new filter; instances never change once built.
    """

    clauses: tuple[Clause, ...] = ()

    @classmethod
    def where(cls, **equals: Any) -> Filter:
        return cls(tuple(Clause(name, Operator.EQ, value) for name, value in equals.items()))

    def _with(self, field: str, op: Operator, value: Any) -> Filter:
        return Filter(self.clauses + (Clause(field, op, value),))

    def eq(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.EQ, value)

    def ne(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.NE, value)

    def gt(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.GT, value)

    def gte(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.GTE, value)

    def lt(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.LT, value)

    def lte(self, field: str, value: Any) -> Filter:
        return self._with(field, Operator.LTE, value)

    def is_in(self, field: str, values: Iterable[Any]) -> Filter:
        return self._with(field, Operator.IN, values)

    def __and__(self, other: Filter) -> Filter:
        if not isinstance(other, Filter):
            return NotImplemented
        return Filter(self.clauses + other.clauses)

    def __bool__(self) -> bool:
        return bool(self.clauses)

    def to_mongo(self) -> Document:
        fields = [clause.field for clause in self.clauses]
        if len(set(fields)) == len(fields):
            return {clause.field: clause.condition() for clause in self.clauses}
        # Same field constrained twice: keep every clause instead of letting one overwrite another.
        return {"$and": [{clause.field: clause.condition()} for clause in self.clauses]}


@dataclass(frozen=True, slots=True)
class Projection:
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    include_id: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "include", tuple(self.include))
        object.__setattr__(self, "exclude", tuple(self.exclude))
        if self.include and self.exclude:
            raise MalformedRequestError("Projection cannot both include and exclude fields.")
        for name in self.include + self.exclude:
            check_field_path(name)
            if name == "_id":
                raise MalformedRequestError("Use include_id to control the _id field in a projection.")

    @classmethod
    def fields(cls, *names: str, include_id: bool = True) -> Projection:
        return cls(include=names, include_id=include_id)

    @classmethod
    def without(cls, *names: str, include_id: bool = True) -> Projection:
        return cls(exclude=names, include_id=include_id)

    def to_mongo(self) -> Document | None:
        spec: Document = {}
        if self.include:
            spec.update({name: 1 for name in self.include})
        elif self.exclude:
            spec.update({name: 0 for name in self.exclude})
        if not self.include_id:
            spec["_id"] = 0
        return spec or None


def _normalize_keys(
    keys: Iterable[tuple[str, SortDirection | int | str]],
    *,
    what: str,
) -> tuple[tuple[str, SortDirection], ...]:
    normalized: list[tuple[str, SortDirection]] = []
    seen: set[str] = set()
    for item in keys:
        try:
            name, direction = item
        except (TypeError, ValueError) as exc:
            raise MalformedRequestError(f"{what} keys must be (field, direction) pairs.") from exc
        check_field_path(name)
        if name in seen:
            raise MalformedRequestError(f"{what} lists field {name!r} more than once.")
        seen.add(name)
        normalized.append((name, SortDirection.parse(direction)))
    if not normalized:
        raise MalformedRequestError(f"{what} needs at least one field.")
    return tuple(normalized)


@dataclass(frozen=True, slots=True)
class SortSpec:
    keys: tuple[tuple[str, SortDirection], ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", _normalize_keys(self.keys, what="Sort"))

    @classmethod
    def by(cls, field: str, direction: SortDirection | int | str = ASCENDING) -> SortSpec:
        return cls(((field, direction),))

    def then(self, field: str, direction: SortDirection | int | str = ASCENDING) -> SortSpec:
        return SortSpec(self.keys + ((field, SortDirection.parse(direction)),))

    @classmethod
    def parse(cls, text: str) -> SortSpec:
        """Parse ``"price:desc,title"`` into a sort spec; direction defaults to ascending."""
        keys: list[tuple[str, SortDirection | str]] = []
        for part in text.split(","):
            part = part.strip()
            if not part:
                continue
            name, _, direction = part.partition(":")
            keys.append((name.strip(), direction or ASCENDING))
        return cls(tuple(keys))

    def as_pairs(self) -> list[tuple[str, int]]:
        return [(name, int(direction)) for name, direction in self.keys]

    def as_document(self) -> Document:
        return {name: int(direction) for name, direction in self.keys}


@dataclass(frozen=True, slots=True)
class Page:
    offset: int
    limit: int

    def __post_init__(self) -> None:
        for name in ("offset", "limit"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise MalformedRequestError(f"Page {name} must be a non-negative integer, got {value!r}.")

    @classmethod
    def number(cls, number: int, size: int) -> Page:
        """Window for the 1-based page ``number`` of ``size`` rows."""
        if not isinstance(number, int) or number < 1:
            raise MalformedRequestError(f"Page number must be >= 1, got {number!r}.")
        if not isinstance(size, int) or size < 1:
            raise MalformedRequestError(f"Page size must be >= 1, got {size!r}.")
        return cls(offset=(number - 1) * size, limit=size)


@dataclass(frozen=True, slots=True)
class IndexSpec:
    keys: tuple[tuple[str, SortDirection], ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", _normalize_keys(self.keys, what="Index"))

    @classmethod
    def on(cls, *fields: str) -> IndexSpec:
        return cls(tuple((name, ASCENDING) for name in fields))

    def as_pairs(self) -> list[tuple[str, int]]:
        return [(name, int(direction)) for name, direction in self.keys]
