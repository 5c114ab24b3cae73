"""Typed aggregation stages.

A pipeline is a plain sequence of stages. Every stage validates its own shape
when it is built, so a pipeline that reaches the driver is structurally sound.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence, Union

from bookctl.errors import MalformedRequestError
from bookctl.query import Document, SortDirection, SortSpec, check_field_path


class Expr:
    """Base for group key and accumulator operand expressions."""

    def to_mongo(self) -> Any:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class FieldRef(Expr):
    path: str

    def __post_init__(self) -> None:
        check_field_path(self.path)

    def to_mongo(self) -> str:
        return f"${self.path}"


@dataclass(frozen=True, slots=True)
class Literal(Expr):
    value: Any

    def to_mongo(self) -> Any:
        if isinstance(self.value, str) and self.value.startswith("$"):
            return {"$literal": self.value}
        return self.value


def as_expr(value: Expr | str | int | float) -> Expr:
    """Bare strings name fields, numbers are literals."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, str):
        return FieldRef(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Literal(value)
    raise MalformedRequestError(f"Cannot use {value!r} as an expression.")


@dataclass(frozen=True, slots=True)
class _Binary(Expr):
    left: Expr
    right: Expr

    operator = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "left", as_expr(self.left))
        object.__setattr__(self, "right", as_expr(self.right))

    def to_mongo(self) -> Document:
        return {self.operator: [self.left.to_mongo(), self.right.to_mongo()]}


class Add(_Binary):
    operator = "$add"


class Subtract(_Binary):
    operator = "$subtract"


class Multiply(_Binary):
    operator = "$multiply"


class Mod(_Binary):
    operator = "$mod"


@dataclass(frozen=True, slots=True)
class CompoundKey(Expr):
    """Group key made of named sub-expressions, e.g. ``{"decade": ...}``."""

    parts: tuple[tuple[str, Expr], ...]

    def __post_init__(self) -> None:
        parts: list[tuple[str, Expr]] = []
        seen: set[str] = set()
        for name, expr in self.parts:
            _check_output_name(name, what="Group key part")
            if name in seen:
                raise MalformedRequestError(f"Group key part {name!r} is defined twice.")
            seen.add(name)
            parts.append((name, as_expr(expr)))
        if not parts:
            raise MalformedRequestError("Compound group key needs at least one part.")
        object.__setattr__(self, "parts", tuple(parts))

    @classmethod
    def of(cls, **parts: Expr | str | int | float) -> CompoundKey:
        return cls(tuple(parts.items()))

    def to_mongo(self) -> Document:
        return {name: expr.to_mongo() for name, expr in self.parts}


def _check_output_name(name: object, *, what: str) -> str:
    if not isinstance(name, str) or not name:
        raise MalformedRequestError(f"{what} name must be a non-empty string.")
    if name.startswith("$") or "." in name:
        raise MalformedRequestError(f"{what} name {name!r} must not start with '$' or contain '.'.")
    return name


class AccumulatorOp(str, Enum):
    SUM = "sum"
    AVERAGE = "average"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


_ACCUMULATOR_OPERATORS = {
    AccumulatorOp.SUM: "$sum",
    AccumulatorOp.AVERAGE: "$avg",
    AccumulatorOp.MIN: "$min",
    AccumulatorOp.MAX: "$max",
}


@dataclass(frozen=True, slots=True)
class Accumulator:
    name: str
    op: AccumulatorOp
    operand: Expr | None = None

    def __post_init__(self) -> None:
        _check_output_name(self.name, what="Accumulator")
        if self.name == "_id":
            raise MalformedRequestError("Accumulator name '_id' is reserved for the group key.")
        if not isinstance(self.op, AccumulatorOp):
            try:
                object.__setattr__(self, "op", AccumulatorOp(self.op))
            except ValueError as exc:
                raise MalformedRequestError(f"Unknown accumulator operator: {self.op!r}") from exc
        if self.op is AccumulatorOp.COUNT:
            if self.operand is not None:
                raise MalformedRequestError(f"Accumulator {self.name!r}: count takes no operand.")
        elif self.operand is None:
            raise MalformedRequestError(f"Accumulator {self.name!r}: {self.op.value} needs an operand.")
        else:
            object.__setattr__(self, "operand", as_expr(self.operand))

    def to_mongo(self) -> Document:
        if self.op is AccumulatorOp.COUNT or self.operand is None:
            return {"$sum": 1}
        return {_ACCUMULATOR_OPERATORS[self.op]: self.operand.to_mongo()}


def total(name: str, operand: Expr | str | int | float) -> Accumulator:
    return Accumulator(name, AccumulatorOp.SUM, as_expr(operand))


def average(name: str, operand: Expr | str) -> Accumulator:
    return Accumulator(name, AccumulatorOp.AVERAGE, as_expr(operand))


def count(name: str) -> Accumulator:
    return Accumulator(name, AccumulatorOp.COUNT)


def minimum(name: str, operand: Expr | str) -> Accumulator:
    return Accumulator(name, AccumulatorOp.MIN, as_expr(operand))


def maximum(name: str, operand: Expr | str) -> Accumulator:
    return Accumulator(name, AccumulatorOp.MAX, as_expr(operand))


@dataclass(frozen=True, slots=True)
class Group:
    key: Expr
    accumulators: tuple[Accumulator, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", as_expr(self.key))
        accumulators = tuple(self.accumulators)
        if not accumulators:
            raise MalformedRequestError("Group stage needs at least one accumulator.")
        names = [acc.name for acc in accumulators]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise MalformedRequestError(f"Group stage defines {', '.join(duplicates)} more than once.")
        object.__setattr__(self, "accumulators", accumulators)

    def to_mongo(self) -> Document:
        body: Document = {"_id": self.key.to_mongo()}
        for acc in self.accumulators:
            body[acc.name] = acc.to_mongo()
        return {"$group": body}


@dataclass(frozen=True, slots=True)
class Sort:
    spec: SortSpec

    @classmethod
    def by(cls, field: str, direction: SortDirection | int | str = SortDirection.ASCENDING) -> Sort:
        return cls(SortSpec.by(field, direction))

    def __post_init__(self) -> None:
        if not isinstance(self.spec, SortSpec):
            raise MalformedRequestError("Sort stage needs a SortSpec.")

    def to_mongo(self) -> Document:
        return {"$sort": self.spec.as_document()}


@dataclass(frozen=True, slots=True)
class Limit:
    count: int

    def __post_init__(self) -> None:
        if not isinstance(self.count, int) or isinstance(self.count, bool) or self.count < 1:
            raise MalformedRequestError(f"Limit stage needs a positive integer, got {self.count!r}.")

    def to_mongo(self) -> Document:
        return {"$limit": self.count}


AggregationStage = Union[Group, Sort, Limit]


def build_pipeline(stages: Iterable[AggregationStage]) -> list[Document]:
    pipeline: list[Document] = []
    for index, stage in enumerate(stages):
        if not isinstance(stage, (Group, Sort, Limit)):
            raise MalformedRequestError(f"Pipeline stage {index} is not a Group, Sort or Limit stage.")
        pipeline.append(stage.to_mongo())
    return pipeline


def describe(stages: Sequence[AggregationStage]) -> str:
    return " -> ".join(type(stage).__name__ for stage in stages)
