from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from bookctl.pipeline import (
    AggregationStage,
    CompoundKey,
    FieldRef,
    Group,
    Limit,
    Mod,
    Sort,
    Subtract,
    average,
    count,
)
from bookctl.query import ASCENDING, DESCENDING, SortSpec


@dataclass(slots=True)
class Report:
    name: str
    title: str
    build: Callable[[], list[AggregationStage]]


def average_price_by_genre() -> list[AggregationStage]:
    return [
        Group(FieldRef("genre"), (average("avgPrice", "price"), count("count"))),
        Sort(SortSpec.by("avgPrice", DESCENDING).then("_id", ASCENDING)),
    ]


def top_authors(limit: int = 1) -> list[AggregationStage]:
    # Ties on count fall back to the author name so the leader is stable.
    return [
        Group(FieldRef("author"), (count("count"),)),
        Sort(SortSpec.by("count", DESCENDING).then("_id", ASCENDING)),
        Limit(limit),
    ]


def books_by_decade() -> list[AggregationStage]:
    decade = Subtract("published_year", Mod("published_year", 10))
    return [
        Group(CompoundKey.of(decade=decade), (count("count"),)),
        Sort.by("_id.decade", ASCENDING),
    ]


REPORTS: dict[str, Report] = {
    "avg-price": Report("avg-price", "Average price by genre", average_price_by_genre),
    "top-author": Report("top-author", "Author with most books", top_authors),
    "by-decade": Report("by-decade", "Books grouped by decade", books_by_decade),
}
