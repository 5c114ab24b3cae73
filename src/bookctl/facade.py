from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from bson.errors import InvalidDocument
from pymongo.errors import ConnectionFailure, OperationFailure

from bookctl.errors import ConnectivityError, MalformedRequestError
from bookctl.pipeline import AggregationStage, build_pipeline
from bookctl.query import Document, Filter, IndexSpec, Page, Projection, SortSpec, check_field_path

DEFAULT_BATCH_SIZE = 100


@dataclass(slots=True)
class UpdateOutcome:
    matched_count: int
    modified_count: int


@dataclass(slots=True)
class DeleteOutcome:
    deleted_count: int


@dataclass(slots=True)
class InsertOutcome:
    inserted_ids: list[Any]


@dataclass(slots=True)
class IndexAck:
    name: str


# Unauthorized and AuthenticationFailed.
AUTH_ERROR_CODES = frozenset({13, 18})


@contextmanager
def translate_driver_errors() -> Iterator[None]:
    try:
        yield
    except ConnectionFailure as exc:
        raise ConnectivityError(f"Collection unreachable: {exc}") from exc
    except OperationFailure as exc:
        if exc.code in AUTH_ERROR_CODES:
            raise ConnectivityError(f"Access to the collection was refused: {exc}") from exc
        raise MalformedRequestError(f"Request rejected by the server: {exc}") from exc
    except InvalidDocument as exc:
        raise MalformedRequestError(f"Request could not be encoded: {exc}") from exc


class ResultCursor:
    """Lazy, finite, restartable result sequence.

    Every iteration runs the query again through ``execute``; nothing is cached
    between passes.
    """

    def __init__(
        self,
        execute: Callable[[], Iterable[Document]],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise MalformedRequestError("Batch size must be positive.")
        self._execute = execute
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[Document]:
        for batch in self.batches():
            yield from batch

    def batches(self) -> Iterator[list[Document]]:
        with translate_driver_errors():
            source = iter(self._execute())
            while True:
                batch = list(islice(source, self.batch_size))
                if not batch:
                    return
                yield batch

    def first(self) -> Document | None:
        for document in self:
            return document
        return None

    def to_list(self) -> list[Document]:
        return list(self)


def _empty() -> Iterable[Document]:
    return ()


def _check_changes(changes: Mapping[str, Any]) -> Document:
    if not isinstance(changes, Mapping) or not changes:
        raise MalformedRequestError("Update needs at least one field to change.")
    for name in changes:
        check_field_path(name)
        if name == "_id" or name.startswith("_id."):
            raise MalformedRequestError("The _id field cannot be changed.")
    return dict(changes)


class QueryFacade:
    """Typed reads, writes, aggregations and index declarations on one collection.

    The facade keeps no state besides the collection handle. Zero-match
    results are ordinary return values; driver failures surface as
    ``ConnectivityError`` or ``MalformedRequestError`` without retries.

    When a filter for ``update_one`` or ``delete_one`` matches several
    documents, the one affected is the first in the engine's natural order,
    which the engine does not promise to keep stable.
    """

    def __init__(self, collection: Any, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._collection = collection
        self.batch_size = batch_size

    @property
    def namespace(self) -> str:
        return str(getattr(self._collection, "full_name", getattr(self._collection, "name", "")))

    def find(
        self,
        filter: Filter | None = None,
        projection: Projection | None = None,
        sort: SortSpec | None = None,
        page: Page | None = None,
    ) -> ResultCursor:
        query = (filter or Filter()).to_mongo()
        fields = projection.to_mongo() if projection is not None else None
        options: dict[str, Any] = {}
        if sort is not None:
            options["sort"] = sort.as_pairs()
        if page is not None:
            if page.limit == 0:
                return ResultCursor(_empty, batch_size=self.batch_size)
            options["skip"] = page.offset
            options["limit"] = page.limit

        def execute() -> Iterable[Document]:
            return self._collection.find(query, fields, **options)

        return ResultCursor(execute, batch_size=self.batch_size)

    def count(self, filter: Filter | None = None) -> int:
        with translate_driver_errors():
            return int(self._collection.count_documents((filter or Filter()).to_mongo()))

    def update_one(self, filter: Filter, changes: Mapping[str, Any]) -> UpdateOutcome:
        update = {"$set": _check_changes(changes)}
        with translate_driver_errors():
            result = self._collection.update_one(filter.to_mongo(), update)
        return UpdateOutcome(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
        )

    def delete_one(self, filter: Filter) -> DeleteOutcome:
        with translate_driver_errors():
            result = self._collection.delete_one(filter.to_mongo())
        return DeleteOutcome(deleted_count=result.deleted_count)

    def insert_many(self, documents: Iterable[Mapping[str, Any]]) -> InsertOutcome:
        payload = [dict(document) for document in documents]
        if not payload:
            return InsertOutcome(inserted_ids=[])
        with translate_driver_errors():
            result = self._collection.insert_many(payload)
        return InsertOutcome(inserted_ids=list(result.inserted_ids))

    def aggregate(self, pipeline: Sequence[AggregationStage]) -> ResultCursor:
        stages = build_pipeline(pipeline)

        def execute() -> Iterable[Document]:
            return self._collection.aggregate(stages)

        return ResultCursor(execute, batch_size=self.batch_size)

    def create_index(self, spec: IndexSpec) -> IndexAck:
        with translate_driver_errors():
            name = self._collection.create_index(spec.as_pairs())
        return IndexAck(name=name)

    def index_names(self) -> list[str]:
        with translate_driver_errors():
            return sorted(self._collection.index_information())

    def drop(self) -> None:
        with translate_driver_errors():
            self._collection.drop()
