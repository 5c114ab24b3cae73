from __future__ import annotations

import mongomock
import pytest
from pymongo.errors import AutoReconnect, OperationFailure, ServerSelectionTimeoutError

from bookctl.books import SAMPLE_BOOKS, BOOK_INDEXES, book_filter
from bookctl.errors import ConnectivityError, MalformedRequestError
from bookctl.facade import QueryFacade
from bookctl.query import DESCENDING, Filter, IndexSpec, Page, Projection, SortSpec
from bookctl.reports import average_price_by_genre, books_by_decade, top_authors


def _titles(documents) -> list[str]:
    return [doc["title"] for doc in documents]


class UnreachableCollection:
    def find(self, *_args, **_kwargs):
        raise ServerSelectionTimeoutError("localhost:27017: [Errno 111] Connection refused")

    def update_one(self, *_args, **_kwargs):
        raise AutoReconnect("connection closed")

    def aggregate(self, *_args, **_kwargs):
        raise ServerSelectionTimeoutError("no servers")


class RejectingCollection:
    def aggregate(self, *_args, **_kwargs):
        raise OperationFailure("unknown group operator '$median'", code=15952)


class UnauthorizedCollection:
    def find(self, *_args, **_kwargs):
        raise OperationFailure("not authorized on plp_bookstore to execute command", code=13)

    def count_documents(self, *_args, **_kwargs):
        raise OperationFailure("Authentication failed.", code=18)


class NeverQueriedCollection:
    def find(self, *_args, **_kwargs):
        raise AssertionError("find should not be called for an empty window")


def test_find_returns_documents_satisfying_every_clause(facade):
    query = book_filter(in_stock=True, published_after=1950)

    found = _titles(facade.find(query))

    expected = [
        book["title"]
        for book in SAMPLE_BOOKS
        if book["in_stock"] and book["published_year"] > 1950
    ]
    assert sorted(found) == sorted(expected)
    assert found


def test_find_unknown_field_matches_nothing(facade):
    assert facade.find(Filter.where(colour="red")).to_list() == []


def test_find_applies_projection(facade):
    projection = Projection.fields("title", "author", "price", include_id=False)

    documents = facade.find(book_filter(author="George Orwell"), projection=projection).to_list()

    assert len(documents) == 2
    assert all(set(doc) == {"title", "author", "price"} for doc in documents)


def test_find_sorts_descending(facade):
    prices = [doc["price"] for doc in facade.find(sort=SortSpec.by("price", DESCENDING))]

    assert prices == sorted(prices, reverse=True)
    assert prices[0] == 19.99


@pytest.mark.parametrize(
    "offset,limit",
    [(0, 5), (5, 5), (10, 5), (12, 3), (20, 5), (3, 0), (0, 50)],
)
def test_find_page_window_matches_sorted_slice(facade, offset, limit):
    order = SortSpec.by("price").then("title")
    full = _titles(facade.find(sort=order))

    window = _titles(facade.find(sort=order, page=Page(offset=offset, limit=limit)))

    assert len(window) == min(limit, max(0, len(full) - offset))
    assert window == full[offset : offset + limit]


def test_empty_window_does_not_query_the_collection():
    facade = QueryFacade(NeverQueriedCollection())

    assert facade.find(page=Page(offset=0, limit=0)).to_list() == []


def test_cursor_reexecutes_on_each_iteration(facade):
    cursor = facade.find(book_filter(genre="Fiction"))
    first_pass = _titles(cursor)

    facade.insert_many([{"title": "Beloved", "genre": "Fiction", "price": 11.0}])
    second_pass = _titles(cursor)

    assert len(first_pass) == 4
    assert sorted(second_pass) == sorted(first_pass + ["Beloved"])


def test_cursor_batches_respect_batch_size(books_collection):
    facade = QueryFacade(books_collection, batch_size=5)

    sizes = [len(batch) for batch in facade.find().batches()]

    assert sizes == [5, 5, 2]


def test_cursor_first_returns_none_when_empty(facade):
    assert facade.find(book_filter(title="Missing")).first() is None


def test_update_one_scenario_changes_only_listed_fields():
    collection = mongomock.MongoClient()["plp_bookstore"]["books"]
    collection.insert_many(
        [
            {"title": "1984", "price": 10, "author": "George Orwell"},
            {"title": "Brave New World", "price": 12},
        ]
    )
    facade = QueryFacade(collection)

    outcome = facade.update_one(Filter.where(title="1984"), {"price": 15})
    documents = facade.find(Filter.where(title="1984")).to_list()

    assert outcome.matched_count == 1
    assert outcome.modified_count == 1
    assert len(documents) == 1
    assert documents[0]["price"] == 15
    assert documents[0]["author"] == "George Orwell"
    assert facade.find(Filter.where(title="Brave New World")).first()["price"] == 12


def test_update_one_is_idempotent(facade):
    query = book_filter(title="1984")

    facade.update_one(query, {"price": 15.0, "in_stock": False})
    once = facade.find(query).first()
    facade.update_one(query, {"price": 15.0, "in_stock": False})
    twice = facade.find(query).first()

    assert once == twice


def test_update_one_without_match_is_not_an_error(facade):
    outcome = facade.update_one(book_filter(title="Missing"), {"price": 1.0})

    assert outcome.matched_count == 0
    assert outcome.modified_count == 0


def test_update_one_touches_a_single_document(facade):
    facade.update_one(book_filter(genre="Fiction"), {"price": 1.0})

    prices = [doc["price"] for doc in facade.find(book_filter(genre="Fiction"))]
    assert prices.count(1.0) == 1


def test_returned_documents_are_snapshots(facade):
    before = facade.find(book_filter(title="1984")).first()

    facade.update_one(book_filter(title="1984"), {"price": 99.0})

    assert before["price"] == 10.99


@pytest.mark.parametrize("changes", [{}, {"_id": 1}, {"$inc": {"price": 1}}])
def test_update_one_rejects_malformed_changes(facade, changes):
    with pytest.raises(MalformedRequestError):
        facade.update_one(book_filter(title="1984"), changes)


def test_delete_one_without_match_leaves_collection_unchanged(facade):
    before = facade.count()

    outcome = facade.delete_one(book_filter(title="Missing"))

    assert outcome.deleted_count == 0
    assert facade.count() == before
    assert facade.find(book_filter(title="Missing")).to_list() == []


def test_delete_one_removes_a_single_match(facade):
    outcome = facade.delete_one(book_filter(genre="Fiction"))

    assert outcome.deleted_count == 1
    assert facade.count(book_filter(genre="Fiction")) == 3


def test_average_price_by_genre_orders_groups_and_counts_everything(facade):
    groups = facade.aggregate(average_price_by_genre()).to_list()

    averages = [group["avgPrice"] for group in groups]
    assert averages == sorted(averages, reverse=True)
    assert sum(group["count"] for group in groups) == len(SAMPLE_BOOKS)
    fiction = next(group for group in groups if group["_id"] == "Fiction")
    assert fiction["avgPrice"] == pytest.approx((12.99 + 9.99 + 8.99 + 10.99) / 4)


def test_top_author_breaks_ties_by_name(facade):
    leaders = facade.aggregate(top_authors()).to_list()

    assert leaders == [{"_id": "George Orwell", "count": 2}]


def test_books_by_decade_groups_on_derived_key(facade):
    decades = facade.aggregate(books_by_decade()).to_list()

    keys = [group["_id"]["decade"] for group in decades]
    assert keys == sorted(keys)
    assert keys[0] == 1810
    assert sum(group["count"] for group in decades) == len(SAMPLE_BOOKS)
    assert {"_id": {"decade": 1950}, "count": 2} in decades


def test_create_index_twice_keeps_index_count(facade):
    spec = IndexSpec.on("author", "published_year")

    first = facade.create_index(spec)
    before = facade.index_names()
    second = facade.create_index(spec)

    assert first.name == second.name == "author_1_published_year_1"
    assert facade.index_names() == before


def test_book_indexes_are_created(facade):
    for spec in BOOK_INDEXES:
        facade.create_index(spec)

    assert facade.index_names() == ["_id_", "author_1_published_year_1", "title_1"]


def test_insert_many_with_nothing_is_a_no_op(facade):
    assert facade.insert_many([]).inserted_ids == []


def test_unreachable_collection_raises_connectivity_error_on_iteration():
    facade = QueryFacade(UnreachableCollection())
    cursor = facade.find(Filter.where(genre="Fiction"))

    with pytest.raises(ConnectivityError, match="Connection refused") as excinfo:
        cursor.to_list()

    assert isinstance(excinfo.value.__cause__, ServerSelectionTimeoutError)


def test_dropped_connection_during_update_raises_connectivity_error():
    facade = QueryFacade(UnreachableCollection())

    with pytest.raises(ConnectivityError):
        facade.update_one(Filter.where(title="1984"), {"price": 15.0})


def test_server_rejection_raises_malformed_request_error():
    facade = QueryFacade(RejectingCollection())

    with pytest.raises(MalformedRequestError, match="unknown group operator"):
        facade.aggregate(top_authors()).to_list()


def test_refused_access_raises_connectivity_error():
    facade = QueryFacade(UnauthorizedCollection())

    with pytest.raises(ConnectivityError, match="not authorized"):
        facade.find(Filter.where(genre="Fiction")).to_list()
    with pytest.raises(ConnectivityError, match="Authentication failed"):
        facade.count()
