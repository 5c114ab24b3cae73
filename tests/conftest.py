from __future__ import annotations

import mongomock
import pytest

from bookctl.books import sample_books
from bookctl.facade import QueryFacade


@pytest.fixture
def books_collection():
    collection = mongomock.MongoClient()["plp_bookstore"]["books"]
    collection.insert_many(sample_books())
    return collection


@pytest.fixture
def facade(books_collection):
    return QueryFacade(books_collection)
