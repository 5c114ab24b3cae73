from __future__ import annotations

import copy

from bookctl.query import Document, Filter, IndexSpec, Projection

SUMMARY_FIELDS = ("title", "author", "price")

BOOK_INDEXES = (
    IndexSpec.on("title"),
    IndexSpec.on("author", "published_year"),
)

SAMPLE_BOOKS: tuple[Document, ...] = (
    {
        "title": "To Kill a Mockingbird",
        "author": "Harper Lee",
        "genre": "Fiction",
        "published_year": 1960,
        "price": 12.99,
        "in_stock": True,
        "pages": 336,
        "publisher": "J. B. Lippincott & Co.",
    },
    {
        "title": "1984",
        "author": "George Orwell",
        "genre": "Dystopian",
        "published_year": 1949,
        "price": 10.99,
        "in_stock": True,
        "pages": 328,
        "publisher": "Secker & Warburg",
    },
    {
        "title": "The Great Gatsby",
        "author": "F. Scott Fitzgerald",
        "genre": "Fiction",
        "published_year": 1925,
        "price": 9.99,
        "in_stock": True,
        "pages": 180,
        "publisher": "Charles Scribner's Sons",
    },
    {
        "title": "Brave New World",
        "author": "Aldous Huxley",
        "genre": "Dystopian",
        "published_year": 1932,
        "price": 11.5,
        "in_stock": False,
        "pages": 311,
        "publisher": "Chatto & Windus",
    },
    {
        "title": "The Hobbit",
        "author": "J.R.R. Tolkien",
        "genre": "Fantasy",
        "published_year": 1937,
        "price": 14.99,
        "in_stock": True,
        "pages": 310,
        "publisher": "George Allen & Unwin",
    },
    {
        "title": "The Catcher in the Rye",
        "author": "J.D. Salinger",
        "genre": "Fiction",
        "published_year": 1951,
        "price": 8.99,
        "in_stock": True,
        "pages": 224,
        "publisher": "Little, Brown and Company",
    },
    {
        "title": "Pride and Prejudice",
        "author": "Jane Austen",
        "genre": "Romance",
        "published_year": 1813,
        "price": 7.99,
        "in_stock": True,
        "pages": 432,
        "publisher": "T. Egerton",
    },
    {
        "title": "The Lord of the Rings",
        "author": "J.R.R. Tolkien",
        "genre": "Fantasy",
        "published_year": 1954,
        "price": 19.99,
        "in_stock": True,
        "pages": 1178,
        "publisher": "Allen & Unwin",
    },
    {
        "title": "Animal Farm",
        "author": "George Orwell",
        "genre": "Political Satire",
        "published_year": 1945,
        "price": 8.5,
        "in_stock": False,
        "pages": 112,
        "publisher": "Secker & Warburg",
    },
    {
        "title": "The Alchemist",
        "author": "Paulo Coelho",
        "genre": "Fiction",
        "published_year": 1988,
        "price": 10.99,
        "in_stock": True,
        "pages": 197,
        "publisher": "HarperOne",
    },
    {
        "title": "Moby Dick",
        "author": "Herman Melville",
        "genre": "Adventure",
        "published_year": 1851,
        "price": 12.5,
        "in_stock": False,
        "pages": 635,
        "publisher": "Harper & Brothers",
    },
    {
        "title": "Wuthering Heights",
        "author": "Emily Brontë",
        "genre": "Gothic Fiction",
        "published_year": 1847,
        "price": 9.99,
        "in_stock": True,
        "pages": 342,
        "publisher": "Thomas Cautley Newby",
    },
)


def sample_books() -> list[Document]:
    return copy.deepcopy(list(SAMPLE_BOOKS))


def book_filter(
    *,
    title: str | None = None,
    genre: str | None = None,
    author: str | None = None,
    published_after: int | None = None,
    in_stock: bool | None = None,
) -> Filter:
    query = Filter()
    if title is not None:
        query = query.eq("title", title)
    if genre is not None:
        query = query.eq("genre", genre)
    if author is not None:
        query = query.eq("author", author)
    if in_stock is not None:
        query = query.eq("in_stock", in_stock)
    if published_after is not None:
        query = query.gt("published_year", published_after)
    return query


def summary_projection() -> Projection:
    return Projection.fields(*SUMMARY_FIELDS, include_id=False)
