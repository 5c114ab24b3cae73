from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from bson import ObjectId, json_util
from rich.table import Table

from bookctl.query import Document


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return json_util.dumps(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    return str(value)


def document_columns(documents: Iterable[Document]) -> list[str]:
    columns: list[str] = []
    for document in documents:
        for key in document:
            if key not in columns:
                columns.append(key)
    return columns


def _is_numeric_column(documents: list[Document], column: str) -> bool:
    values = [doc[column] for doc in documents if doc.get(column) is not None]
    return bool(values) and all(
        isinstance(value, (int, float)) and not isinstance(value, bool) for value in values
    )


def render_documents_table(documents: list[Document], *, title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", style="dim", justify="right")
    columns = document_columns(documents)
    for column in columns:
        style = "cyan" if column == "_id" else "bold" if column == "title" else None
        justify = "right" if _is_numeric_column(documents, column) else "left"
        table.add_column(column, style=style, justify=justify)

    for index, document in enumerate(documents):
        table.add_row(str(index), *(format_value(document.get(column)) for column in columns))

    return table


def documents_to_json(documents: list[Document]) -> str:
    return json_util.dumps(documents, indent=2)
