from __future__ import annotations

import json
from datetime import datetime, timezone

from bson import ObjectId

from bookctl.render import document_columns, documents_to_json, format_value, render_documents_table


def test_format_value_handles_bson_types():
    oid = ObjectId("65f1c0ffee0000000000beef")

    assert format_value(None) == ""
    assert format_value(True) == "yes"
    assert format_value(12.5) == "12.50"
    assert format_value(oid) == "65f1c0ffee0000000000beef"
    assert format_value(datetime(2024, 1, 2, tzinfo=timezone.utc)) == "2024-01-02T00:00:00+00:00"
    assert format_value({"decade": 1950}) == '{"decade": 1950}'
    assert format_value(["a", 2]) == "a, 2"


def test_document_columns_keep_first_seen_order():
    documents = [{"title": "1984", "price": 10.99}, {"title": "Emma", "genre": "Romance"}]

    assert document_columns(documents) == ["title", "price", "genre"]


def test_render_documents_table_fills_missing_fields():
    documents = [{"title": "1984", "price": 10.99}, {"title": "Emma", "genre": "Romance"}]

    table = render_documents_table(documents, title="Books")

    assert table.title == "Books"
    assert [column.header for column in table.columns] == ["#", "title", "price", "genre"]
    assert table.row_count == 2
    assert table.columns[2].justify == "right"
    assert list(table.columns[3].cells) == ["", "Romance"]


def test_documents_to_json_uses_extended_json_for_ids():
    oid = ObjectId("65f1c0ffee0000000000beef")

    payload = json.loads(documents_to_json([{"_id": oid, "title": "1984"}]))

    assert payload == [{"_id": {"$oid": "65f1c0ffee0000000000beef"}, "title": "1984"}]
