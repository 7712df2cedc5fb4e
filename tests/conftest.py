"""
Pytest configuration and shared fakes for the database and the embedding API.
"""

import json
from unittest.mock import Mock

import pytest

from latticefill.config import BackfillTarget, TextField
from latticefill.errors import StorageError
from latticefill.write import SourceRow, project_row


class FakeTableStore:
    """In-memory stand-in for PostgresTableStore.

    Rows are dicts; `fetch_pending_page` mirrors the SQL: embedding IS NULL,
    id > after_id, ordered by id, limited.
    """

    def __init__(self, rows_by_table):
        self.rows = {t: [dict(r) for r in rows] for t, rows in rows_by_table.items()}
        self.fetch_calls = []
        self.writes = []
        self.fetch_failures = 0
        self.write_failures = set()
        self.missing = {}

    def missing_columns(self, target):
        if target.table not in self.rows:
            return [target.id_column] + target.source_fields + [target.embedding_column]
        return list(self.missing.get(target.table, []))

    def fetch_pending_page(self, target, after_id, limit):
        self.fetch_calls.append((target.name, after_id, limit))
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise StorageError("connection reset by peer")
        pending = [
            r for r in sorted(self.rows[target.table], key=lambda r: r[target.id_column])
            if r.get(target.embedding_column) is None
            and (after_id is None or r[target.id_column] > after_id)
        ]
        return [project_row(target, r) for r in pending[:limit]]

    def write_embedding(self, target, row_id, vector):
        if row_id in self.write_failures:
            raise StorageError(f"permission denied for table {target.table}")
        for r in self.rows[target.table]:
            if r[target.id_column] == row_id:
                r[target.embedding_column] = list(vector)
        self.writes.append((target.name, row_id, len(vector)))

    def fetch_all(self, target):
        out = []
        for r in sorted(self.rows[target.table], key=lambda r: r[target.id_column]):
            row = dict(r)
            emb = row.get(target.embedding_column)
            if isinstance(emb, list):
                row[target.embedding_column] = json.dumps(emb)
            out.append(row)
        return out


class FakeEmbedder:
    """Returns scripted results per prompt; defaults to a vector of `dim` ones."""

    def __init__(self, dim=1536, script=None):
        self.dim = dim
        self.script = script or {}
        self.calls = []

    def embed(self, text, target_dimension):
        self.calls.append(text)
        action = self.script.get(text)
        if isinstance(action, Exception):
            raise action
        if callable(action):
            return action()
        if action is not None:
            return action
        return [1.0] * self.dim


def make_response(status_code=200, payload=None, text=None):
    resp = Mock()
    resp.status_code = status_code
    if payload is not None:
        resp.json.return_value = payload
        resp.text = text if text is not None else json.dumps(payload)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    return resp


def embedding_payload(length):
    return {"data": [{"embedding": [0.01] * length, "index": 0}], "model": "test"}


@pytest.fixture
def target():
    return BackfillTarget(
        name="mental_models",
        table="mental_models",
        text_fields=(TextField("name", "Tool Name"), TextField("summary", "Summary")),
    )


@pytest.fixture
def progress_path(tmp_path):
    return tmp_path / "progress.json"


@pytest.fixture
def no_sleep():
    return Mock()


@pytest.fixture
def source_row():
    return SourceRow(id=1, texts={"name": "Inversion", "summary": "Think backwards."})
