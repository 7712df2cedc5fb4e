from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import psycopg
from psycopg import sql
from psycopg.conninfo import conninfo_to_dict
from psycopg.rows import dict_row

from .config import BackfillTarget
from .errors import StorageError
from .log import get_logger

logger = get_logger("latticefill.write")

RowId = Union[int, str]


@dataclass
class DBConfig:
    url: str
    password: str

    @classmethod
    def from_env(cls) -> "DBConfig":
        return cls(
            url=os.getenv("SUPABASE_DB_URL", "postgresql://postgres@localhost:54322/postgres"),
            password=os.getenv("SUPABASE_SERVICE_KEY", ""),
        )


@dataclass
class SourceRow:
    id: RowId
    texts: dict


def get_conn(cfg: Optional[DBConfig] = None) -> psycopg.Connection:
    cfg = cfg or DBConfig.from_env()
    info = conninfo_to_dict(cfg.url)
    logger.info(
        f"Connecting to Postgres {info.get('host', 'localhost')}:{info.get('port', 5432)}/"
        f"{info.get('dbname', '')} as {info.get('user', '')}"
    )
    return psycopg.connect(
        cfg.url,
        password=cfg.password,
        autocommit=True,
        row_factory=dict_row,
    )


def normalize_id(value: object) -> RowId:
    # bool is an int subclass but never a sensible key
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return str(value)


def project_row(target: BackfillTarget, row: dict) -> SourceRow:
    """Keep only the configured text columns that hold strings."""
    texts = {}
    for f in target.text_fields:
        value = row.get(f.column)
        if isinstance(value, str):
            texts[f.column] = value
        elif value is not None:
            logger.debug(
                f"{target.table}: dropping non-string {f.column} ({type(value).__name__}) "
                f"for id={row.get(target.id_column)}"
            )
    return SourceRow(id=normalize_id(row[target.id_column]), texts=texts)


def _vec_literal(vec: List[float]) -> str:
    # pgvector text literal: [v1,v2,...]
    return "[" + ",".join(repr(float(v)) for v in vec) + "]"


class PostgresTableStore:
    """Row fetch/update against the backfill tables.

    Holds one autocommit connection; after a connection-level failure the
    connection is dropped and reopened on the next call.
    """

    def __init__(self, connect: Callable[[], psycopg.Connection]) -> None:
        self._connect = connect
        self._conn: Optional[psycopg.Connection] = None

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = self._connect()
        return self._conn

    def open(self) -> None:
        """Connect now so configuration problems surface before any row work."""
        _ = self.conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def _execute(self, query: sql.Composable, params: tuple, *, fetch: bool) -> list:
        try:
            with self.conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall() if fetch else []
        except psycopg.OperationalError as e:
            self.close()
            raise StorageError(str(e)) from e
        except psycopg.Error as e:
            raise StorageError(str(e)) from e

    def missing_columns(self, target: BackfillTarget) -> List[str]:
        """Columns the target needs that its table lacks (all of them when the table is absent)."""
        query = sql.SQL(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_name = %s AND table_schema = ANY(current_schemas(false))"
        )
        rows = self._execute(query, (target.table,), fetch=True)
        present = {r["column_name"] for r in rows}
        required = [target.id_column] + target.source_fields + [target.embedding_column]
        return [c for c in required if c not in present]

    def fetch_pending_page(
        self,
        target: BackfillTarget,
        after_id: Optional[RowId],
        limit: int,
    ) -> List[SourceRow]:
        columns = [target.id_column] + target.source_fields
        where = [sql.SQL("{} IS NULL").format(sql.Identifier(target.embedding_column))]
        params: list = []
        if after_id is not None:
            where.append(sql.SQL("{} > %s").format(sql.Identifier(target.id_column)))
            params.append(after_id)
        query = sql.SQL("SELECT {cols} FROM {table} WHERE {where} ORDER BY {id} LIMIT %s").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(target.table),
            where=sql.SQL(" AND ").join(where),
            id=sql.Identifier(target.id_column),
        )
        params.append(limit)
        rows = self._execute(query, tuple(params), fetch=True)
        return [project_row(target, r) for r in rows]

    def write_embedding(self, target: BackfillTarget, row_id: RowId, vector: List[float]) -> None:
        query = sql.SQL("UPDATE {table} SET {col} = %s::vector WHERE {id} = %s").format(
            table=sql.Identifier(target.table),
            col=sql.Identifier(target.embedding_column),
            id=sql.Identifier(target.id_column),
        )
        self._execute(query, (_vec_literal(vector), row_id), fetch=False)

    def fetch_all(self, target: BackfillTarget) -> List[dict]:
        """All rows of a target with the embedding column rendered as text."""
        query = sql.SQL("SELECT {cols}, {emb}::text AS {emb_alias} FROM {table} ORDER BY {id}").format(
            cols=sql.SQL(", ").join(
                sql.Identifier(c) for c in [target.id_column] + target.source_fields
            ),
            emb=sql.Identifier(target.embedding_column),
            emb_alias=sql.Identifier(target.embedding_column),
            table=sql.Identifier(target.table),
            id=sql.Identifier(target.id_column),
        )
        return self._execute(query, (), fetch=True)
