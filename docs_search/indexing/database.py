"""SQLite document store holding the node and template corpora"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Union

from ..config import config
from ..models.entity import Corpus, Entity, EntityId
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

EMBEDDING_COLUMNS = {
    "embedding_vector": "BLOB",
    "embedding_content_hash": "TEXT",
    "embedding_generated_at": "TEXT",
    "embedding_model": "TEXT",
    "embedding_dimensions": "INTEGER",
}

# Columns the vector store needs before it can be used
REQUIRED_EMBEDDING_COLUMNS = ("embedding_vector", "embedding_content_hash")


@dataclass(frozen=True)
class CorpusTable:
    """Where and how one corpus is stored"""

    table: str
    id_column: str
    fts_table: str
    fts_columns: tuple
    select_columns: tuple


CORPUS_TABLES: Dict[str, CorpusTable] = {
    "nodes": CorpusTable(
        table="nodes",
        id_column="node_type",
        fts_table="nodes_fts",
        fts_columns=("node_type", "display_name", "description", "documentation", "operations"),
        select_columns=(
            "node_type", "display_name", "description", "category",
            "package_name", "documentation", "operations",
        ),
    ),
    "templates": CorpusTable(
        table="templates",
        id_column="id",
        fts_table="templates_fts",
        fts_columns=("name", "description"),
        select_columns=(
            "id", "workflow_id", "name", "description", "categories",
            "nodes_used", "author_name", "views",
        ),
    ),
}

NODES_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    node_type TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    description TEXT,
    category TEXT,
    package_name TEXT,
    documentation TEXT,
    operations TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
)
"""

TEMPLATES_SCHEMA = """
CREATE TABLE IF NOT EXISTS templates (
    id INTEGER PRIMARY KEY,
    workflow_id INTEGER,
    name TEXT NOT NULL,
    description TEXT,
    categories TEXT,
    nodes_used TEXT,
    author_name TEXT,
    views INTEGER DEFAULT 0,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
)
"""


def get_corpus_table(corpus: Corpus) -> CorpusTable:
    try:
        return CORPUS_TABLES[corpus]
    except KeyError:
        raise ValueError(f"Unknown corpus: {corpus!r}") from None


def _json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring malformed JSON list: {value[:50]}")
        return []
    return parsed if isinstance(parsed, list) else []


def _operation_names(value: Optional[str]) -> List[str]:
    names = []
    for op in _json_list(value):
        name = op.get("name", "") if isinstance(op, dict) else str(op)
        if name:
            names.append(name)
    return names


def entity_from_row(corpus: Corpus, row: sqlite3.Row) -> Entity:
    """Convert a corpus table row into an Entity"""
    if corpus == "nodes":
        return Entity(
            entity_id=row["node_type"],
            corpus="nodes",
            name=row["display_name"] or "",
            description=row["description"] or "",
            category=row["category"] or "",
            tags=_operation_names(row["operations"]),
            documentation=row["documentation"] or "",
            attributes={"package": row["package_name"] or ""},
        )

    return Entity(
        entity_id=row["id"],
        corpus="templates",
        name=row["name"] or "",
        description=row["description"] or "",
        tags=[str(c) for c in _json_list(row["categories"])],
        attributes={
            "workflow_id": row["workflow_id"],
            "author": row["author_name"] or "",
            "views": row["views"] or 0,
            "nodes_used": _json_list(row["nodes_used"]),
        },
    )


class DocumentDatabase:
    """
    Thread-safe wrapper around the SQLite corpus database

    One connection is shared by the search threads; every statement runs
    under a re-entrant lock.
    """

    def __init__(self, db_path: Union[Path, str, None] = None):
        """
        Args:
            db_path: Database file, or ":memory:" (default from config)
        """
        self.db_path = str(db_path or config.database_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        logger.info(f"Document database opened at {self.db_path}")

    # ------------------------------------------------------------------
    # Low level access
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.connection.execute(sql, params)

    def fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back everything on any exception"""
        with self._lock:
            try:
                yield self.connection
                self.connection.commit()
            except BaseException:
                self.connection.rollback()
                raise

    def has_table(self, name: str) -> bool:
        row = self.fetchone(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (name,),
        )
        return row is not None

    def table_columns(self, table: str) -> Set[str]:
        return {row["name"] for row in self.fetchall(f"PRAGMA table_info({table})")}

    def close(self) -> None:
        with self._lock:
            self.connection.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def create_schema(self, with_embeddings: bool = True, with_fts: bool = True) -> None:
        """Create corpus tables (and optionally embedding columns / FTS5 indexes)"""
        with self.transaction() as conn:
            conn.execute(NODES_SCHEMA)
            conn.execute(TEMPLATES_SCHEMA)

        if with_fts:
            self.create_fts_tables()
        if with_embeddings:
            self.migrate_embedding_columns()

    def create_fts_tables(self) -> None:
        with self.transaction() as conn:
            for table_def in CORPUS_TABLES.values():
                conn.execute(
                    f"CREATE VIRTUAL TABLE IF NOT EXISTS {table_def.fts_table} "
                    f"USING fts5({', '.join(table_def.fts_columns)})"
                )

    def migrate_embedding_columns(self) -> List[str]:
        """
        Add missing embedding columns to both corpus tables

        Idempotent: columns that already exist are left alone.

        Returns:
            List of "table.column" entries that were added
        """
        added = []
        with self.transaction() as conn:
            for table_def in CORPUS_TABLES.values():
                existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table_def.table})")}
                for column, column_type in EMBEDDING_COLUMNS.items():
                    if column not in existing:
                        conn.execute(f"ALTER TABLE {table_def.table} ADD COLUMN {column} {column_type}")
                        added.append(f"{table_def.table}.{column}")
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table_def.table}_embedding_content_hash "
                    f"ON {table_def.table}(embedding_content_hash)"
                )

        if added:
            logger.info(f"Added embedding columns: {', '.join(added)}")
        return added

    def has_embedding_columns(self, corpus: Corpus) -> bool:
        table_def = get_corpus_table(corpus)
        if not self.has_table(table_def.table):
            return False
        columns = self.table_columns(table_def.table)
        return all(column in columns for column in REQUIRED_EMBEDDING_COLUMNS)

    # ------------------------------------------------------------------
    # Corpus access
    # ------------------------------------------------------------------

    def upsert_node(
        self,
        node_type: str,
        display_name: str,
        description: str = "",
        category: str = "",
        package_name: str = "",
        documentation: str = "",
        operations: Optional[List[Any]] = None,
    ) -> None:
        operations_json = json.dumps(operations or [])
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO nodes (node_type, display_name, description, category,
                                   package_name, documentation, operations, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(node_type) DO UPDATE SET
                    display_name = excluded.display_name,
                    description = excluded.description,
                    category = excluded.category,
                    package_name = excluded.package_name,
                    documentation = excluded.documentation,
                    operations = excluded.operations,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (node_type, display_name, description, category, package_name, documentation, operations_json),
            )
            if self.has_table("nodes_fts"):
                rowid = conn.execute("SELECT rowid FROM nodes WHERE node_type = ?", (node_type,)).fetchone()[0]
                conn.execute("DELETE FROM nodes_fts WHERE rowid = ?", (rowid,))
                conn.execute(
                    "INSERT INTO nodes_fts (rowid, node_type, display_name, description, documentation, operations) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (rowid, node_type, display_name, description, documentation,
                     " ".join(_operation_names(operations_json))),
                )

    def upsert_template(
        self,
        template_id: int,
        name: str,
        description: str = "",
        categories: Optional[List[str]] = None,
        nodes_used: Optional[List[str]] = None,
        workflow_id: Optional[int] = None,
        author_name: str = "",
        views: int = 0,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO templates (id, workflow_id, name, description, categories,
                                       nodes_used, author_name, views, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    workflow_id = excluded.workflow_id,
                    name = excluded.name,
                    description = excluded.description,
                    categories = excluded.categories,
                    nodes_used = excluded.nodes_used,
                    author_name = excluded.author_name,
                    views = excluded.views,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    template_id, workflow_id if workflow_id is not None else template_id, name,
                    description, json.dumps(categories or []), json.dumps(nodes_used or []),
                    author_name, views,
                ),
            )
            if self.has_table("templates_fts"):
                conn.execute("DELETE FROM templates_fts WHERE rowid = ?", (template_id,))
                conn.execute(
                    "INSERT INTO templates_fts (rowid, name, description) VALUES (?, ?, ?)",
                    (template_id, name, description),
                )

    def get_entity(self, corpus: Corpus, entity_id: EntityId) -> Optional[Entity]:
        table_def = get_corpus_table(corpus)
        row = self.fetchone(
            f"SELECT {', '.join(table_def.select_columns)} FROM {table_def.table} WHERE {table_def.id_column} = ?",
            (entity_id,),
        )
        return entity_from_row(corpus, row) if row else None

    def iter_entities(self, corpus: Corpus) -> List[Entity]:
        table_def = get_corpus_table(corpus)
        rows = self.fetchall(
            f"SELECT {', '.join(table_def.select_columns)} FROM {table_def.table} ORDER BY {table_def.id_column}"
        )
        return [entity_from_row(corpus, row) for row in rows]

    def count_entities(self, corpus: Corpus) -> int:
        table_def = get_corpus_table(corpus)
        if not self.has_table(table_def.table):
            return 0
        return self.fetchone(f"SELECT COUNT(*) AS total FROM {table_def.table}")["total"]

    def delete_entity(self, corpus: Corpus, entity_id: EntityId) -> bool:
        """Remove an entity (and with it its embedding record)"""
        table_def = get_corpus_table(corpus)
        with self.transaction() as conn:
            row = conn.execute(
                f"SELECT rowid FROM {table_def.table} WHERE {table_def.id_column} = ?", (entity_id,)
            ).fetchone()
            if row is None:
                return False
            if self.has_table(table_def.fts_table):
                conn.execute(f"DELETE FROM {table_def.fts_table} WHERE rowid = ?", (row[0],))
            conn.execute(f"DELETE FROM {table_def.table} WHERE {table_def.id_column} = ?", (entity_id,))
        return True
