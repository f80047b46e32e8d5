"""Persistent vector store for chunk collections.

This module defines the ``VectorStore`` interface the engine talks to and
``LanceVectorStore``, the implementation shipped with the service.  Every
collection is a LanceDB table under the store URI, created from an
explicit schema.  LanceDB commits each write as a new table version, so
an insert or delete that fails part way leaves the previous version
intact.

A collection is only searchable while it is loaded, i.e. while this
process holds an open handle on its table.  Releasing drops the handle.
Inserts do not need a loaded collection.

Primary keys are assigned by the store: a microsecond timestamp raised
to at least one above the last key handed out or stored in the table,
so keys increase monotonically and are never reused.

The store is synchronous and guarded by a single re-entrant lock.  Errors
are raised as ``VectorStoreError`` carrying a non-zero ``StatusCode``.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

import lancedb
import numpy as np
import pyarrow as pa
import pyarrow.compute as pc

from docindex.schema import PRIMARY_FIELD, IndexParams

log = logging.getLogger("docindex.vector_store")

COLLECTION_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,254}$")
SCALAR_INDEX_TYPES = {"BTREE", "BITMAP", "LABEL_LIST"}
VECTOR_INDEX_TYPES = {"IVF_HNSW_SQ", "IVF_HNSW_PQ", "IVF_PQ"}

# Rows per IVF partition when the vector index is trained.
ROWS_PER_PARTITION = 4096

Filter = Mapping[str, Any]
Schema = Union[type, pa.Schema]


class StatusCode(IntEnum):
    SUCCESS = 0
    UNEXPECTED_ERROR = 1
    ILLEGAL_ARGUMENT = 2
    COLLECTION_NOT_FOUND = 3
    COLLECTION_ALREADY_EXISTS = 4
    COLLECTION_NOT_LOADED = 5


class LoadState(str, Enum):
    NOT_EXIST = "NotExist"
    NOT_LOAD = "NotLoad"
    LOADED = "Loaded"


class VectorStoreError(Exception):
    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(f"[{code.name}] {message}")
        self.code = code
        self.message = message


@dataclass
class InsertResult:
    """Outcome of a bulk insert.

    ``ids`` are the primary keys assigned to the accepted rows, in the
    order of ``succ_index``.  ``err_index`` maps the position of each
    rejected row to the reason it was rejected.
    """

    ids: List[int] = field(default_factory=list)
    succ_index: List[int] = field(default_factory=list)
    err_index: Dict[int, str] = field(default_factory=dict)

    @property
    def insert_count(self) -> int:
        return len(self.ids)


@dataclass
class Hit:
    id: int
    distance: float
    fields: Dict[str, Any]


class VectorStore(ABC):
    """Operations the engine needs from a vector database."""

    @abstractmethod
    def has_collection(self, name: str) -> bool: ...

    @abstractmethod
    def list_collections(self) -> List[str]: ...

    @abstractmethod
    def create_collection(self, name: str, schema: Schema) -> None: ...

    @abstractmethod
    def describe_collection(self, name: str) -> pa.Schema: ...

    @abstractmethod
    def create_index(self, name: str, params: IndexParams) -> bool: ...

    @abstractmethod
    def list_indexes(self, name: str) -> List[str]: ...

    @abstractmethod
    def load_collection(self, name: str) -> None: ...

    @abstractmethod
    def release_collection(self, name: str) -> None: ...

    @abstractmethod
    def get_load_state(self, name: str) -> LoadState: ...

    @abstractmethod
    def insert(self, name: str, rows: Sequence[Mapping[str, Any]]) -> InsertResult: ...

    @abstractmethod
    def query(
        self,
        name: str,
        filter: Optional[Filter] = None,
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def delete(self, name: str, filter: Filter) -> int: ...

    @abstractmethod
    def search(
        self,
        name: str,
        vector: Sequence[float],
        filter: Optional[Filter] = None,
        limit: int = 10,
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[Hit]: ...


def _vector_column(schema: pa.Schema) -> Optional[pa.Field]:
    for f in schema:
        if pa.types.is_fixed_size_list(f.type):
            return f
    return None


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"unsupported filter value {value!r}")
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        return repr(float(value))
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"unsupported filter value {value!r}")


def where_clause(schema: pa.Schema, flt: Optional[Filter]) -> Optional[str]:
    """Translate a field -> value mapping into a LanceDB SQL predicate.

    A scalar value means equality, a list/tuple/set means membership.  On
    a list-typed column the condition matches rows whose list contains
    any of the values.  Conditions on different fields are ANDed.
    """
    if not flt:
        return None
    clauses: List[str] = []
    for name, cond in flt.items():
        idx = schema.get_field_index(name)
        if idx < 0:
            raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"unknown filter field '{name}'")
        ftype = schema.field(idx).type
        if pa.types.is_fixed_size_list(ftype):
            raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"cannot filter on vector field '{name}'")
        values = list(cond) if isinstance(cond, (list, tuple, set, frozenset)) else [cond]
        if not values:
            clauses.append("1 = 0")
            continue
        literals = ", ".join(_literal(v) for v in values)
        if pa.types.is_list(ftype):
            clauses.append(f"array_has_any({name}, [{literals}])")
        elif len(values) == 1:
            clauses.append(f"{name} = {literals}")
        else:
            clauses.append(f"{name} IN ({literals})")
    return " AND ".join(clauses)


class LanceVectorStore(VectorStore):
    def __init__(self, uri: str, vector_index_min_rows: int = 1024) -> None:
        if "://" not in uri:
            os.makedirs(uri, exist_ok=True)
        self.uri = uri
        self.vector_index_min_rows = vector_index_min_rows
        # Zero interval: every read sees the latest committed version.
        self._db = lancedb.connect(uri, read_consistency_interval=timedelta(0))
        self._loaded: Dict[str, Any] = {}
        self._last_id = 0
        self._seeded: Set[str] = set()
        self._lock = threading.RLock()

    # ---------- helpers ----------

    @staticmethod
    def _check_name(name: str) -> None:
        if not isinstance(name, str) or not COLLECTION_NAME_RE.match(name):
            raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"invalid collection name {name!r}")

    def _open(self, name: str):
        self._check_name(name)
        table = self._loaded.get(name)
        if table is not None:
            return table
        if name not in self._db.table_names():
            raise VectorStoreError(StatusCode.COLLECTION_NOT_FOUND, f"collection '{name}' does not exist")
        try:
            return self._db.open_table(name)
        except Exception as exc:
            raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"open '{name}' failed: {exc}") from exc

    def _require_loaded(self, name: str):
        table = self._open(name)
        if name not in self._loaded:
            raise VectorStoreError(StatusCode.COLLECTION_NOT_LOADED, f"collection '{name}' is not loaded")
        return table

    def _seed_ids(self, name: str, table) -> None:
        # Keys already in the table bound the next key from below, whatever the clock says.
        if name in self._seeded:
            return
        n = table.count_rows()
        if n:
            ids = table.search().select([PRIMARY_FIELD]).limit(n).to_arrow().column(PRIMARY_FIELD)
            self._last_id = max(self._last_id, pc.max(ids).as_py())
        self._seeded.add(name)

    def _next_ids(self, count: int) -> List[int]:
        first = max(self._last_id + 1, time.time_ns() // 1000)
        self._last_id = first + count - 1
        return list(range(first, first + count))

    @staticmethod
    def _row_error(schema: pa.Schema, row: Mapping[str, Any]) -> Optional[str]:
        extra = sorted(set(row) - set(schema.names))
        if extra:
            return f"unknown field(s): {', '.join(extra)}"
        missing = [f.name for f in schema if f.name != PRIMARY_FIELD and row.get(f.name) is None]
        if missing:
            return f"missing value(s) for: {', '.join(missing)}"
        vec_field = _vector_column(schema)
        if vec_field is not None:
            try:
                vec = np.asarray(row[vec_field.name], dtype="float32")
            except (TypeError, ValueError):
                return f"{vec_field.name}: not a numeric vector"
            if vec.ndim != 1 or vec.shape[0] != vec_field.type.list_size:
                return f"{vec_field.name}: expected dim {vec_field.type.list_size}, got shape {vec.shape}"
            if not np.all(np.isfinite(vec)):
                return f"{vec_field.name}: vector contains non-finite values"
        try:
            pa.Table.from_pylist([{**row, PRIMARY_FIELD: 0}], schema=schema)
        except (pa.ArrowInvalid, pa.ArrowTypeError, OverflowError, TypeError, ValueError) as exc:
            return str(exc)
        return None

    @staticmethod
    def _project(schema: pa.Schema, row: Dict[str, Any], output_fields: Optional[Sequence[str]]) -> Dict[str, Any]:
        vec_field = _vector_column(schema)
        hidden = {"_distance", "_rowid"}
        if vec_field is not None and (output_fields is None or vec_field.name not in output_fields):
            hidden.add(vec_field.name)
        return {k: v for k, v in row.items() if k not in hidden}

    # ---------- collections ----------

    def has_collection(self, name: str) -> bool:
        self._check_name(name)
        with self._lock:
            return name in self._db.table_names()

    def list_collections(self) -> List[str]:
        with self._lock:
            return sorted(self._db.table_names())

    def create_collection(self, name: str, schema: Schema) -> None:
        self._check_name(name)
        with self._lock:
            if name in self._db.table_names():
                raise VectorStoreError(StatusCode.COLLECTION_ALREADY_EXISTS, f"collection '{name}' already exists")
            try:
                self._db.create_table(name, schema=schema)
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"create '{name}' failed: {exc}") from exc
            log.info(f"Created table '{name}'")

    def describe_collection(self, name: str) -> pa.Schema:
        with self._lock:
            return self._open(name).schema

    def create_index(self, name: str, params: IndexParams) -> bool:
        """Build the index ``params`` declares, if the table is ready for it.

        Returns True when an index was built.  Scalar indexes wait for the
        first row; the vector index waits for ``vector_index_min_rows``
        rows, and until then search scans the table exactly.  An index
        that already exists is left alone.
        """
        with self._lock:
            table = self._open(name)
            idx = table.schema.get_field_index(params.field_name)
            if idx < 0:
                raise VectorStoreError(
                    StatusCode.ILLEGAL_ARGUMENT, f"no field '{params.field_name}' to index in '{name}'"
                )
            is_vector = pa.types.is_fixed_size_list(table.schema.field(idx).type)
            allowed = VECTOR_INDEX_TYPES if is_vector else SCALAR_INDEX_TYPES
            if params.index_type not in allowed:
                raise VectorStoreError(
                    StatusCode.ILLEGAL_ARGUMENT,
                    f"index type {params.index_type} not supported on field '{params.field_name}'",
                )
            try:
                if params.field_name in self._indexed_columns(table):
                    return False
                n = table.count_rows()
                if is_vector:
                    if n < self.vector_index_min_rows:
                        log.info(f"Deferring '{params.index_name}' on '{name}' (rows={n})")
                        return False
                    table.create_index(
                        metric=params.metric_type or "l2",
                        num_partitions=max(1, n // ROWS_PER_PARTITION),
                        vector_column_name=params.field_name,
                        index_type=params.index_type,
                        **params.params,
                    )
                else:
                    if n == 0:
                        return False
                    table.create_scalar_index(params.field_name, index_type=params.index_type)
            except Exception as exc:
                raise VectorStoreError(
                    StatusCode.UNEXPECTED_ERROR, f"index '{params.index_name}' on '{name}' failed: {exc}"
                ) from exc
            log.info(f"Built {params.index_type} index '{params.index_name}' on '{name}' (rows={n})")
            return True

    @staticmethod
    def _indexed_columns(table) -> List[str]:
        return [col for ix in table.list_indices() for col in ix.columns]

    def list_indexes(self, name: str) -> List[str]:
        with self._lock:
            table = self._open(name)
            try:
                return sorted(self._indexed_columns(table))
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"list indexes of '{name}' failed: {exc}") from exc

    def load_collection(self, name: str) -> None:
        with self._lock:
            self._loaded[name] = self._open(name)

    def release_collection(self, name: str) -> None:
        with self._lock:
            self._open(name)
            self._loaded.pop(name, None)

    def get_load_state(self, name: str) -> LoadState:
        with self._lock:
            if not self.has_collection(name):
                return LoadState.NOT_EXIST
            return LoadState.LOADED if name in self._loaded else LoadState.NOT_LOAD

    # ---------- data ----------

    def insert(self, name: str, rows: Sequence[Mapping[str, Any]]) -> InsertResult:
        """Write ``rows`` in one commit.  Rejected rows are reported, not written."""
        with self._lock:
            table = self._open(name)
            schema = table.schema
            result = InsertResult()
            accepted: List[Dict[str, Any]] = []
            for i, row in enumerate(rows):
                reason = self._row_error(schema, row)
                if reason:
                    result.err_index[i] = reason
                    continue
                accepted.append(dict(row))
                result.succ_index.append(i)
            if not accepted:
                return result

            try:
                self._seed_ids(name, table)
                ids = self._next_ids(len(accepted))
                for row, pk in zip(accepted, ids):
                    row[PRIMARY_FIELD] = pk
                table.add(pa.Table.from_pylist(accepted, schema=schema))
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"insert into '{name}' failed: {exc}") from exc
            result.ids = ids
            return result

    def query(
        self,
        name: str,
        filter: Optional[Filter] = None,
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Rows matching ``filter`` in primary key order."""
        with self._lock:
            table = self._require_loaded(name)
            where = where_clause(table.schema, filter)
            try:
                n = table.count_rows(where)
                if n == 0:
                    return []
                builder = table.search()
                if where:
                    builder = builder.where(where)
                if output_fields is not None:
                    builder = builder.select(list(dict.fromkeys([PRIMARY_FIELD, *output_fields])))
                rows = builder.limit(n).to_list()
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"query on '{name}' failed: {exc}") from exc
            rows.sort(key=lambda r: r[PRIMARY_FIELD])
            return [self._project(table.schema, r, output_fields) for r in rows]

    def delete(self, name: str, filter: Filter) -> int:
        """Delete the rows matching ``filter``; returns how many were removed."""
        with self._lock:
            table = self._require_loaded(name)
            where = where_clause(table.schema, filter)
            if not where:
                raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, "delete requires a filter")
            try:
                n = table.count_rows(where)
                if n:
                    table.delete(where)
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"delete on '{name}' failed: {exc}") from exc
            return n

    def search(
        self,
        name: str,
        vector: Sequence[float],
        filter: Optional[Filter] = None,
        limit: int = 10,
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[Hit]:
        """L2 nearest neighbours of ``vector`` among rows matching ``filter``, closest first."""
        if limit < 1:
            raise VectorStoreError(StatusCode.ILLEGAL_ARGUMENT, f"limit must be positive, got {limit}")
        with self._lock:
            table = self._require_loaded(name)
            schema = table.schema
            vec_field = _vector_column(schema)
            query = np.asarray(vector, dtype="float32")
            if query.ndim != 1 or query.shape[0] != vec_field.type.list_size:
                raise VectorStoreError(
                    StatusCode.ILLEGAL_ARGUMENT,
                    f"query vector has shape {query.shape}, collection dim is {vec_field.type.list_size}",
                )
            where = where_clause(schema, filter)
            try:
                if table.count_rows() == 0:
                    return []
                builder = table.search(query, vector_column_name=vec_field.name).distance_type("l2")
                if where:
                    builder = builder.where(where, prefilter=True)
                if output_fields is not None:
                    builder = builder.select(list(dict.fromkeys([PRIMARY_FIELD, *output_fields])))
                rows = builder.limit(limit).to_list()
            except Exception as exc:
                raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, f"search on '{name}' failed: {exc}") from exc
            return [
                Hit(id=r[PRIMARY_FIELD], distance=float(r["_distance"]), fields=self._project(schema, r, output_fields))
                for r in rows
            ]
