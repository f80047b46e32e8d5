"""Fixed field layout of a chunk collection.

Each collection is a LanceDB table created from ``chunk_model(dim)``, so
field types are declared explicitly when the table is created and never
inferred from the first inserted rows.  ``schema_differences`` compares
the arrow schema of an existing table against the layout the engine
expects.

The value limits below (byte lengths, integer ranges, array capacity)
are enforced on the pydantic side before rows reach the table; see
``docindex.models.ChunkMetadata``.
"""

from typing import Any, Dict, List

import pyarrow as pa
from lancedb.pydantic import LanceModel, Vector
from pydantic import AfterValidator, BaseModel, Field

PRIMARY_FIELD = "id"
TEXT_FIELD = "text"
VECTOR_FIELD = "vector"

TEXT_MAX_LENGTH = 65535
FILENAME_MAX_LENGTH = 512
FILETYPE_MAX_LENGTH = 128
CATEGORY_MAX_LENGTH = 32
USER_ID_MAX_CAPACITY = 255

INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1
INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1


def utf8_max_length(limit: int) -> AfterValidator:
    """Validator capping the UTF-8 encoded size of a string at ``limit`` bytes."""

    def check(value: str) -> str:
        try:
            size = len(value.encode("utf-8"))
        except UnicodeEncodeError as exc:
            raise ValueError(f"not valid UTF-8 text ({exc.reason} at position {exc.start})") from exc
        if size > limit:
            raise ValueError(f"UTF-8 length {size} exceeds max_length {limit}")
        return value

    return AfterValidator(check)


def chunk_model(dim: int) -> type:
    """LanceModel describing one chunk row with ``dim``-wide vectors."""

    class ChunkRecord(LanceModel):
        id: int
        text: str
        vector: Vector(dim)
        file_id: int
        filename: str
        page_number: int
        filetype: str
        category: str
        user_id: List[int]

    return ChunkRecord


class IndexParams(BaseModel):
    index_name: str
    field_name: str
    index_type: str
    metric_type: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_vector(self) -> bool:
        return self.field_name == VECTOR_FIELD


def chunk_indexes(m: int, ef_construction: int) -> List[IndexParams]:
    """Indexes every chunk collection carries: two scalar, one ANN (L2)."""
    return [
        IndexParams(index_name="category_index", field_name="category", index_type="BITMAP"),
        IndexParams(index_name="file_id_index", field_name="file_id", index_type="BTREE"),
        IndexParams(
            index_name="vector_index",
            field_name=VECTOR_FIELD,
            index_type="IVF_HNSW_SQ",
            metric_type="l2",
            params={"m": m, "ef_construction": ef_construction},
        ),
    ]


def schema_differences(expected: pa.Schema, actual: pa.Schema) -> List[str]:
    """Human-readable differences between two table layouts; empty if they match."""
    diffs: List[str] = []
    for want in expected:
        idx = actual.get_field_index(want.name)
        if idx < 0:
            diffs.append(f"missing field '{want.name}'")
            continue
        got = actual.field(idx)
        if got.type != want.type:
            diffs.append(f"field '{want.name}' type: expected {want.type}, found {got.type}")
    extra = sorted(set(actual.names) - set(expected.names))
    if extra:
        diffs.append(f"unexpected field(s): {', '.join(extra)}")
    return diffs
