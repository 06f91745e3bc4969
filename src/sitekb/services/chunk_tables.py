"""The two chunk storage variants, one per embedding model."""

from dataclasses import dataclass
from uuid import UUID, uuid5

from sitekb.errors import EmbeddingDimensionError
from sitekb.models.enums import EmbeddingModel
from sitekb.models.tables import ChunkRecordBase, LargeChunkRecord, SmallChunkRecord

_CHUNK_ID_NAMESPACE = UUID("5b0c3f2e-8f7d-4d8e-9a51-2f6c1c9d7e41")


@dataclass(frozen=True)
class ChunkTable:
    """Binds a relational table and a vector collection to one embedding model."""

    name: str
    record_type: type[ChunkRecordBase]
    model: EmbeddingModel

    @property
    def dimensions(self) -> int:
        return self.model.dimensions

    def validate_dimensions(self, embedding: list[float]) -> None:
        if len(embedding) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(embedding), table=self.name)


SMALL_CHUNKS = ChunkTable(name=SmallChunkRecord.__tablename__, record_type=SmallChunkRecord, model=EmbeddingModel.SMALL)
LARGE_CHUNKS = ChunkTable(name=LargeChunkRecord.__tablename__, record_type=LargeChunkRecord, model=EmbeddingModel.LARGE)

CHUNK_TABLES = (SMALL_CHUNKS, LARGE_CHUNKS)


def chunk_table_for(model: EmbeddingModel | str) -> ChunkTable:
    model = EmbeddingModel(model)
    for table in CHUNK_TABLES:
        if table.model == model:
            return table
    raise ValueError(f"no chunk table for embedding model {model}")


def chunk_id_for(client_id: str, chunk_hash: str) -> str:
    """Deterministic chunk id, so the same content maps to the same vector entry."""
    return str(uuid5(_CHUNK_ID_NAMESPACE, f"{client_id}:{chunk_hash}"))
