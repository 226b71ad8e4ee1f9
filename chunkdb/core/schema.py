"""
Persisted record models for the snapshot payloads.
Wire keys follow the connector's JSON tables (camelCase startIndex).
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from chunkdb.vector.types import ChunkSpan, Document


class DocumentRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    content: str
    start_label: int = Field(alias="startIndex", ge=0)
    length: int = Field(ge=0)

    @classmethod
    def from_document(cls, document: Document) -> "DocumentRecord":
        return cls(
            name=document.name,
            content=document.content,
            start_label=document.start_label,
            length=document.length,
        )

    def to_document(self) -> Document:
        return Document(
            name=self.name,
            content=self.content,
            start_label=self.start_label,
            length=self.length,
        )


class SpanRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    start_offset: int = Field(alias="startIndex", ge=0)
    length: int = Field(ge=0)

    @classmethod
    def from_span(cls, span: ChunkSpan) -> "SpanRecord":
        return cls(start_offset=span.start_offset, length=span.length)

    def to_span(self) -> ChunkSpan:
        return ChunkSpan(start_offset=self.start_offset, length=self.length)


class VectorTable(BaseModel):
    rows: List[List[float]]

    @field_validator('rows')
    @classmethod
    def rows_must_share_width(cls, v):
        widths = {len(row) for row in v}
        if len(widths) > 1:
            raise ValueError(f'vector rows have differing widths: {sorted(widths)}')
        return v


DocumentTable = TypeAdapter(List[DocumentRecord])
SpanTable = TypeAdapter(List[SpanRecord])


def dump_documents(documents: List[Document]) -> bytes:
    records = [DocumentRecord.from_document(d) for d in documents]
    return DocumentTable.dump_json(records, by_alias=True)


def dump_spans(spans: List[ChunkSpan]) -> bytes:
    records = [SpanRecord.from_span(s) for s in spans]
    return SpanTable.dump_json(records, by_alias=True)


def dump_vectors(rows: List[List[float]]) -> bytes:
    return TypeAdapter(List[List[float]]).dump_json(rows)


def load_documents(payload: bytes) -> List[Document]:
    return [r.to_document() for r in DocumentTable.validate_json(payload)]


def load_spans(payload: bytes) -> List[ChunkSpan]:
    return [r.to_span() for r in SpanTable.validate_json(payload)]


def load_vectors(payload: bytes) -> List[List[float]]:
    return VectorTable(rows=TypeAdapter(List[List[float]]).validate_json(payload)).rows
