"""Uploaded files, extracted documents and their derived chunks."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Sequence

from pydantic import BaseModel, Field

from .enums import ProcessMode


class UploadedFile(BaseModel):
    """A file handed to a review run.

    ``image_data`` holds pre-rendered base64 page images for files uploaded in
    image mode; such files skip text extraction.
    """

    name: str
    path: str
    type: str = "application/octet-stream"
    process_mode: ProcessMode = ProcessMode.TEXT
    image_data: list[str] | None = None


class TopicSummary(BaseModel):
    topic: str
    summary: str


class QuestionAnswer(BaseModel):
    question: str
    answer: str


@dataclass
class ExtractedDocument:
    """A document whose content is ready to be sent to the model.

    Ids are workflow-local and sequential ("1", "2", ...). Split parts share
    the parent's content and carry ``original_name``.
    """

    id: str
    name: str
    path: str
    type: str
    process_mode: ProcessMode = ProcessMode.TEXT
    text_content: str | None = None
    image_data: list[str] | None = None
    original_name: str | None = None
    cache_id: int | None = None

    @property
    def units(self) -> Sequence[str] | str:
        """The sequence the chunker splits: characters or page images."""
        if self.process_mode is ProcessMode.IMAGE and self.image_data:
            return self.image_data
        return self.text_content or ""

    @property
    def display_original_name(self) -> str:
        return self.original_name or self.name

    @property
    def is_split_part(self) -> bool:
        return self.original_name is not None and self.original_name != self.name

    def is_empty(self) -> bool:
        if self.process_mode is ProcessMode.IMAGE and self.image_data:
            return False
        return not (self.text_content or "").strip()

    def as_part(
        self,
        part_number: int,
        text: str | None,
        images: list[str] | None,
    ) -> "ExtractedDocument":
        """Return a named sub-document holding one slice of this document."""
        return replace(
            self,
            id=f"{self.id}_part{part_number}",
            name=f"{self.name} (part {part_number})",
            original_name=self.display_original_name,
            text_content=text,
            image_data=images,
        )

    def slice(self, start: int, end: int) -> tuple[str | None, list[str] | None]:
        if self.process_mode is ProcessMode.IMAGE and self.image_data:
            return None, list(self.image_data[start:end])
        return (self.text_content or "")[start:end], None


@dataclass
class Chunk:
    """One sub-range of a document used for a single model call."""

    chunk_index: int
    total_chunks: int
    text: str | None = None
    images: list[str] | None = None


@dataclass
class DocumentState:
    """A document plus what the large-document pipeline learned about it."""

    document: ExtractedDocument
    topics: list[TopicSummary] = field(default_factory=list)
    prior_qna: list[QuestionAnswer] = field(default_factory=list)


class DocumentCache(BaseModel):
    """Persisted copy of an extracted document, reused by chat research."""

    id: int | None = None
    review_history_id: str
    document_id: str
    file_name: str
    file_type: str = "application/octet-stream"
    process_mode: ProcessMode = ProcessMode.TEXT
    text_content: str | None = None
    image_data: list[str] | None = None

    def to_document(self) -> ExtractedDocument:
        return ExtractedDocument(
            id=str(self.id if self.id is not None else self.document_id),
            name=self.file_name,
            path="",
            type=self.file_type,
            process_mode=self.process_mode,
            text_content=self.text_content,
            image_data=self.image_data,
            cache_id=self.id,
        )
