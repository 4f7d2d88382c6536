"""Turn uploaded files into ``ExtractedDocument`` objects.

Office and PDF files go through docling, which is imported only when a
``DoclingExtractor`` is built. Plain text and markdown are read directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from ..errors import AbortedError, ExtractionError, ReviewEngineError, error_message
from ..models import ExtractedDocument, ProcessMode, StepResult, UploadedFile
from .concurrency import AbortSignal, gather_bounded

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt", ".md", ".markdown", ".csv", ".json")
DOCLING_SUFFIXES = (".pdf", ".docx", ".pptx", ".xlsx", ".html", ".htm")


@dataclass
class ExtractedText:
    content: str
    metadata: dict[str, Any] | None = None


class FileExtractor(Protocol):
    async def extract_text(self, path: Path) -> ExtractedText: ...


class PlainTextExtractor:
    """Reads UTF-8 text files as they are."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    async def extract_text(self, path: Path) -> ExtractedText:
        try:
            content = await asyncio.to_thread(Path(path).read_text, encoding=self.encoding)
        except (OSError, UnicodeDecodeError) as exc:
            raise ExtractionError(path, str(exc)) from exc
        return ExtractedText(content=content)


class DoclingExtractor:
    """Converts office documents and PDFs to markdown with docling."""

    def __init__(self, converter: Any = None) -> None:
        if converter is None:
            from docling.document_converter import DocumentConverter

            converter = DocumentConverter()
        self._converter = converter

    async def extract_text(self, path: Path) -> ExtractedText:
        return await asyncio.to_thread(self._convert, Path(path))

    def _convert(self, path: Path) -> ExtractedText:
        try:
            result = self._converter.convert(path)
            markdown = result.document.export_to_markdown()
        except Exception as exc:
            logger.error("docling failed to convert %s", path, exc_info=True)
            raise ExtractionError(path, str(exc)) from exc
        return ExtractedText(content=markdown, metadata={"converter": "docling"})


class ExtensionExtractor:
    """Routes each file to an extractor by its suffix."""

    def __init__(
        self,
        extractors: Mapping[str, FileExtractor] | None = None,
        *,
        default: FileExtractor | None = None,
    ) -> None:
        if extractors is None:
            plain = PlainTextExtractor()
            extractors = {suffix: plain for suffix in TEXT_SUFFIXES}
        self._extractors = {suffix.lower(): ex for suffix, ex in extractors.items()}
        self._default = default

    def register(self, suffixes: Sequence[str], extractor: FileExtractor) -> None:
        for suffix in suffixes:
            self._extractors[suffix.lower()] = extractor

    async def extract_text(self, path: Path) -> ExtractedText:
        extractor = self._extractors.get(Path(path).suffix.lower(), self._default)
        if extractor is None:
            raise ExtractionError(path, f"unsupported file type '{Path(path).suffix}'")
        return await extractor.extract_text(path)


def default_extractor(*, with_docling: bool = False) -> ExtensionExtractor:
    """Text files always; office and PDF files only when docling is installed."""
    extractor = ExtensionExtractor()
    if with_docling:
        extractor.register(DOCLING_SUFFIXES, DoclingExtractor())
    return extractor


async def extract_documents(
    files: Sequence[UploadedFile],
    extractor: FileExtractor,
    *,
    abort_signal: AbortSignal | None = None,
) -> StepResult:
    """Extract every uploaded file. ``value`` is the documents in upload order.

    Ids are assigned sequentially ("1", "2", ...). Image-mode files that carry
    page images skip extraction.
    """

    async def _extract(item: tuple[int, UploadedFile]) -> ExtractedDocument:
        index, file = item
        document = ExtractedDocument(
            id=str(index),
            name=file.name,
            path=file.path,
            type=file.type,
            process_mode=file.process_mode,
        )
        if file.process_mode is ProcessMode.IMAGE and file.image_data:
            document.image_data = list(file.image_data)
            return document
        try:
            extracted = await extractor.extract_text(Path(file.path))
        except ReviewEngineError:
            raise
        except Exception as exc:
            raise ExtractionError(file.path, str(exc)) from exc
        document.process_mode = ProcessMode.TEXT
        document.text_content = extracted.content
        logger.debug("Extracted %d characters from %s", len(extracted.content), file.name)
        return document

    try:
        documents = await gather_bounded(
            list(enumerate(files, start=1)), _extract, abort_signal=abort_signal
        )
    except AbortedError:
        raise
    except Exception as exc:
        logger.error("File extraction failed", exc_info=True)
        return StepResult.failed(error_message(exc))
    return StepResult.success(documents)
