"""Message builders shared by the review and chat pipelines."""

from __future__ import annotations

from typing import Iterable, Sequence

from ..llm.provider import ImagePart, Message, TextPart
from ..models import ChecklistItem, DocumentState, ExtractedDocument, ProcessMode


def format_checklist_lines(checklists: Iterable[ChecklistItem]) -> str:
    return "\n".join(f"- ID: {item.id} - {item.content}" for item in checklists)


def create_combined_message(
    documents: Sequence[ExtractedDocument], prompt_text: str
) -> Message:
    """Put every document into one message, text and page images alike."""
    names = ", ".join(doc.name for doc in documents)
    message = Message.from_text(f"{prompt_text}: {names}")
    for doc in documents:
        if doc.process_mode is ProcessMode.IMAGE and doc.image_data:
            total = len(doc.image_data)
            for index, image in enumerate(doc.image_data, start=1):
                message.add_text(f"# {doc.name}: Page {index}/{total}")
                message.add_image(image)
        else:
            message.add_text(f"# {doc.name}\n{doc.text_content or ''}")
    return message


def checklist_reminder(checklists: Sequence[ChecklistItem]) -> TextPart:
    return TextPart(
        "Review the documents above against every one of these checklist items "
        f"and return one result per item:\n{format_checklist_lines(checklists)}"
    )


def format_topics(state: DocumentState) -> str:
    return "\n\n".join(f"**Topic: {t.topic}**\n{t.summary}" for t in state.topics)


def format_qna(state: DocumentState) -> str:
    return "\n\n".join(f"Q: {qa.question}\nA: {qa.answer}" for qa in state.prior_qna)


def document_overview(states: Sequence[DocumentState], *, include_qna: bool) -> str:
    """Topic summaries (and optionally prior Q&A) for every document."""
    blocks = []
    for state in states:
        doc = state.document
        block = f"# Document: {doc.name} (ID: {doc.id})\n\n## Topics and Summaries:\n{format_topics(state)}"
        if include_qna and state.prior_qna:
            block += f"\n\n## Q&A Information:\n{format_qna(state)}"
        blocks.append(block)
    return "\n\n---\n\n".join(blocks)


def chunk_message(
    file_name: str,
    chunk_index: int,
    total_chunks: int,
    instructions: str,
    *,
    text: str | None = None,
    images: Sequence[str] | None = None,
) -> Message:
    """Message for researching one chunk of one document."""
    header = f"Document: {file_name}\nChunk: {chunk_index + 1}/{total_chunks}\n\nResearch Instructions: {instructions}"
    if images:
        message = Message.from_text(f"{header}\n\nPlease analyze the following document images:")
        message.parts.extend(ImagePart(image) for image in images)
        return message
    return Message.from_text(f"{header}\n\nDocument Content:\n{text or ''}")
