from __future__ import annotations

from typing import Protocol, Sequence

from ..models import (
    ChecklistItem,
    ChecklistResultDetail,
    DocumentCache,
    LargeDocumentResult,
    ReviewResult,
)


class ReviewRepository(Protocol):
    """Storage consumed by the review and chat pipelines.

    Review results are upserted by checklist id, so concurrent writers that
    target disjoint checklist ids never conflict.
    """

    async def create_checklist(self, review_history_id: str, content: str) -> ChecklistItem: ...

    async def get_checklists(self, review_history_id: str) -> list[ChecklistItem]: ...

    async def upsert_review_results(
        self, review_history_id: str, results: Sequence[ReviewResult]
    ) -> None: ...

    async def get_review_results(self, review_history_id: str) -> list[ReviewResult]: ...

    async def delete_all_review_results(self, review_history_id: str) -> None: ...

    async def update_target_document_name(self, review_history_id: str, name: str) -> None: ...

    async def get_target_document_name(self, review_history_id: str) -> str | None: ...

    async def save_document_cache(self, cache: DocumentCache) -> DocumentCache:
        """Store ``cache``, replacing any cache for the same document id."""
        ...

    async def get_review_document_caches(self, review_history_id: str) -> list[DocumentCache]: ...

    async def get_review_document_cache_by_id(self, cache_id: int) -> DocumentCache | None: ...

    async def get_review_document_cache_by_document_id(
        self, review_history_id: str, document_id: str
    ) -> DocumentCache | None: ...

    async def save_large_document_result(self, result: LargeDocumentResult) -> None: ...

    async def get_max_total_chunks_for_document(self, cache_id: int) -> int:
        """Largest chunk count previously needed for a document, or 1."""
        ...

    async def get_checklist_results_with_individual_results(
        self, review_history_id: str, checklist_ids: Sequence[int]
    ) -> list[ChecklistResultDetail]: ...
