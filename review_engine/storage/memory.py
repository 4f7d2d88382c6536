from __future__ import annotations

import logging
from typing import Any, Sequence

from ..models import (
    ChecklistItem,
    ChecklistResultDetail,
    DocumentCache,
    IndividualResult,
    LargeDocumentResult,
    ReviewResult,
)

logger = logging.getLogger(__name__)


class InMemoryReviewRepository:
    """Dictionary-backed repository.

    Also the base of the JSON file store, which persists ``snapshot()`` after
    each write.
    """

    def __init__(self) -> None:
        self._checklists: dict[str, list[ChecklistItem]] = {}
        self._results: dict[str, dict[int, ReviewResult]] = {}
        self._target_names: dict[str, str] = {}
        self._caches: dict[int, DocumentCache] = {}
        self._large_results: list[LargeDocumentResult] = []
        self._next_checklist_id = 1
        self._next_cache_id = 1

    # Checklists

    async def create_checklist(self, review_history_id: str, content: str) -> ChecklistItem:
        item = ChecklistItem(id=self._next_checklist_id, content=content)
        self._next_checklist_id += 1
        self._checklists.setdefault(review_history_id, []).append(item)
        await self._changed()
        return item

    async def get_checklists(self, review_history_id: str) -> list[ChecklistItem]:
        return list(self._checklists.get(review_history_id, []))

    # Review results

    async def upsert_review_results(
        self, review_history_id: str, results: Sequence[ReviewResult]
    ) -> None:
        if not results:
            return
        existing = self._results.setdefault(review_history_id, {})
        existing.update({result.checklist_id: result for result in results})
        await self._changed()

    async def get_review_results(self, review_history_id: str) -> list[ReviewResult]:
        rows = self._results.get(review_history_id, {})
        return [rows[cid] for cid in sorted(rows)]

    async def delete_all_review_results(self, review_history_id: str) -> None:
        removed = self._results.pop(review_history_id, None)
        if removed:
            logger.info(
                "Deleted %d review result(s) for %s", len(removed), review_history_id
            )
        await self._changed()

    async def update_target_document_name(self, review_history_id: str, name: str) -> None:
        self._target_names[review_history_id] = name
        await self._changed()

    async def get_target_document_name(self, review_history_id: str) -> str | None:
        return self._target_names.get(review_history_id)

    # Document caches

    async def save_document_cache(self, cache: DocumentCache) -> DocumentCache:
        stale = [
            cid
            for cid, c in self._caches.items()
            if c.review_history_id == cache.review_history_id
            and c.document_id == cache.document_id
        ]
        for cid in stale:
            del self._caches[cid]
        if stale:
            self._large_results = [
                r for r in self._large_results if r.review_document_cache_id not in stale
            ]
        stored = cache.model_copy(update={"id": self._next_cache_id})
        self._next_cache_id += 1
        self._caches[stored.id] = stored
        await self._changed()
        return stored

    async def get_review_document_caches(self, review_history_id: str) -> list[DocumentCache]:
        return [
            self._caches[cid]
            for cid in sorted(self._caches)
            if self._caches[cid].review_history_id == review_history_id
        ]

    async def get_review_document_cache_by_id(self, cache_id: int) -> DocumentCache | None:
        return self._caches.get(cache_id)

    async def get_review_document_cache_by_document_id(
        self, review_history_id: str, document_id: str
    ) -> DocumentCache | None:
        for cache in self._caches.values():
            if (
                cache.review_history_id == review_history_id
                and cache.document_id == document_id
            ):
                return cache
        return None

    # Large-document results

    async def save_large_document_result(self, result: LargeDocumentResult) -> None:
        self._large_results = [
            r
            for r in self._large_results
            if not (
                r.review_document_cache_id == result.review_document_cache_id
                and r.checklist_id == result.checklist_id
                and r.chunk_index == result.chunk_index
            )
        ]
        self._large_results.append(result)
        await self._changed()

    async def get_max_total_chunks_for_document(self, cache_id: int) -> int:
        counts = [
            r.total_chunks
            for r in self._large_results
            if r.review_document_cache_id == cache_id
        ]
        return max(counts, default=1)

    async def get_checklist_results_with_individual_results(
        self, review_history_id: str, checklist_ids: Sequence[int]
    ) -> list[ChecklistResultDetail]:
        wanted = set(checklist_ids)
        results = self._results.get(review_history_id, {})
        history_caches = {
            cid
            for cid, cache in self._caches.items()
            if cache.review_history_id == review_history_id
        }
        details: list[ChecklistResultDetail] = []
        for item in self._checklists.get(review_history_id, []):
            if item.id not in wanted:
                continue
            result = results.get(item.id)
            individual = [
                IndividualResult(
                    document_id=r.review_document_cache_id,
                    comment=r.comment,
                    individual_file_name=r.individual_file_name,
                )
                for r in self._large_results
                if r.checklist_id == item.id and r.review_document_cache_id in history_caches
            ]
            details.append(
                ChecklistResultDetail(
                    checklist=item,
                    evaluation=result.evaluation if result else None,
                    comment=result.comment if result else None,
                    individual_results=individual,
                )
            )
        return details

    # Persistence hooks

    def snapshot(self) -> dict[str, Any]:
        return {
            "version": 1,
            "next_checklist_id": self._next_checklist_id,
            "next_cache_id": self._next_cache_id,
            "checklists": {
                hid: [item.model_dump() for item in items]
                for hid, items in self._checklists.items()
            },
            "results": {
                hid: [rows[cid].model_dump() for cid in sorted(rows)]
                for hid, rows in self._results.items()
            },
            "target_names": dict(self._target_names),
            "caches": [self._caches[cid].model_dump(mode="json") for cid in sorted(self._caches)],
            "large_results": [r.model_dump() for r in self._large_results],
        }

    def restore(self, data: dict[str, Any]) -> None:
        self._next_checklist_id = int(data.get("next_checklist_id", 1))
        self._next_cache_id = int(data.get("next_cache_id", 1))
        self._checklists = {
            hid: [ChecklistItem.model_validate(item) for item in items]
            for hid, items in data.get("checklists", {}).items()
        }
        self._results = {
            hid: {
                row.checklist_id: row
                for row in (ReviewResult.model_validate(r) for r in rows)
            }
            for hid, rows in data.get("results", {}).items()
        }
        self._target_names = dict(data.get("target_names", {}))
        caches = [DocumentCache.model_validate(c) for c in data.get("caches", [])]
        self._caches = {c.id: c for c in caches if c.id is not None}
        self._large_results = [
            LargeDocumentResult.model_validate(r) for r in data.get("large_results", [])
        ]

    async def _changed(self) -> None:
        """Called after every mutation."""
