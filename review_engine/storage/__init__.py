"""Repository implementations for checklists, results and document caches."""

from __future__ import annotations

from .json_store import JsonFileReviewRepository
from .memory import InMemoryReviewRepository
from .repository import ReviewRepository

__all__ = ["InMemoryReviewRepository", "JsonFileReviewRepository", "ReviewRepository"]
