from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv import load_dotenv

from .models.enums import DocumentMode

logger = logging.getLogger(__name__)

ENV_PREFIX = "REVIEW_ENGINE_"

# Fixed scheduling policy for every fan-out in the engine.
MAX_CONCURRENCY = 5


@dataclass
class EngineConfig:
    """Tunable limits for review and chat runs."""

    # Category classification
    max_checklists_per_category: int = 1
    max_categories: int = 50

    # Structured-output omission retries
    review_max_attempts: int = 3
    consolidate_max_attempts: int = 3

    # Content-length splitting in review execution
    document_split_retry_limit: int = 5
    review_text_overlap: int = 300
    review_image_overlap: int = 3

    # Chat research
    chat_max_total_chunks: int = 10
    chat_overlap: int = 0

    # Large-document readiness loop
    readiness_max_iterations: int = 5

    default_document_mode: DocumentMode = DocumentMode.SMALL

    # LLM settings
    model: str = "gemini-2.5-flash"
    llm_primary: str | None = None
    llm_fallback: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> "EngineConfig":
        """Build a configuration from ``REVIEW_ENGINE_*`` environment variables.

        Values that cannot be parsed fall back to the defaults.
        """
        if dotenv_path is not None:
            load_dotenv(dotenv_path=Path(dotenv_path))
        else:
            load_dotenv()

        config = cls()
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            current = getattr(config, f.name)
            try:
                if isinstance(current, DocumentMode):
                    value: object = DocumentMode(raw.strip().lower())
                elif isinstance(current, int):
                    value = int(raw)
                elif isinstance(current, list):
                    value = [part.strip() for part in raw.split(",") if part.strip()]
                else:
                    value = raw.strip()
            except ValueError:
                logger.warning(
                    "Ignoring invalid value %r for %s%s",
                    raw,
                    ENV_PREFIX,
                    f.name.upper(),
                )
                continue
            setattr(config, f.name, value)
        return config
