"""Render the agents' system prompt templates from promptFiles/ using pystache.

Templates may include partials (``{{> reviewer_persona}}``). Partial files that
are wrapped in a markdown code fence have the fence stripped before use.

Usage:
    python -m review_engine.prompt.render_prompt [template_filename] [context.json]
"""

from __future__ import annotations

import json
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any

import pystache

PROMPTS_DIR = Path(__file__).parent / "promptFiles"

# Agent id -> system prompt template.
AGENT_TEMPLATES: dict[str, str] = {
    "checklist-category": "checklist_category.md",
    "checklist-review": "checklist_review.md",
    "document-summarization": "document_summarization.md",
    "review-readiness-first": "review_readiness_first.md",
    "review-readiness-subsequent": "review_readiness_subsequent.md",
    "question-answer": "question_answer.md",
    "individual-review": "individual_review.md",
    "consolidate-review": "consolidate_review.md",
    "chat-planning": "chat_planning.md",
    "chat-research": "chat_research.md",
    "chat-answer": "chat_answer.md",
}

DEFAULT_PARTIALS = ("reviewer_persona",)

TEMPLATE_PARTIALS: dict[str, tuple[str, ...]] = {
    "checklist_review.md": ("reviewer_persona", "evaluation_criteria"),
    "consolidate_review.md": ("reviewer_persona", "evaluation_criteria"),
    "checklist_category.md": (),
}


def _read_prompt(name: str) -> str:
    p = PROMPTS_DIR / name
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


def _strip_code_fences(s: str) -> str:
    """Strip a single leading and trailing code-fence line if present."""
    lines = s.splitlines()
    if not lines:
        return s
    if lines[0].lstrip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].lstrip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


@lru_cache(maxsize=None)
def _load_partials(names: tuple[str, ...]) -> dict[str, str]:
    return {name: _strip_code_fences(_read_prompt(f"{name}.md")) for name in names}


def render_template(template_name: str, context: dict[str, Any] | None = None) -> str:
    template = _read_prompt(template_name)
    partials = _load_partials(TEMPLATE_PARTIALS.get(template_name, DEFAULT_PARTIALS))
    renderer = pystache.Renderer(
        partials=partials, missing_tags="ignore", escape=lambda u: u
    )
    return renderer.render(template, context or {}).strip()


def render_system_prompt(agent_id: str, context: dict[str, Any] | None = None) -> str:
    """Render the system prompt registered for ``agent_id``."""
    try:
        template_name = AGENT_TEMPLATES[agent_id]
    except KeyError as exc:
        raise KeyError(f"No prompt template registered for agent '{agent_id}'") from exc
    return render_template(template_name, context)


def _load_context(path: str) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))


if __name__ == "__main__":
    tpl = sys.argv[1] if len(sys.argv) > 1 else "checklist_review.md"
    ctx = None
    if len(sys.argv) > 2:
        ctx = _load_context(sys.argv[2])
    print(render_template(tpl, ctx))
