"""Command-line entry point: run a review, or chat about a finished one."""

from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
import uuid
from pathlib import Path

from .config import EngineConfig
from .events import RunObserver
from .llm.registry import create_agent_registry
from .models import (
    DocumentMode,
    EvaluationItem,
    EvaluationSettings,
    ProcessMode,
    ReviewSettings,
    StepStatus,
    UploadedFile,
)
from .pipeline.chat import ChatOrchestrator, ChatRequest, StreamWriter
from .pipeline.concurrency import AbortSignal
from .pipeline.extraction import default_extractor
from .pipeline.orchestrator import ReviewOrchestrator, ReviewRequest
from .storage import JsonFileReviewRepository

logger = logging.getLogger(__name__)

DEFAULT_STORE = Path("data/review_state.json")


def _common_options(*, suppress_defaults: bool) -> argparse.ArgumentParser:
    """Options accepted both before and after the subcommand.

    Subcommand copies use ``SUPPRESS`` so they only override the top-level
    values when actually given.
    """
    common = argparse.ArgumentParser(add_help=False)
    default = argparse.SUPPRESS if suppress_defaults else None
    common.add_argument(
        "--store",
        type=Path,
        default=argparse.SUPPRESS if suppress_defaults else DEFAULT_STORE,
        help=f"JSON state file for checklists and results (default: {DEFAULT_STORE})",
    )
    common.add_argument("--dotenv", type=Path, default=default, help="Path to a .env file")
    common.add_argument(
        "--provider",
        default=default,
        help="Primary LLM provider to use (overrides LLM_PRIMARY env var)",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=argparse.SUPPRESS if suppress_defaults else False,
        help="Enable debug logging",
    )
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Review documents against a checklist with an LLM.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[_common_options(suppress_defaults=False)],
    )
    common = _common_options(suppress_defaults=True)

    subparsers = parser.add_subparsers(dest="command", required=True)

    review = subparsers.add_parser("review", help="Run a review", parents=[common])
    review.add_argument(
        "--checklist",
        type=Path,
        help="Text file with one checklist item per line",
    )
    review.add_argument("--files", nargs="+", type=Path, required=True, help="Documents to review")
    review.add_argument(
        "--mode",
        choices=DocumentMode.all_values(),
        help="Document mode (default: env REVIEW_ENGINE_DEFAULT_DOCUMENT_MODE or small)",
    )
    review.add_argument("--labels", help="Comma-separated evaluation labels (default: A,B,C,-)")
    review.add_argument("--comment-format", help="Template the review comments should follow")
    review.add_argument("--instructions", help="Additional instructions for the reviewer")
    review.add_argument("--history-id", help="Review id (default: a new random id)")
    review.add_argument(
        "--docling",
        action="store_true",
        help="Convert PDF and office files with docling",
    )

    chat = subparsers.add_parser(
        "chat", help="Ask a question about a finished review", parents=[common]
    )
    chat.add_argument("--history-id", required=True, help="Review id to ask about")
    chat.add_argument("--question", required=True, help="Question to answer")
    chat.add_argument(
        "--checklist-ids",
        nargs="+",
        type=int,
        help="Limit the question to these checklist ids (default: all)",
    )
    return parser


def _read_checklist(path: Path) -> list[str]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip().lstrip("-*").strip() for line in lines if line.strip()]


def _settings_from_args(args: argparse.Namespace) -> ReviewSettings:
    evaluation = None
    if args.labels:
        labels = [label.strip() for label in args.labels.split(",") if label.strip()]
        evaluation = EvaluationSettings(items=[EvaluationItem(label=label) for label in labels])
    return ReviewSettings(
        additional_instructions=args.instructions,
        comment_format=args.comment_format,
        evaluation_settings=evaluation,
    )


def _uploaded(path: Path) -> UploadedFile:
    mime, _ = mimetypes.guess_type(path.name)
    return UploadedFile(
        name=path.name,
        path=str(path),
        type=mime or "application/octet-stream",
        process_mode=ProcessMode.TEXT,
    )


def _print_event(channel: str, payload: dict) -> None:
    logger.debug("event %s: %s", channel, payload)


async def run_review(
    args: argparse.Namespace, config: EngineConfig, observer: RunObserver = _print_event
) -> int:
    repository = JsonFileReviewRepository(args.store)
    history_id = args.history_id or uuid.uuid4().hex

    existing = await repository.get_checklists(history_id)
    if args.checklist:
        if existing:
            print(
                f"Review {history_id} already has {len(existing)} checklist item(s); "
                "ignoring --checklist",
                file=sys.stderr,
            )
        else:
            for content in _read_checklist(args.checklist):
                await repository.create_checklist(history_id, content)
    elif not existing:
        print("Error: --checklist is required for a new review", file=sys.stderr)
        return 1

    missing = [path for path in args.files if not path.exists()]
    if missing:
        print(f"Error: File not found: {missing[0]}", file=sys.stderr)
        return 1

    agents = create_agent_registry(
        model=config.model,
        dotenv_path=args.dotenv,
        primary=args.provider or config.llm_primary,
        fallbacks=config.llm_fallback or None,
    )
    orchestrator = ReviewOrchestrator(
        agents,
        repository,
        default_extractor(with_docling=args.docling),
        config=config,
        observer=observer,
    )
    mode = DocumentMode(args.mode) if args.mode else config.default_document_mode
    print(f"Review {history_id}: {len(args.files)} file(s), {mode.value} mode")

    outcome = await orchestrator.execute(
        ReviewRequest(
            review_history_id=history_id,
            files=[_uploaded(path) for path in args.files],
            document_mode=mode,
            settings=_settings_from_args(args),
        ),
        AbortSignal(),
    )

    checklists = {item.id: item.content for item in await repository.get_checklists(history_id)}
    for result in await repository.get_review_results(history_id):
        content = checklists.get(result.checklist_id, "?")
        print(f"[{result.evaluation}] {result.checklist_id}. {content}\n    {result.comment}")

    if outcome.status is not StepStatus.SUCCESS:
        print(f"Error: {outcome.error_message}", file=sys.stderr)
        return 1
    return 0


async def run_chat(
    args: argparse.Namespace, config: EngineConfig, observer: RunObserver = _print_event
) -> int:
    repository = JsonFileReviewRepository(args.store)
    agents = create_agent_registry(
        model=config.model,
        dotenv_path=args.dotenv,
        primary=args.provider or config.llm_primary,
        fallbacks=config.llm_fallback or None,
    )
    orchestrator = ChatOrchestrator(agents, repository, config=config, observer=observer)
    writer = StreamWriter(sys.stdout.write)
    outcome = await orchestrator.answer(
        ChatRequest(
            review_history_id=args.history_id,
            question=args.question,
            checklist_ids=list(args.checklist_ids or []),
        ),
        writer,
        AbortSignal(),
    )
    sys.stdout.flush()
    if outcome.status is not StepStatus.SUCCESS:
        print(f"Error: {outcome.error_message}", file=sys.stderr)
        return 1
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 for success, 1 for error, 130 when interrupted)
    """
    parsed = build_parser().parse_args(args)
    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = EngineConfig.from_env(parsed.dotenv)

    try:
        if parsed.command == "review":
            return asyncio.run(run_review(parsed, config))
        return asyncio.run(run_chat(parsed, config))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
