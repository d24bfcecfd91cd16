"""Command line entry point: ``python -m inspector``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from models import Priority, QuestionNode
from observability.logging import configure_logging
from settings import Settings, get_settings
from storage.run_store import RunStore

from .runner import ResearchRunner, RunOutcome

logger = structlog.get_logger(__name__)


def load_question_tree(path: str | None, topic: str) -> list[QuestionNode]:
    """Read a question tree from ``path`` or build a single root question."""

    if not path:
        return [QuestionNode(id="q1", question=topic, priority=Priority.core, source="cli")]
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON array of questions")
    return [QuestionNode.model_validate(item) for item in raw]


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect seed pages for a research topic")
    parser.add_argument("--topic", required=True, help="Research topic (names the run directory)")
    parser.add_argument(
        "--url",
        dest="urls",
        action="append",
        default=[],
        help="Seed URL; repeat for several seeds",
    )
    parser.add_argument("--questions", help="JSON file holding the question tree", default=None)
    parser.add_argument("--max-pages", type=int, default=settings.run.max_pages)
    parser.add_argument("--runs-dir", default=settings.storage.base_dir, help="Where run directories are created")
    parser.add_argument("--debug", action="store_true", default=settings.debug)
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> RunOutcome:
    store = RunStore(Path(args.runs_dir))
    runner = ResearchRunner(store, settings)
    runner.install_signal_handlers()
    try:
        questions = load_question_tree(args.questions, args.topic)
        return await runner.run(args.topic, questions, args.urls)
    finally:
        await store.flush()


def main(argv: list[str] | None = None) -> int:  # pragma: no cover - convenience CLI
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    configure_logging(debug=args.debug)
    if not args.urls:
        sys.exit("❌ Need at least one --url")
    settings = settings.model_copy(
        update={"run": settings.run.model_copy(update={"max_pages": args.max_pages})}
    )

    outcome = asyncio.run(_run(args, settings))
    if outcome.run_dir is None:
        return 1
    print(outcome.run_dir)
    return 0
