"""Read side of the run directory layout, used by downstream consumers.

Nothing here raises on damaged artifacts: unreadable documents are treated as
absent and unparsable page lines (for instance a line cut short by a crash)
are skipped.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

import structlog
from pydantic import ValidationError

from models import PageRecord, QuestionNode, RunMeta

from .atomic import read_json
from .run_store import FINAL_FILE, META_FILE, PAGES_FILE, QUESTIONS_FILE

logger = structlog.get_logger(__name__)


def load_meta(run_dir: Path) -> RunMeta | None:
    raw = read_json(Path(run_dir) / META_FILE)
    if not isinstance(raw, dict):
        return None
    try:
        return RunMeta.model_validate(raw)
    except ValidationError as exc:
        logger.warning("invalid meta treated as absent", run_dir=str(run_dir), error=str(exc))
        return None


def load_questions(run_dir: Path) -> list[QuestionNode]:
    raw = read_json(Path(run_dir) / QUESTIONS_FILE, default=[])
    if not isinstance(raw, list):
        return []
    nodes: list[QuestionNode] = []
    for item in raw:
        try:
            nodes.append(QuestionNode.model_validate(item))
        except ValidationError as exc:
            logger.debug("invalid question skipped", run_dir=str(run_dir), error=str(exc))
    return nodes


def load_final(run_dir: Path) -> Any:
    return read_json(Path(run_dir) / FINAL_FILE)


def iter_pages(run_dir: Path) -> Iterator[PageRecord]:
    """Yield the page records of a run in append order."""

    path = Path(run_dir) / PAGES_FILE
    try:
        fh = open(path, "r", encoding="utf-8")
    except OSError:
        return
    with fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield PageRecord.model_validate(json.loads(line))
            except (ValueError, ValidationError) as exc:
                logger.debug("page line skipped", path=str(path), line=lineno, error=str(exc))


def list_runs(base_dir: Path) -> list[Path]:
    """Run directories under ``base_dir``, newest first."""

    base = Path(base_dir)
    if not base.is_dir():
        return []
    runs: list[tuple[str, float, Path]] = []
    for entry in base.iterdir():
        if not entry.is_dir() or not (entry / META_FILE).is_file():
            continue
        meta = load_meta(entry)
        started = meta.started_at if meta else ""
        runs.append((started, entry.stat().st_mtime, entry))
    runs.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [path for _, _, path in runs]


def latest_run(base_dir: Path) -> Path | None:
    runs = list_runs(base_dir)
    return runs[0] if runs else None
