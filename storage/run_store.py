"""Single-writer, crash-consistent persistence for one research run.

Layout of a run directory::

    <base_dir>/<topic>_<YYYY-MM-DD_HH-MM-SS>Z/
        meta.json       RunMeta, rewritten atomically
        questions.json  question tree snapshot, rewritten atomically
        pages.jsonl     one PageRecord per line, append-only
        final.json      ``null`` until synthesis completes

Every mutation goes through one FIFO queue drained by a single consumer task,
so ``meta.json`` read-modify-write cycles never interleave: ``pageCount`` in
``meta.json`` always equals the number of lines appended to ``pages.jsonl``
when it was written.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import structlog
from pydantic import BaseModel

from models import PageRecord, QuestionNode, RunMeta, RunStatus, dump
from observability.metrics import store_write_failures

from .atomic import append_line, atomic_write_json, read_json

logger = structlog.get_logger(__name__)

META_FILE = "meta.json"
QUESTIONS_FILE = "questions.json"
PAGES_FILE = "pages.jsonl"
FINAL_FILE = "final.json"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_UNDERSCORES_RE = re.compile(r"_+")


def sanitize_topic(topic: str, max_length: int = 100) -> str:
    """Filesystem-safe slug of ``topic`` (``research`` when nothing is left)."""

    slug = _NON_ALNUM_RE.sub("_", (topic or "").lower())
    slug = _UNDERSCORES_RE.sub("_", slug).strip("_")
    return slug[:max_length] or "research"


def run_directory_name(topic: str, started: datetime) -> str:
    started = started.astimezone(timezone.utc)
    return f"{sanitize_topic(topic)}_{started:%Y-%m-%d_%H-%M-%S}Z"


@dataclass
class _WriteTask:
    kind: str
    payload: Any
    future: asyncio.Future[bool]


def _as_dict(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return dump(obj)
    return obj


class RunStore:
    """Owns the directory of one run from :meth:`initialize` to :meth:`flush`.

    ``save_*`` coroutines resolve to ``True`` once their write hit the disk
    and to ``False`` when it failed or was refused (store disabled, not yet
    initialized, or already flushing). Failures are logged and never stop
    the queue.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self._run_dir: Path | None = None
        self._meta: RunMeta | None = None
        self._disabled = False
        self._closed = False
        self._final_written = False
        self._meta_dirty = False
        self._queue: asyncio.Queue[_WriteTask | None] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._init_task: asyncio.Task[bool] | None = None
        self._flush_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ state
    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    @property
    def meta(self) -> RunMeta | None:
        return self._meta.model_copy() if self._meta else None

    @property
    def page_count(self) -> int:
        return self._meta.page_count if self._meta else 0

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def is_active(self) -> bool:
        return self._run_dir is not None and not self._disabled and not self._closed

    # -------------------------------------------------------------- lifecycle
    async def initialize(
        self,
        topic: str,
        max_pages: int = 200,
        *,
        run_id: str | None = None,
        started_at: datetime | None = None,
    ) -> bool:
        """Create the run directory and its initial files.

        A second call on an initialized store is a no-op. If the directory
        cannot be created the store disables itself and every later write
        returns ``False``. A call made after :meth:`flush` started creates
        nothing and returns ``False``.
        """

        if self._init_task is None:
            if self._closed:
                logger.debug("initialize refused", reason="flushed")
                return False
            self._init_task = asyncio.ensure_future(
                self._initialize(topic, max_pages, run_id=run_id, started_at=started_at)
            )
        return await asyncio.shield(self._init_task)

    async def _initialize(
        self,
        topic: str,
        max_pages: int,
        *,
        run_id: str | None,
        started_at: datetime | None,
    ) -> bool:
        started = started_at or datetime.now(timezone.utc)
        run_dir = self.base_dir / run_directory_name(topic, started)
        meta = RunMeta(
            topic=topic,
            started_at=started.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            status=RunStatus.running,
            page_count=0,
            run_id=run_id,
            max_pages=max_pages,
        )
        try:
            meta = await asyncio.to_thread(self._create_run, run_dir, meta)
        except OSError as exc:
            self._disabled = True
            store_write_failures.labels("initialize").inc()
            logger.error("run store disabled", run_dir=str(run_dir), error=str(exc))
            return False

        self._run_dir = run_dir
        self._meta = meta
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        logger.info("run initialized", run_dir=str(run_dir), topic=topic, max_pages=max_pages)
        return True

    @staticmethod
    def _create_run(run_dir: Path, meta: RunMeta) -> RunMeta:
        run_dir.mkdir(parents=True, exist_ok=True)
        previous = read_json(run_dir / META_FILE)
        if isinstance(previous, dict):
            count = previous.get("pageCount")
            if isinstance(count, int) and count > 0:
                meta = meta.model_copy(update={"page_count": count})
        atomic_write_json(run_dir / META_FILE, dump(meta))
        if not (run_dir / QUESTIONS_FILE).exists():
            atomic_write_json(run_dir / QUESTIONS_FILE, [])
        (run_dir / PAGES_FILE).touch(exist_ok=True)
        if not (run_dir / FINAL_FILE).exists():
            atomic_write_json(run_dir / FINAL_FILE, None)
        return meta

    async def flush(self) -> None:
        """Stop accepting writes, drain the queue and settle the run status.

        Runs without a synthesis result end up ``interrupted``. Concurrent
        and repeated calls share the same flush.
        """

        if self._flush_task is None:
            self._flush_task = asyncio.ensure_future(self._flush())
        await asyncio.shield(self._flush_task)

    async def _flush(self) -> None:
        self._closed = True
        if self._init_task is not None:
            # a run created while flushing still has to be settled
            await self._init_task
        if self._queue is None or self._consumer is None or self._meta is None:
            return
        await self._queue.join()
        self._queue.put_nowait(None)
        await self._consumer

        if not self._final_written and self._meta.status is RunStatus.running:
            self._meta = self._meta.with_status(RunStatus.interrupted)
            self._meta_dirty = True
        if self._meta_dirty:
            try:
                await asyncio.to_thread(self._write_meta)
            except OSError as exc:
                store_write_failures.labels("meta").inc()
                logger.warning("final meta write failed", run_dir=str(self._run_dir), error=str(exc))
        logger.info(
            "run store flushed",
            run_dir=str(self._run_dir),
            status=self._meta.status.value,
            pages=self._meta.page_count,
        )

    # ----------------------------------------------------------------- writes
    async def save_question_tree(self, tree: Iterable[QuestionNode | dict]) -> bool:
        """Atomically replace ``questions.json`` with ``tree``."""
        if tree is None or isinstance(tree, (str, bytes, dict)):
            return False
        return await self._submit("questions", [_as_dict(node) for node in tree])

    async def save_page_result(self, record: PageRecord | dict) -> bool:
        """Append ``record`` to ``pages.jsonl`` and bump ``pageCount``."""
        payload = _as_dict(record)
        if not isinstance(payload, dict) or not payload:
            return False
        return await self._submit("page", payload)

    async def save_synthesis(self, result: Any) -> bool:
        """Write ``final.json`` and mark the run ``completed``."""
        payload = _as_dict(result)
        if not isinstance(payload, dict):
            return False
        return await self._submit("final", payload)

    async def _submit(self, kind: str, payload: Any) -> bool:
        if not self.is_active or self._queue is None:
            logger.debug("write refused", kind=kind, disabled=self._disabled, closed=self._closed)
            return False
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_WriteTask(kind, payload, future))
        return await asyncio.shield(future)

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            task = await self._queue.get()
            try:
                if task is None:
                    return
                ok = await self._process(task)
                if not task.future.done():
                    task.future.set_result(ok)
            finally:
                self._queue.task_done()

    async def _process(self, task: _WriteTask) -> bool:
        handlers = {
            "page": self._write_page,
            "final": self._write_final,
            "questions": self._write_questions,
        }
        try:
            await asyncio.to_thread(handlers[task.kind], task.payload)
        except (OSError, TypeError, ValueError) as exc:
            store_write_failures.labels(task.kind).inc()
            logger.warning("run store write failed", kind=task.kind, run_dir=str(self._run_dir), error=str(exc))
            return False
        return True

    def _write_meta(self) -> None:
        assert self._run_dir is not None and self._meta is not None
        atomic_write_json(self._run_dir / META_FILE, dump(self._meta))
        self._meta_dirty = False

    def _write_meta_or_mark(self) -> None:
        try:
            self._write_meta()
        except OSError:
            self._meta_dirty = True
            raise

    def _write_page(self, record: dict) -> None:
        """Append ``record``; the page counts once its line is durable.

        A failed ``meta.json`` rewrite only marks the meta dirty. The next
        successful meta write (at the latest the one in :meth:`flush`)
        catches ``pageCount`` up with ``pages.jsonl``.
        """
        assert self._run_dir is not None and self._meta is not None
        append_line(self._run_dir / PAGES_FILE, json.dumps(record, ensure_ascii=False))
        self._meta = self._meta.model_copy(update={"page_count": self._meta.page_count + 1})
        try:
            self._write_meta_or_mark()
        except OSError as exc:
            store_write_failures.labels("meta").inc()
            logger.warning("meta write deferred", run_dir=str(self._run_dir), error=str(exc))

    def _write_final(self, result: dict) -> None:
        assert self._run_dir is not None and self._meta is not None
        completed = self._meta.with_status(RunStatus.completed)
        atomic_write_json(self._run_dir / FINAL_FILE, result)
        self._final_written = True
        self._meta = completed
        self._write_meta_or_mark()

    def _write_questions(self, tree: list) -> None:
        assert self._run_dir is not None
        atomic_write_json(self._run_dir / QUESTIONS_FILE, tree)
