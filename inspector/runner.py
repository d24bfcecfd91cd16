"""Drive one research run: question tree in, persisted pages out."""

from __future__ import annotations

import asyncio
import inspect
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

import structlog

from models import QuestionNode, RunStatus
from settings import Settings, get_settings
from storage.run_store import RunStore

from .cancellation import CancellationToken
from .governor import Governor
from .orchestrator import PageInspector, ProgressCallback

logger = structlog.get_logger(__name__)

Synthesizer = Callable[[Path], Any]

MAX_PAGES_REACHED = "max_pages_reached"
STORE_ERROR = "store_error"
PHASE_ERROR = "phase_error"


@dataclass
class RunOutcome:
    run_dir: Path | None
    pages: int
    status: RunStatus | None
    reason: str | None = None
    synthesized: bool = False


def iter_sessions(questions: Iterable[QuestionNode | dict]) -> Iterator[QuestionNode]:
    """Root questions in order, each followed by its direct sub-questions."""

    for item in questions:
        root = item if isinstance(item, QuestionNode) else QuestionNode.model_validate(item)
        yield root
        yield from root.sub_questions


class ResearchRunner:
    """Owns the cancellation token and page budget of one run.

    Question sessions run concurrently behind a question-level
    :class:`Governor`; their fetches share the inspector's fetch governor.
    Reaching ``max_pages`` stored pages cancels the run.
    """

    def __init__(
        self,
        store: RunStore,
        settings: Settings | None = None,
        *,
        token: CancellationToken | None = None,
        inspector: PageInspector | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.token = token or CancellationToken()
        self.inspector = inspector or PageInspector(store, self.settings.inspector)
        self.question_governor = Governor(self.settings.inspector.question_concurrency)
        self._pages = 0
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def pages(self) -> int:
        return self._pages

    def _progress_for_session(self) -> ProgressCallback:
        reported = 0

        def on_progress(session_count: int) -> None:
            nonlocal reported
            self._pages += session_count - reported
            reported = session_count
            if self._pages >= self.settings.run.max_pages:
                self.token.cancel(MAX_PAGES_REACHED)

        return on_progress

    def _outcome(self, *, synthesized: bool = False) -> RunOutcome:
        meta = self.store.meta
        return RunOutcome(
            run_dir=self.store.run_dir,
            pages=self._pages,
            status=meta.status if meta else None,
            reason=self.token.reason,
            synthesized=synthesized,
        )

    async def run(
        self,
        topic: str,
        questions: list[QuestionNode],
        seed_urls: Iterable[str],
        synthesize: Synthesizer | None = None,
        *,
        run_id: str | None = None,
    ) -> RunOutcome:
        """Inspect every question of the tree and hand the run to ``synthesize``.

        Synthesis only happens when the run was not cancelled and at least
        ``min_pages_for_synthesis`` pages were stored. The store is not
        flushed here; callers own the shutdown (see :meth:`shutdown`).
        """

        run_settings = self.settings.run
        if not await self.store.initialize(topic, run_settings.max_pages, run_id=run_id):
            self.token.cancel(STORE_ERROR)
            return self._outcome()
        if not await self.store.save_question_tree(questions):
            logger.warning("question tree not persisted", run_dir=str(self.store.run_dir))

        seeds = [url.strip() for url in seed_urls if url and url.strip()]
        sessions = list(iter_sessions(questions))
        logger.info("research started", topic=topic, questions=len(sessions), seeds=len(seeds))
        await asyncio.gather(*(self._run_session(question, seeds) for question in sessions))

        if self.token.cancelled:
            logger.info("research stopped", reason=self.token.reason, pages=self._pages)
            return self._outcome()
        if synthesize is None:
            return self._outcome()
        if self._pages < run_settings.min_pages_for_synthesis:
            logger.info(
                "synthesis skipped",
                reason="insufficient_pages",
                pages=self._pages,
                required=run_settings.min_pages_for_synthesis,
            )
            return self._outcome()

        try:
            result = synthesize(self.store.run_dir)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.token.cancel(PHASE_ERROR)
            logger.exception("synthesis failed", run_dir=str(self.store.run_dir))
            raise
        saved = await self.store.save_synthesis(result)
        return self._outcome(synthesized=saved)

    async def _run_session(self, question: QuestionNode, seeds: list[str]) -> None:
        if self.token.cancelled:
            return
        async with self.question_governor.slot():
            if self.token.cancelled:
                return
            await self.inspector.inspect(question, seeds, self.token, self._progress_for_session())

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Cancel outstanding work and flush the store."""
        self.token.cancel(reason)
        await self.store.flush()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Turn SIGINT/SIGTERM into cancellation plus a store flush."""

        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig.name)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - non-POSIX loops
                logger.debug("signal handler unavailable", signal=sig.name)

    def _on_signal(self, name: str) -> None:
        self.token.cancel(f"signal:{name}")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.store.flush())
