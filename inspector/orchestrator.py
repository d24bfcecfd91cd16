"""Depth-bounded page inspection for one research question.

A session inspects the seed URLs of a question (depth 0) and, for every seed
that yields a page, up to ``max_expanded_urls`` of its same-host links
(depth 1). Depth-1 pages are never expanded. All sessions of one
:class:`PageInspector` share its fetch :class:`Governor`, which bounds the
number of requests in flight across the whole run.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable

import httpx
import structlog

from models import PageRecord, QuestionNode
from observability.metrics import fetch_failures, fetches_in_flight, pages_saved
from settings import InspectorSettings
from storage.run_store import RunStore

from .cancellation import CancellationToken
from .extractor import extract_content
from .fetcher import fetch_page
from .governor import Governor
from .urls import normalize_url

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], None]
SleepFn = Callable[[float], Awaitable[None]]


class TaskState(str, Enum):
    """Lifecycle of one URL within a session."""

    claimed = "claimed"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class InspectionSession:
    """Per-question bookkeeping. Never shared between sessions."""

    question_id: str
    states: dict[str, TaskState] = field(default_factory=dict)
    fetch_attempts: list[str] = field(default_factory=list)
    page_count: int = 0

    @property
    def claimed(self) -> set[str]:
        return set(self.states)

    def is_claimed(self, normalized: str) -> bool:
        return normalized in self.states

    def claim(self, normalized: str) -> bool:
        if normalized in self.states:
            return False
        self.states[normalized] = TaskState.claimed
        return True

    def finish(self, normalized: str, state: TaskState) -> None:
        if self.states.get(normalized) is TaskState.claimed:
            self.states[normalized] = state

    def urls_in(self, state: TaskState) -> list[str]:
        return [url for url, current in self.states.items() if current is state]


class PageInspector:
    """Fetch, extract and persist pages for research questions.

    ``client_factory`` exists for tests (``httpx.MockTransport``); the
    factory's client must not follow redirects on its own. ``sleep`` and
    ``rng`` are injectable for the same reason.
    """

    def __init__(
        self,
        store: RunStore,
        settings: InspectorSettings | None = None,
        *,
        governor: Governor | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or InspectorSettings()
        self.governor = governor or Governor(self.settings.fetch_concurrency)
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.fetch_timeout, follow_redirects=False)

    async def inspect(
        self,
        question: QuestionNode,
        seed_urls: Iterable[str],
        token: CancellationToken,
        progress_callback: ProgressCallback | None = None,
    ) -> InspectionSession:
        """Inspect ``seed_urls`` for ``question``; never raises.

        Each stored page increments the session counter, which is reported
        through ``progress_callback``.
        """

        session = InspectionSession(question_id=question.id)
        seeds = [url for url in seed_urls if url and url.strip()]
        if not seeds:
            return session
        logger.info("inspection started", question_id=question.id, seeds=len(seeds))
        try:
            async with self._client_factory() as client:
                await asyncio.gather(
                    *(
                        self._inspect_seed(client, session, url, token, progress_callback)
                        for url in seeds
                    )
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("inspection aborted", question_id=question.id, error=str(exc))
        logger.info(
            "inspection finished",
            question_id=question.id,
            pages=session.page_count,
            claimed=len(session.states),
            cancelled=token.cancelled,
        )
        return session

    async def _inspect_seed(
        self,
        client: httpx.AsyncClient,
        session: InspectionSession,
        url: str,
        token: CancellationToken,
        progress_callback: ProgressCallback | None,
    ) -> None:
        record = await self._inspect_url(client, session, url, 0, token, progress_callback)
        if record is None or not record.links:
            return
        if token.cancelled:
            return
        expansion = self._select_expansion(session, record.links)
        if not expansion:
            return
        logger.debug("expanding", url=record.url, links=len(expansion))
        await asyncio.gather(
            *(
                self._inspect_url(client, session, link, 1, token, progress_callback)
                for link in expansion
            )
        )

    def _select_expansion(self, session: InspectionSession, links: list[str]) -> list[str]:
        selected: list[str] = []
        picked: set[str] = set()
        for link in links:
            if len(selected) >= self.settings.max_expanded_urls:
                break
            normalized = normalize_url(link)
            if session.is_claimed(normalized) or normalized in picked:
                continue
            picked.add(normalized)
            selected.append(link)
        return selected

    async def _inspect_url(
        self,
        client: httpx.AsyncClient,
        session: InspectionSession,
        url: str,
        depth: int,
        token: CancellationToken,
        progress_callback: ProgressCallback | None,
    ) -> PageRecord | None:
        if token.cancelled:
            return None
        normalized = normalize_url(url)
        if not session.claim(normalized):
            return None

        settings = self.settings
        await self.governor.acquire()
        fetches_in_flight.inc()
        try:
            if token.cancelled:
                session.finish(normalized, TaskState.cancelled)
                return None
            delay = self._rng.uniform(settings.min_delay, max(settings.min_delay, settings.max_delay))
            await self._sleep(delay)
            if token.cancelled:
                session.finish(normalized, TaskState.cancelled)
                return None

            session.fetch_attempts.append(normalized)
            result = await fetch_page(
                client,
                url,
                token=token,
                timeout=settings.fetch_timeout,
                max_body=settings.max_body_chars,
                max_redirects=settings.max_redirects,
                user_agents=settings.user_agents,
                rng=self._rng,
            )
            extraction = None
            if result.ok:
                # links resolve against the post-redirect location
                extraction = extract_content(
                    result.body or "", result.url, max_text_length=settings.max_text_length
                )
        finally:
            fetches_in_flight.dec()
            self.governor.release()

        if token.cancelled:
            session.finish(normalized, TaskState.cancelled)
            return None
        if extraction is None:
            session.finish(normalized, TaskState.failed)
            return None
        if len(extraction.text) < settings.min_text_length:
            fetch_failures.labels("too_short").inc()
            logger.debug("page skipped", url=url, reason="too_short", chars=len(extraction.text))
            session.finish(normalized, TaskState.failed)
            return None

        record = PageRecord(
            url=url,
            title=extraction.title,
            extracted_text=extraction.text,
            links=extraction.links,
        )
        session.finish(normalized, TaskState.succeeded)
        saved = await self.store.save_page_result(record)
        if not saved:
            logger.warning("page not persisted", url=url, question_id=session.question_id)
            return record
        pages_saved.inc()
        session.page_count += 1
        logger.debug("page stored", url=url, depth=depth, chars=len(extraction.text))
        if progress_callback is not None:
            try:
                progress_callback(session.page_count)
            except Exception as exc:  # noqa: BLE001
                logger.warning("progress callback failed", error=str(exc))
        return record
