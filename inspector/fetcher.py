"""Single-page HTTP retrieval with timeout, size cap and cancellation."""

from __future__ import annotations

import asyncio
import random
import urllib.parse as urlparse
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import httpx
import structlog

from observability.metrics import fetch_failures

from .cancellation import CancellationToken

logger = structlog.get_logger(__name__)

ACCEPT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en-US,en;q=0.9",
}
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
REDIRECT_STATUSES = {301, 302, 303, 307, 308}


class FetchFailure(str, Enum):
    """Why a fetch produced no markup."""

    http_status = "http_status"
    unsupported_content_type = "unsupported_content_type"
    response_too_large = "response_too_large"
    too_many_redirects = "too_many_redirects"
    timeout = "timeout"
    cancelled = "cancelled"
    transport = "transport"


@dataclass(frozen=True)
class FetchResult:
    """Tagged outcome of :func:`fetch_page`.

    ``body`` is set on success; ``failure`` (and usually ``detail``) otherwise.
    ``url`` is the final URL after redirects.
    """

    url: str
    body: str | None = None
    status: int | None = None
    content_type: str | None = None
    failure: FetchFailure | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.body is not None

    @classmethod
    def failed(
        cls,
        url: str,
        failure: FetchFailure,
        detail: str | None = None,
        *,
        status: int | None = None,
    ) -> "FetchResult":
        return cls(url=url, failure=failure, detail=detail, status=status)


def build_headers(user_agents: Sequence[str], rng: random.Random | None = None) -> dict[str, str]:
    """Request headers with a user agent picked uniformly at random."""

    headers = dict(ACCEPT_HEADERS)
    if user_agents:
        headers["User-Agent"] = (rng or random).choice(list(user_agents))
    return headers


def is_html(content_type: str | None) -> bool:
    main_type = (content_type or "").split(";")[0].strip().lower()
    return main_type in HTML_CONTENT_TYPES


async def _get(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    max_body: int,
    max_redirects: int,
) -> FetchResult:
    current = url
    for _hop in range(max_redirects + 1):
        async with client.stream("GET", current, headers=headers) as resp:
            location = resp.headers.get("location")
            if resp.status_code in REDIRECT_STATUSES and location:
                current = urlparse.urljoin(str(resp.url), location.strip())
                continue
            if not 200 <= resp.status_code < 300:
                return FetchResult.failed(
                    current, FetchFailure.http_status, f"HTTP {resp.status_code}", status=resp.status_code
                )
            ctype = resp.headers.get("content-type", "")
            if not is_html(ctype):
                return FetchResult.failed(
                    current, FetchFailure.unsupported_content_type, ctype or "missing", status=resp.status_code
                )
            declared = resp.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_body:
                return FetchResult.failed(
                    current,
                    FetchFailure.response_too_large,
                    f"content-length {declared} exceeds {max_body} bytes",
                    status=resp.status_code,
                )
            chunks: list[bytes] = []
            size = 0
            async for chunk in resp.aiter_bytes():
                size += len(chunk)
                if size > max_body:
                    return FetchResult.failed(
                        current,
                        FetchFailure.response_too_large,
                        f"more than {max_body} bytes",
                        status=resp.status_code,
                    )
                chunks.append(chunk)
            body = b"".join(chunks).decode(resp.encoding or "utf-8", errors="replace")
            return FetchResult(url=current, body=body, status=resp.status_code, content_type=ctype)
    return FetchResult.failed(current, FetchFailure.too_many_redirects, f"more than {max_redirects} redirects")


async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    *,
    token: CancellationToken,
    timeout: float,
    max_body: int,
    max_redirects: int = 5,
    user_agents: Sequence[str] = (),
    rng: random.Random | None = None,
) -> FetchResult:
    """Fetch ``url`` once and return a :class:`FetchResult`.

    Redirects are followed by hand (``client`` must not follow them itself)
    up to ``max_redirects`` hops. The whole exchange, including body
    streaming, must finish within ``timeout`` seconds. If ``token`` fires
    first the request is aborted. Nothing is raised and nothing is retried.
    """

    if token.cancelled:
        result = FetchResult.failed(url, FetchFailure.cancelled, token.reason)
        _record_failure(result)
        return result

    request_task = asyncio.ensure_future(
        _get(
            client,
            url,
            headers=build_headers(user_agents, rng),
            max_body=max_body,
            max_redirects=max_redirects,
        )
    )
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _pending = await asyncio.wait(
            {request_task, cancel_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if request_task in done:
            try:
                result = request_task.result()
            except httpx.TimeoutException as exc:
                result = FetchResult.failed(url, FetchFailure.timeout, str(exc) or type(exc).__name__)
            except Exception as exc:  # noqa: BLE001
                result = FetchResult.failed(url, FetchFailure.transport, f"{type(exc).__name__}: {exc}")
        elif cancel_task in done:
            result = FetchResult.failed(url, FetchFailure.cancelled, token.reason)
        else:
            result = FetchResult.failed(url, FetchFailure.timeout, f"no response within {timeout}s")
    finally:
        for task in (request_task, cancel_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(request_task, cancel_task, return_exceptions=True)

    if not result.ok:
        _record_failure(result)
    return result


def _record_failure(result: FetchResult) -> None:
    reason = result.failure.value if result.failure else "unknown"
    fetch_failures.labels(reason).inc()
    logger.debug("fetch failed", url=result.url, reason=reason, detail=result.detail)
