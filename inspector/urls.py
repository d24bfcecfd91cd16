"""URL canonicalisation used for per-session deduplication."""

from __future__ import annotations

import urllib.parse as urlparse

TRACKING_PREFIXES: tuple[str, ...] = ("utm_",)
TRACKING_PARAMS: frozenset[str] = frozenset({"ref", "fbclid"})
_DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def _netloc(parsed: urlparse.SplitResult, scheme: str) -> str:
    host = (parsed.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parsed.port
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"
    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo = f"{userinfo}:{parsed.password}"
        host = f"{userinfo}@{host}"
    return host


def normalize_url(raw_url: str) -> str:
    """Return the canonical form of ``raw_url`` used as a dedup key.

    Drops the fragment and tracking parameters (``utm_*``, ``ref``,
    ``fbclid``), sorts the remaining query parameters, lower-cases scheme and
    host, drops default ports and strips the trailing slash of the path.
    Anything that does not parse as an absolute URL is returned unchanged.
    The function is idempotent.
    """

    try:
        parsed = urlparse.urlsplit(raw_url.strip())
        scheme = parsed.scheme.lower()
        if not scheme or not parsed.netloc or not parsed.hostname:
            return raw_url
        netloc = _netloc(parsed, scheme)
    except ValueError:
        return raw_url

    pairs = [
        (key, value)
        for key, value in urlparse.parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    pairs.sort()
    query = urlparse.urlencode(pairs)
    path = parsed.path.rstrip("/")

    return urlparse.urlunsplit((scheme, netloc, path, query, ""))


def host_of(url: str) -> str | None:
    """Return the lower-cased host of ``url`` or ``None`` when it has none."""

    try:
        host = urlparse.urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def same_host(url: str, host: str | None) -> bool:
    """Exact host comparison; subdomains do not match."""

    if not host:
        return False
    return host_of(url) == host.lower()
