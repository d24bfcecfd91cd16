"""Pytest configuration with basic asyncio support and shared fixtures."""

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from settings import InspectorSettings  # noqa: E402


def pytest_configure(config):
    """Register the ``asyncio`` marker for asynchronous tests."""
    config.addinivalue_line(
        "markers", "asyncio: mark async test to run in event loop"
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run functions marked with ``asyncio`` in a new event loop."""
    if pyfuncitem.get_closest_marker("asyncio"):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            funcargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(pyfuncitem.obj(**funcargs))
        finally:
            loop.close()
            asyncio.set_event_loop(None)
        return True


@pytest.fixture
def fast_settings() -> InspectorSettings:
    """Inspector settings without jitter and with a short timeout."""
    return InspectorSettings(
        min_delay=0,
        max_delay=0,
        fetch_timeout=2.0,
        min_text_length=100,
    )


def html_page(text: str, *, title: str = "Page", links: list[str] | None = None) -> str:
    anchors = "".join(f'<a href="{href}">link</a>' for href in links or [])
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><p>{text}</p>{anchors}</main></body></html>"
    )


def html_response(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"content-type": "text/html; charset=utf-8"})
