"""
Shared test configuration for politecrawl.

Provides markers, task cleanup between async tests, a scripted request
executor and small HTML/option builders used across unit and integration
tests.
"""

# Standard library imports
import asyncio
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from politecrawl.config import CrawlerOptions
from tests.helpers import FakeExecutor

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel every task a test left behind so a hanging drain task or worker
    never leaks into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    tasks_after = asyncio.all_tasks()
    new_tasks = tasks_after - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test output."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ============================================================================
# Crawl Fixtures
# ============================================================================


@pytest.fixture
def fake_executor() -> FakeExecutor:
    """Scripted executor; unknown URLs answer 404."""
    return FakeExecutor()


@pytest.fixture
def fast_options() -> CrawlerOptions:
    """Options without politeness delays, robots.txt or feed discovery."""
    return CrawlerOptions(
        max_depth=2,
        max_pages=50,
        max_concurrency=4,
        request_delay_ms=0,
        max_delay_ms=50,
        request_timeout=5.0,
        respect_robots_txt=False,
        discover_feeds=False,
    )


@pytest.fixture
def sample_html() -> str:
    """HTML page with a title, description and a mix of links."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>  Test   Article </title>
        <meta name="description" content="Sample article for testing">
        <meta property="og:description" content="Open Graph description">
    </head>
    <body>
        <a href="/about">About</a>
        <a href="contact.html">Contact</a>
        <a href="https://example.com/blog?page=2#comments">Blog</a>
        <a href="#top">Top</a>
        <a href="mailto:someone@example.com">Mail</a>
        <a href="/about">About again</a>
        <map><area href="/map-target" alt="x"></map>
    </body>
    </html>
    """
