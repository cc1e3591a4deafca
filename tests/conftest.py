"""
Shared fixtures for the Article Engine test suite.

Provides temp stores, sample job data and reusable mock objects so that all
tests run WITHOUT any external services.
"""

from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from article_engine.checkpoint_manager import JsonCheckpointStore
from article_engine.duplicate_guard import JsonSubmissionStore
from article_engine.step_workers import FunctionStepWorker, StepInput


# ---------------------------------------------------------------------------
# Directory / store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def checkpoint_store(tmp_path):
    """JSON checkpoint store rooted in a temp directory."""
    return JsonCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def submission_store(tmp_path):
    """JSON submission store rooted in a temp directory."""
    return JsonSubmissionStore(tmp_path / "submissions")


# ---------------------------------------------------------------------------
# Sample content
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_html():
    """Generated article body with two H2 sections."""
    return (
        "<p>Choosing a good espresso machine starts with knowing how you brew.</p>"
        "<h2>Grinders</h2>"
        "<p>A burr grinder gives a consistent grind for every coffee bean.</p>"
        "<h2>Brewing</h2>"
        "<p>Water temperature matters for pour over and french press alike.</p>"
    )


@pytest.fixture
def step_payloads() -> Dict[str, Any]:
    """Worker payloads for every step, keyed by step name."""
    return {
        "research": {
            "summary": "Coffee maker market overview",
            "keywords": ["coffee maker", "espresso"],
            "search_intent": "commercial",
            "sources": [
                {
                    "url": "https://example.org/espresso-guide",
                    "title": "Espresso Guide",
                    "description": "Everything about espresso extraction and grinders",
                    "domain": "example.org",
                }
            ],
        },
        "competitor_analysis": {"competitors": [{"url": "https://rival.com"}], "content_gaps": ["cleaning"]},
        "strategy": {
            "selected_title": "The 10 Best Coffee Makers",
            "outline": [{"heading": "Grinders"}, {"heading": "Brewing"}],
            "target_keywords": ["coffee maker"],
        },
        "content_plan": {"sections": [{"heading": "Grinders"}], "tone": "friendly"},
        "featured_image": {"url": "https://cdn.test/featured.png", "alt_text": "Coffee", "width": 1200, "height": 630},
        "content_images": {"content_images": [{"url": "https://cdn.test/1.png", "alt_text": "Grinder"}]},
        "writing": {
            "html": (
                "<p>Intro paragraph about coffee.</p><h2>Grinders</h2>"
                "<p>A burr grinder is key.</p><h2>Brewing</h2><p>Brew well.</p>"
            ),
            "word_count": 1800,
        },
        "internal_links": {"links": []},
        "meta": {
            "title": "Best Coffee Makers 2026",
            "description": "Our picks",
            "slug": "best-coffee-makers",
            "focus_keyword": "coffee makers",
        },
        "category": {"categories": ["Kitchen"], "tags": ["coffee"]},
        "publish": {"post_id": "42", "url": "https://site.test/best-coffee-makers", "status": "draft"},
    }


@pytest.fixture
def make_workers(step_payloads):
    """Factory of recording FunctionStepWorkers.

    Returns ``(workers, calls)`` where ``calls`` lists the step names in the
    order they were invoked.  ``failures`` maps a step to an exception raised
    on every call.
    """

    def _make(failures: Dict[str, Exception] = None, omit=()):
        failures = failures or {}
        calls: List[str] = []

        def _worker_for(step: str):
            async def _execute(step_input: StepInput):
                calls.append(step)
                if step in failures:
                    raise failures[step]
                return step_payloads[step]
            return FunctionStepWorker(_execute, step=step)

        workers = {s: _worker_for(s) for s in step_payloads if s not in omit}
        return workers, calls

    return _make


@pytest.fixture
def no_sleep(monkeypatch):
    """Make retry backoff instant; returns the AsyncMock standing in for sleep."""
    sleep = AsyncMock()
    monkeypatch.setattr("article_engine.retry_policy._sleep", sleep)
    return sleep


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None, json_error=None):
        resp = AsyncMock()
        resp.status = status
        if json_error is not None:
            resp.json = AsyncMock(side_effect=json_error)
        else:
            resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    session.closed = False
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.post = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session

