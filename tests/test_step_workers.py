"""Test step_workers — Article Engine."""
from __future__ import annotations

import json

import aiohttp
import pytest

from article_engine.job_state import (
    DegradedOutput,
    MetaOutput,
    Phase,
    ResearchOutput,
    TargetConfig,
)
from article_engine.step_workers import (
    FunctionStepWorker,
    HttpStepWorker,
    MissingUpstreamError,
    PhaseOutputError,
    StepInput,
    StepWorkerError,
    build_http_workers,
    coerce_phase_output,
)


def _input(**overrides) -> StepInput:
    defaults = dict(job_id="job-1", phase=Phase.RESEARCH, step="research", subject="Coffee")
    defaults.update(overrides)
    return StepInput(**defaults)


# ===================================================================
# StepInput
# ===================================================================

class TestStepInput:

    @pytest.mark.unit
    def test_require_returns_real_output(self):
        research = ResearchOutput(summary="s")
        step_input = _input(phase=Phase.STRATEGY, upstream={Phase.RESEARCH: research})
        assert step_input.require(Phase.RESEARCH) is research

    @pytest.mark.unit
    def test_require_rejects_missing_and_degraded(self):
        step_input = _input(phase=Phase.STRATEGY,
                            upstream={Phase.COMPETITOR_ANALYSIS: DegradedOutput(reason="x")})
        with pytest.raises(MissingUpstreamError):
            step_input.require(Phase.RESEARCH)
        with pytest.raises(MissingUpstreamError) as exc_info:
            step_input.require(Phase.COMPETITOR_ANALYSIS)
        assert exc_info.value.category == "logic"

    @pytest.mark.unit
    def test_optional_hides_degraded(self):
        step_input = _input(upstream={Phase.IMAGE: DegradedOutput()})
        assert step_input.optional(Phase.IMAGE) is None
        assert step_input.optional(Phase.META) is None

    @pytest.mark.unit
    def test_payload_is_json_serializable(self):
        step_input = _input(
            target_config=TargetConfig(language="zh-TW", image_count=2),
            upstream={Phase.RESEARCH: ResearchOutput(summary="s"), Phase.IMAGE: DegradedOutput()},
            params={"temperature": 0.8},
            attempt=2,
        )
        payload = json.loads(json.dumps(step_input.to_payload()))
        assert payload["phase"] == "research"
        assert payload["target_config"]["language"] == "zh-TW"
        assert payload["upstream"]["research"]["summary"] == "s"
        assert payload["upstream"]["image"]["__degraded__"] is True
        assert payload["params"] == {"temperature": 0.8}
        assert payload["attempt"] == 2


# ===================================================================
# Output coercion
# ===================================================================

class TestCoercePhaseOutput:

    @pytest.mark.unit
    def test_instance_passes_through(self):
        meta = MetaOutput(title="T")
        assert coerce_phase_output(Phase.META, meta) is meta

    @pytest.mark.unit
    def test_dict_and_wrapped_dict(self):
        assert coerce_phase_output(Phase.META, {"title": "T", "extra": 1}).title == "T"
        assert coerce_phase_output(Phase.META, {"output": {"title": "T", "slug": "s"}}).slug == "s"

    @pytest.mark.unit
    def test_non_object_rejected(self):
        with pytest.raises(PhaseOutputError) as exc_info:
            coerce_phase_output(Phase.META, "plain text")
        assert exc_info.value.category == "parsing"

    @pytest.mark.unit
    def test_missing_required_field_rejected(self):
        with pytest.raises(PhaseOutputError):
            coerce_phase_output(Phase.INIT, {})

    @pytest.mark.unit
    def test_writing_body_under_wrong_key_rejected(self):
        with pytest.raises(PhaseOutputError, match="'html' must not be empty") as exc_info:
            coerce_phase_output(Phase.WRITING, {"content": "<p>body under the wrong key</p>"})
        assert exc_info.value.category == "parsing"
        assert exc_info.value.phase == Phase.WRITING

    @pytest.mark.unit
    @pytest.mark.parametrize("phase, payload", [
        (Phase.WRITING, {}),
        (Phase.WRITING, {"html": "   "}),
        (Phase.STRATEGY, {"outline": [{"heading": "Grinders"}]}),
        (Phase.META, {"slug": "best-coffee-makers"}),
        (Phase.META, MetaOutput()),
    ])
    def test_empty_required_text_rejected(self, phase, payload):
        with pytest.raises(PhaseOutputError, match="must not be empty"):
            coerce_phase_output(phase, payload)

    @pytest.mark.unit
    @pytest.mark.parametrize("phase, payload, field_name", [
        (Phase.WRITING, {"html": "<p>x</p>", "word_count": "1800"}, "word_count"),
        (Phase.WRITING, {"html": "<p>x</p>", "word_count": True}, "word_count"),
        (Phase.STRATEGY, {"selected_title": "T", "outline": "Grinders"}, "outline"),
        (Phase.RESEARCH, {"keywords": "coffee, espresso"}, "keywords"),
        (Phase.CATEGORY, {"categories": {"name": "Kitchen"}}, "categories"),
        (Phase.META, {"title": 42}, "title"),
    ])
    def test_wrong_field_types_rejected(self, phase, payload, field_name):
        with pytest.raises(PhaseOutputError, match=f"'{field_name}' must be"):
            coerce_phase_output(phase, payload)

    @pytest.mark.unit
    def test_optional_fields_may_be_absent(self):
        output = coerce_phase_output(Phase.WRITING, {"html": "<p>body</p>"})
        assert output.word_count == 0
        assert coerce_phase_output(Phase.CONTENT_PLAN, {}).sections == []


# ===================================================================
# HTTP worker
# ===================================================================

class TestHttpStepWorker:

    @pytest.mark.asyncio
    async def test_success_posts_payload(self, mock_aiohttp_session, mock_aiohttp_response):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(200, {"summary": "ok"})
        worker = HttpStepWorker("http://w/research", step="research", session=mock_aiohttp_session)

        result = await worker.execute(_input())

        assert result == {"summary": "ok"}
        args, kwargs = mock_aiohttp_session.post.call_args
        assert args[0] == "http://w/research"
        assert kwargs["json"]["job_id"] == "job-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, category", [
        (429, "rate_limit"),
        (500, "network"),
        (503, "network"),
        (400, "validation"),
        (422, "validation"),
    ])
    async def test_status_mapping(self, mock_aiohttp_session, mock_aiohttp_response, status, category):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(status, text="boom")
        worker = HttpStepWorker("http://w/meta", step="meta", session=mock_aiohttp_session)

        with pytest.raises(StepWorkerError) as exc_info:
            await worker.execute(_input(phase=Phase.META, step="meta"))

        assert exc_info.value.status == status
        assert exc_info.value.category == category

    @pytest.mark.asyncio
    async def test_rate_limit_code(self, mock_aiohttp_session, mock_aiohttp_response):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(429)
        worker = HttpStepWorker("http://w/meta", step="meta", session=mock_aiohttp_session)
        with pytest.raises(StepWorkerError) as exc_info:
            await worker.execute(_input())
        assert exc_info.value.code == "rate_limit_exceeded"

    @pytest.mark.asyncio
    async def test_invalid_json_is_parsing_error(self, mock_aiohttp_session, mock_aiohttp_response):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(
            200, json_error=json.JSONDecodeError("Expecting value", "", 0),
        )
        worker = HttpStepWorker("http://w/x", step="writing", session=mock_aiohttp_session)
        with pytest.raises(StepWorkerError) as exc_info:
            await worker.execute(_input())
        assert exc_info.value.category == "parsing"

    @pytest.mark.asyncio
    async def test_client_error_is_network_error(self, mock_aiohttp_session):
        mock_aiohttp_session.post.side_effect = aiohttp.ClientConnectionError("refused")
        worker = HttpStepWorker("http://w/x", step="research", session=mock_aiohttp_session)
        with pytest.raises(StepWorkerError) as exc_info:
            await worker.execute(_input())
        assert exc_info.value.category == "network"
        assert isinstance(exc_info.value.__cause__, aiohttp.ClientConnectionError)

    @pytest.mark.asyncio
    async def test_close_leaves_shared_session_open(self, mock_aiohttp_session):
        worker = HttpStepWorker("http://w/x", step="research", session=mock_aiohttp_session)
        await worker.close()
        mock_aiohttp_session.close.assert_not_awaited()


# ===================================================================
# Function worker / factory
# ===================================================================

class TestFunctionStepWorker:

    @pytest.mark.asyncio
    async def test_async_function(self):
        async def research(step_input):
            return {"summary": step_input.subject}

        worker = FunctionStepWorker(research)
        assert worker.step == "research"
        assert await worker.execute(_input()) == {"summary": "Coffee"}

    @pytest.mark.asyncio
    async def test_sync_function(self):
        worker = FunctionStepWorker(lambda step_input: {"attempt": step_input.attempt}, step="meta")
        assert await worker.execute(_input(attempt=3)) == {"attempt": 3}

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        def broken(step_input):
            raise StepWorkerError("nope", category="validation")

        with pytest.raises(StepWorkerError, match="nope"):
            await FunctionStepWorker(broken).execute(_input())


class TestBuildHttpWorkers:

    @pytest.mark.unit
    def test_unknown_steps_skipped(self):
        workers = build_http_workers(
            {"research": "http://w/research", "translation": "http://w/t"},
            timeout=30, headers={"Authorization": "Bearer x"},
        )
        assert list(workers) == ["research"]
        assert workers["research"].timeout == 30
        assert workers["research"].headers == {"Authorization": "Bearer x"}
