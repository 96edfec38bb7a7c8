"""Tests for generation dispatch and the PydanticAI backends."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeBackend, make_chunk, make_settings
from pydantic_ai import Agent
from pydantic_ai.messages import ModelRequest, ModelResponse

from docqa.application.exceptions import GenerationError
from docqa.application.generation import BackendBinding, GenerationDispatcher
from docqa.domain.models import Backend, ChatMessage
from docqa.domain.protocols import GenerationRequest
from docqa.infrastructure.generation_backends import (
    SYSTEM_PROMPT,
    PydanticAIBackend,
    build_dispatch_table,
    build_history,
    build_prompt,
)


def _request(**overrides) -> GenerationRequest:
    values = dict(
        message="What is the warranty period?",
        history=[],
        document_slugs=["policy-a"],
        document_titles=["Policy A"],
        chunks=[make_chunk("policy-a", 0, content="The warranty period is two years.")],
        model_name="",
    )
    values.update(overrides)
    return GenerationRequest(**values)


def _dispatcher(backend, timeout: float = 5.0) -> GenerationDispatcher:
    return GenerationDispatcher({Backend.FAST: BackendBinding(backend, "grok-4-fast-non-reasoning")}, timeout)


async def _collect(stream) -> list[str]:
    return [fragment async for fragment in stream]


class TestDispatcher:
    async def test_generate(self):
        backend = FakeBackend(answer="Two years.")
        assert await _dispatcher(backend).generate(Backend.FAST, _request()) == "Two years."

    def test_actual_model(self):
        dispatcher = _dispatcher(FakeBackend())
        assert dispatcher.actual_model(Backend.FAST) == "grok-4-fast-non-reasoning"
        assert dispatcher.actual_model(Backend.GENERAL) == "general"

    async def test_unconfigured_backend(self):
        with pytest.raises(GenerationError):
            await _dispatcher(FakeBackend()).generate(Backend.REASONING, _request())

    async def test_backend_failure_wrapped(self):
        backend = FakeBackend()
        backend.error = ConnectionError("upstream reset")
        with pytest.raises(GenerationError) as exc_info:
            await _dispatcher(backend).generate(Backend.FAST, _request())
        assert exc_info.value.stage == "generation"
        assert "upstream reset" in exc_info.value.message

    async def test_generate_timeout(self):
        class Slow(FakeBackend):
            async def generate(self, request):
                await asyncio.sleep(1)
                return "late"

        with pytest.raises(GenerationError) as exc_info:
            await _dispatcher(Slow(), timeout=0.01).generate(Backend.FAST, _request())
        assert "timed out" in exc_info.value.message

    async def test_stream_relays_fragments(self):
        backend = FakeBackend(fragments=["Two ", "", "years."])
        fragments = await _collect(_dispatcher(backend).stream(Backend.FAST, _request()))
        assert fragments == ["Two ", "years."]

    async def test_stream_failure_after_fragments(self):
        backend = FakeBackend(fragments=["Two "])
        backend.error = RuntimeError("connection dropped")
        received: list[str] = []
        with pytest.raises(GenerationError):
            async for fragment in _dispatcher(backend).stream(Backend.FAST, _request()):
                received.append(fragment)
        assert received == ["Two "]

    async def test_stream_deadline(self):
        class Stalling(FakeBackend):
            async def stream(self, request):
                yield "Two "
                await asyncio.sleep(1)
                yield "years."

        received: list[str] = []
        with pytest.raises(GenerationError) as exc_info:
            async for fragment in _dispatcher(Stalling(), timeout=0.05).stream(Backend.FAST, _request()):
                received.append(fragment)
        assert received == ["Two "]
        assert "timed out" in exc_info.value.message


class TestPrompt:
    def test_system_prompt_rules(self):
        assert "ONLY the excerpts" in SYSTEM_PROMPT
        assert "NEVER reveal" in SYSTEM_PROMPT

    def test_prompt_contains_excerpts_and_question(self):
        prompt = build_prompt(_request())
        assert "Documents: Policy A" in prompt
        assert "[Excerpt 1]" in prompt
        assert "The warranty period is two years." in prompt
        assert prompt.endswith("Question: What is the warranty period?")

    def test_prompt_without_chunks(self):
        assert "No relevant excerpts" in build_prompt(_request(chunks=[]))

    def test_history_conversion(self):
        history = build_history(
            [ChatMessage(role="user", content="Hi"), ChatMessage(role="assistant", content="Hello")]
        )
        assert isinstance(history[0], ModelRequest)
        assert isinstance(history[1], ModelResponse)


class TestPydanticAIBackend:
    @pytest.fixture()
    def backend(self) -> PydanticAIBackend:
        from pydantic_ai.models.test import TestModel

        agent = Agent(TestModel(custom_output_text="The warranty period is two years."), output_type=str)
        return PydanticAIBackend(agent)

    async def test_generate(self, backend: PydanticAIBackend):
        history = [ChatMessage(role="user", content="Hi"), ChatMessage(role="assistant", content="Hello")]
        assert await backend.generate(_request(history=history)) == "The warranty period is two years."

    async def test_stream(self, backend: PydanticAIBackend):
        fragments = await _collect(backend.stream(_request()))
        assert "".join(fragments) == "The warranty period is two years."

    async def test_through_dispatcher(self, backend: PydanticAIBackend):
        dispatcher = _dispatcher(backend)
        fragments = await _collect(dispatcher.stream(Backend.FAST, _request()))
        assert "".join(fragments) == "The warranty period is two years."


def test_dispatch_table_covers_every_backend(tmp_path):
    settings = make_settings(tmp_path)
    table = build_dispatch_table(settings)
    assert set(table) == set(Backend)
    assert table[Backend.GENERAL].display_name == settings.general_model
    assert table[Backend.FAST].display_name == settings.fast_model
    assert table[Backend.REASONING].display_name == settings.reasoning_model
