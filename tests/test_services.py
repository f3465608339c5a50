"""Tests for the language-model and transcription backends (no network)."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import assemblyai as aai
import httpx
import openai
import pytest
from anthropic.types import TextBlock, ToolUseBlock
from conftest import make_settings

from meeting_pipeline.errors import ConfigError, NetworkError, RemoteError, ServiceTimeoutError
from meeting_pipeline.ingestion.models import Segment
from meeting_pipeline.pipeline_config import ServiceConfig
from meeting_pipeline.services.llm import (
    STRUCTURED_TOOL_NAME,
    AnthropicBackend,
    CompletionRequest,
    OllamaBackend,
    build_llm_backend,
)
from meeting_pipeline.services.transcription import (
    AssemblyAIBackend,
    OpenAITranscriptionBackend,
    TranscriptionRequest,
    build_transcription_backend,
)

REQUEST = CompletionRequest(system="Summarize.", prompt="[00:00:01] A: Hello.")
SCHEMA = {"type": "object", "properties": {"topics": {"type": "array"}}}
STRUCTURED_REQUEST = CompletionRequest(system="Summarize.", prompt="A: Hello.", schema=SCHEMA)
_HTTP_REQUEST = httpx.Request("POST", "https://api.example.com")


def _ollama(handler: Any) -> OllamaBackend:
    return OllamaBackend(
        "http://localhost:11434/", "llama3.1", transport=httpx.MockTransport(handler)
    )


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class TestOllamaBackend:
    def test_send(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"response": "A short summary."})

        assert asyncio.run(_ollama(handler).send(REQUEST)) == "A short summary."
        assert seen[0].url.path == "/api/generate"
        body = json.loads(seen[0].content)
        assert body["model"] == "llama3.1"
        assert body["system"] == "Summarize."
        assert body["stream"] is False
        assert body["options"] == {"num_ctx": 8096}

    def test_error_status_is_remote_error(self) -> None:
        backend = _ollama(lambda request: httpx.Response(404, text="model not found"))
        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(backend.send(REQUEST))
        assert exc_info.value.status_code == 404

    def test_missing_response_field(self) -> None:
        backend = _ollama(lambda request: httpx.Response(200, json={"done": True}))
        with pytest.raises(RemoteError):
            asyncio.run(backend.send(REQUEST))

    def test_connection_error_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            asyncio.run(_ollama(handler).send(REQUEST))

    def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceTimeoutError):
            asyncio.run(_ollama(handler).send(REQUEST))

    def test_ping(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"models": []})

        asyncio.run(_ollama(handler).ping())
        assert paths == ["/api/tags"]

    def test_schema_is_sent_as_format(self) -> None:
        bodies: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"response": '{"topics": []}'})

        assert asyncio.run(_ollama(handler).send(STRUCTURED_REQUEST)) == '{"topics": []}'
        assert bodies[0]["format"] == SCHEMA

    def test_plain_request_has_no_format(self) -> None:
        bodies: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"response": "ok"})

        asyncio.run(_ollama(handler).send(REQUEST))
        assert "format" not in bodies[0]


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_client(**messages: Any) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(**messages)
    client.models.list = AsyncMock(return_value=[])
    return client


class TestAnthropicBackend:
    def test_send(self) -> None:
        response = SimpleNamespace(content=[TextBlock(type="text", text="Decisions: ship it.")])
        client = _anthropic_client(return_value=response)
        backend = AnthropicBackend("key", "claude-test", client=client)

        assert asyncio.run(backend.send(REQUEST)) == "Decisions: ship it."
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Summarize."
        assert kwargs["messages"] == [{"role": "user", "content": REQUEST.prompt}]

    def test_empty_content(self) -> None:
        client = _anthropic_client(return_value=SimpleNamespace(content=[]))
        with pytest.raises(RemoteError):
            asyncio.run(AnthropicBackend("key", "claude-test", client=client).send(REQUEST))

    def test_status_error(self) -> None:
        error = anthropic.APIStatusError(
            "overloaded", response=httpx.Response(529, request=_HTTP_REQUEST), body=None
        )
        client = _anthropic_client(side_effect=error)
        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(AnthropicBackend("key", "claude-test", client=client).send(REQUEST))
        assert exc_info.value.status_code == 529

    def test_connection_error(self) -> None:
        client = _anthropic_client(side_effect=anthropic.APIConnectionError(request=_HTTP_REQUEST))
        with pytest.raises(NetworkError):
            asyncio.run(AnthropicBackend("key", "claude-test", client=client).send(REQUEST))

    def test_schema_forces_tool_call(self) -> None:
        block = ToolUseBlock(
            type="tool_use", id="toolu_1", name=STRUCTURED_TOOL_NAME, input={"topics": []}
        )
        client = _anthropic_client(return_value=SimpleNamespace(content=[block]))
        backend = AnthropicBackend("key", "claude-test", client=client)

        assert json.loads(asyncio.run(backend.send(STRUCTURED_REQUEST))) == {"topics": []}
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tools"][0]["input_schema"] == SCHEMA
        assert kwargs["tool_choice"] == {"type": "tool", "name": STRUCTURED_TOOL_NAME}

    def test_schema_without_tool_call(self) -> None:
        response = SimpleNamespace(content=[TextBlock(type="text", text="Sorry.")])
        client = _anthropic_client(return_value=response)
        with pytest.raises(RemoteError):
            asyncio.run(
                AnthropicBackend("key", "claude-test", client=client).send(STRUCTURED_REQUEST)
            )


class TestBuildLlmBackend:
    def test_ollama(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path)
        backend = build_llm_backend(settings, ServiceConfig.for_llm(settings))
        assert isinstance(backend, OllamaBackend)
        assert backend.endpoint == "http://localhost:11434"

    def test_anthropic(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path,
            llm_provider="anthropic",
            llm_endpoint="https://api.anthropic.com",
            anthropic_api_key="sk-test",
        )
        backend = build_llm_backend(settings, ServiceConfig.for_llm(settings))
        assert isinstance(backend, AnthropicBackend)

    def test_anthropic_requires_key(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, llm_provider="anthropic", anthropic_api_key="")
        with pytest.raises(ConfigError):
            build_llm_backend(settings, ServiceConfig.for_llm(settings))

    def test_unknown_provider(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, llm_provider="gpt-local")
        with pytest.raises(ConfigError):
            build_llm_backend(settings, ServiceConfig.for_llm(settings))


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


def _openai_client(**create: Any) -> MagicMock:
    client = MagicMock()
    client.audio.transcriptions.create = AsyncMock(**create)
    client.models.list = AsyncMock(return_value=[])
    return client


class TestOpenAITranscriptionBackend:
    def test_segments(self) -> None:
        result = SimpleNamespace(
            segments=[
                SimpleNamespace(start=0.0, end=2.0, text=" Hello there."),
                SimpleNamespace(start=2.0, end=3.5, text="Hi.", speaker="B"),
            ]
        )
        client = _openai_client(return_value=result)
        backend = OpenAITranscriptionBackend("", "whisper-1", client=client)
        request = TranscriptionRequest(audio=b"RIFF", language="de", prompt="previous words")

        response = asyncio.run(backend.send(request))

        assert [(s.start, s.speaker, s.text) for s in response.segments] == [
            (0.0, "SPEAKER_00", "Hello there."),
            (2.0, "B", "Hi."),
        ]
        assert response.text == "Hello there. Hi."
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["response_format"] == "verbose_json"
        assert kwargs["language"] == "de"
        assert kwargs["prompt"] == "previous words"

    def test_text_only_response(self) -> None:
        client = _openai_client(return_value=SimpleNamespace(text="Just text.", duration=4.0))
        response = asyncio.run(
            OpenAITranscriptionBackend("", "whisper-1", client=client).send(
                TranscriptionRequest(audio=b"RIFF")
            )
        )
        assert len(response.segments) == 1
        assert response.segments[0].end == 4.0
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert "prompt" not in kwargs
        assert "language" not in kwargs

    def test_status_error(self) -> None:
        error = openai.APIStatusError(
            "bad audio", response=httpx.Response(400, request=_HTTP_REQUEST), body=None
        )
        client = _openai_client(side_effect=error)
        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(
                OpenAITranscriptionBackend("", "whisper-1", client=client).send(
                    TranscriptionRequest(audio=b"RIFF")
                )
            )
        assert exc_info.value.status_code == 400

    def test_timeout(self) -> None:
        client = _openai_client(side_effect=openai.APITimeoutError(request=_HTTP_REQUEST))
        with pytest.raises(ServiceTimeoutError):
            asyncio.run(
                OpenAITranscriptionBackend("", "whisper-1", client=client).send(
                    TranscriptionRequest(audio=b"RIFF")
                )
            )


def _assemblyai_transcript(**fields: Any) -> MagicMock:
    transcript = MagicMock()
    transcript.status = fields.pop("status", aai.TranscriptStatus.completed)
    transcript.utterances = fields.pop("utterances", [])
    transcript.error = fields.pop("error", None)
    return transcript


class TestAssemblyAIBackend:
    def test_utterances_are_scaled_to_seconds(self) -> None:
        transcript = _assemblyai_transcript(
            utterances=[
                SimpleNamespace(start=1500, end=3000, speaker="A", text="Hello."),
                SimpleNamespace(start=3000, end=4250, speaker="B", text=" Hi. "),
            ]
        )
        with patch("meeting_pipeline.services.transcription.aai.Transcriber") as transcriber:
            transcriber.return_value.transcribe.return_value = transcript
            backend = AssemblyAIBackend("aai-key", "universal-3-pro")
            response = asyncio.run(
                backend.send(TranscriptionRequest(audio=b"RIFF", language="de"))
            )

        assert response.segments == [
            Segment(1.5, 3.0, "A", "Hello."),
            Segment(3.0, 4.25, "B", "Hi."),
        ]
        _, kwargs = transcriber.return_value.transcribe.call_args
        assert kwargs["config"].speaker_labels is True
        assert kwargs["config"].language_code == "de"

    def test_failed_transcript_is_remote_error(self) -> None:
        transcript = _assemblyai_transcript(
            status=aai.TranscriptStatus.error, error="audio too short"
        )
        with patch("meeting_pipeline.services.transcription.aai.Transcriber") as transcriber:
            transcriber.return_value.transcribe.return_value = transcript
            with pytest.raises(RemoteError, match="audio too short"):
                asyncio.run(
                    AssemblyAIBackend("aai-key", "universal-3-pro").send(
                        TranscriptionRequest(audio=b"RIFF")
                    )
                )

    @pytest.mark.parametrize(
        ("raised", "expected"),
        [
            (aai.types.AssemblyAIError("invalid api key"), RemoteError),
            (httpx.ConnectError("connection refused"), NetworkError),
            (httpx.ReadTimeout("slow upload"), ServiceTimeoutError),
        ],
    )
    def test_sdk_errors_are_mapped(
        self, raised: Exception, expected: type[Exception]
    ) -> None:
        with patch("meeting_pipeline.services.transcription.aai.Transcriber") as transcriber:
            transcriber.return_value.transcribe.side_effect = raised
            with pytest.raises(expected):
                asyncio.run(
                    AssemblyAIBackend("aai-key", "universal-3-pro").send(
                        TranscriptionRequest(audio=b"RIFF")
                    )
                )

    def test_ping(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"transcripts": []})

        backend = AssemblyAIBackend(
            "aai-key", "universal-3-pro", transport=httpx.MockTransport(handler)
        )
        asyncio.run(backend.ping())
        assert seen[0].url.path == "/v2/transcript"
        assert seen[0].headers["authorization"] == "aai-key"

    def test_ping_rejected_key(self) -> None:
        backend = AssemblyAIBackend(
            "bad-key",
            "universal-3-pro",
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )
        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(backend.ping())
        assert exc_info.value.status_code == 401


class TestBuildTranscriptionBackend:
    def test_openai(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path)
        backend = build_transcription_backend(settings, ServiceConfig.for_transcription(settings))
        assert isinstance(backend, OpenAITranscriptionBackend)

    def test_assemblyai(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path, transcription_provider="assemblyai", assemblyai_api_key="aai-key"
        )
        backend = build_transcription_backend(settings, ServiceConfig.for_transcription(settings))
        assert isinstance(backend, AssemblyAIBackend)
        assert backend.speech_model == settings.assemblyai_speech_model

    def test_assemblyai_requires_key(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path, transcription_provider="assemblyai", assemblyai_api_key=""
        )
        with pytest.raises(ConfigError):
            build_transcription_backend(settings, ServiceConfig.for_transcription(settings))

    def test_unknown_provider(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, transcription_provider="deepgram")
        with pytest.raises(ConfigError):
            build_transcription_backend(settings, ServiceConfig.for_transcription(settings))
