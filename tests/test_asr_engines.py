"""Tests for the transcription engines, registry and multi-chunk client."""

import httpx
import pytest

from note_processor.asr.backend import BackendTranscriptionEngine
from note_processor.asr.client import TranscriptionClient
from note_processor.asr.interface import ChunkTranscript, TranscriptionEngine
from note_processor.asr.media import ensure_supported, media_type_for
from note_processor.asr.openai_whisper import OpenAIWhisperEngine
from note_processor.asr.registry import TRANSCRIPTION_ENGINES, get_transcription_engine
from note_processor.utils.errors import (
    ConfigurationError,
    EmptyTranscriptionError,
    JobLostError,
    PollTimeoutError,
    RemoteJobError,
    TransportError,
    UnsupportedMediaError,
)


@pytest.fixture
def chunk(tmp_path) -> str:
    path = tmp_path / "chunk.m4a"
    path.write_bytes(b"fake-audio")
    return str(path)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestMediaTypes:
    def test_known_extensions(self) -> None:
        assert media_type_for("a/b/memo.M4A") == "audio/mp4"
        assert media_type_for("part_000.mp3") == "audio/mpeg"

    def test_unknown_extension_rejected(self) -> None:
        with pytest.raises(UnsupportedMediaError, match=".txt"):
            media_type_for("notes.txt")

    def test_batch_rejected_if_any_unsupported(self) -> None:
        with pytest.raises(UnsupportedMediaError):
            ensure_supported(["a.mp3", "b.exe", "c.mp3"])


class TestRegistry:
    def test_registered_providers(self) -> None:
        assert set(TRANSCRIPTION_ENGINES) == {"openai", "backend"}

    def test_creates_openai_engine(self) -> None:
        engine = get_transcription_engine("openai", api_key="k", model="whisper-large")
        assert isinstance(engine, OpenAIWhisperEngine)
        assert engine.source == "openai:whisper-large"

    def test_creates_backend_engine_with_kwargs(self) -> None:
        engine = get_transcription_engine(
            "backend", base_urls="https://a.example", summarize=True
        )
        assert isinstance(engine, BackendTranscriptionEngine)
        assert engine.source == "backend:summarize"

    def test_unknown_provider(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown transcription provider"):
            get_transcription_engine("nonexistent")


class TestOpenAIWhisperEngine:
    @pytest.mark.asyncio
    async def test_posts_multipart_with_bearer(self, chunk: str) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = request.content
            return httpx.Response(200, json={"text": " hello world "})

        engine = OpenAIWhisperEngine(api_key="sk-test", base_url="https://stt.example/")
        async with _client(handler) as client:
            result = await engine.transcribe_file(client, chunk)

        assert result.text == " hello world "
        assert seen["url"] == "https://stt.example/v1/audio/transcriptions"
        assert seen["auth"] == "Bearer sk-test"
        assert b"whisper-1" in seen["body"]
        assert b"fake-audio" in seen["body"]

    @pytest.mark.asyncio
    async def test_transcript_field_fallback(self, chunk: str) -> None:
        engine = OpenAIWhisperEngine(api_key="k")
        async with _client(lambda r: httpx.Response(200, json={"transcript": "hi"})) as client:
            assert (await engine.transcribe_file(client, chunk)).text == "hi"

    @pytest.mark.asyncio
    async def test_plain_text_body(self, chunk: str) -> None:
        engine = OpenAIWhisperEngine(api_key="k")
        async with _client(lambda r: httpx.Response(200, text="raw words")) as client:
            assert (await engine.transcribe_file(client, chunk)).text == "raw words"

    @pytest.mark.asyncio
    async def test_missing_key(self, chunk: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        engine = OpenAIWhisperEngine()
        async with _client(lambda r: httpx.Response(200)) as client:
            with pytest.raises(ConfigurationError, match="openai_api_key_missing"):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_error_status(self, chunk: str) -> None:
        engine = OpenAIWhisperEngine(api_key="k")
        async with _client(lambda r: httpx.Response(500, text="overloaded")) as client:
            with pytest.raises(TransportError, match="openai_http_500") as exc_info:
                await engine.transcribe_file(client, chunk)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_415(self, chunk: str) -> None:
        engine = OpenAIWhisperEngine(api_key="k")
        async with _client(lambda r: httpx.Response(415)) as client:
            with pytest.raises(UnsupportedMediaError):
                await engine.transcribe_file(client, chunk)


class TestBackendTranscriptionEngine:
    def test_requires_base_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("BACKEND_BASE_URLS", raising=False)
        with pytest.raises(ValueError):
            BackendTranscriptionEngine()

    def test_reads_base_urls_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BACKEND_BASE_URLS", "https://a.example/, https://b.example")
        engine = BackendTranscriptionEngine()
        assert engine._base_urls == ["https://a.example", "https://b.example"]

    @pytest.mark.asyncio
    async def test_inline_response(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/transcribe"
            return httpx.Response(200, json={"text": "inline"})

        engine = BackendTranscriptionEngine("https://a.example", poll_interval=0)
        async with _client(handler) as client:
            result = await engine.transcribe_file(client, chunk)
        assert result == ChunkTranscript(text="inline")

    @pytest.mark.asyncio
    async def test_summarize_endpoint_carries_title(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/transcribe-and-summarize"
            return httpx.Response(
                200, json={"text": "t", "title": "Standup", "summary": "s"}
            )

        engine = BackendTranscriptionEngine("https://a.example", summarize=True)
        async with _client(handler) as client:
            result = await engine.transcribe_file(client, chunk)
        assert result.title == "Standup"
        assert result.summary == "s"

    @pytest.mark.asyncio
    async def test_accepted_job_is_polled_to_completion(self, chunk: str) -> None:
        polls = iter(
            [
                httpx.Response(200, json={"status": "queued", "progress": 0}),
                httpx.Response(503),
                httpx.Response(200, json={"status": "running", "progress": 50}),
                httpx.Response(200, json={"status": "done", "text": "from job"}),
            ]
        )
        progress: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j1"})
            assert request.url.path == "/api/jobs/j1"
            return next(polls)

        engine = BackendTranscriptionEngine(
            "https://a.example", poll_interval=0, on_job_progress=progress.append
        )
        async with _client(handler) as client:
            result = await engine.transcribe_file(client, chunk)

        assert result.text == "from job"
        assert progress == [0, 50]

    @pytest.mark.asyncio
    async def test_404_falls_through_to_next_candidate(self, chunk: str) -> None:
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "old.example":
                return httpx.Response(404)
            return httpx.Response(200, json={"text": "second"})

        engine = BackendTranscriptionEngine(["https://old.example", "https://new.example"])
        async with _client(handler) as client:
            result = await engine.transcribe_file(client, chunk)

        assert hosts == ["old.example", "new.example"]
        assert result.text == "second"

    @pytest.mark.asyncio
    async def test_polls_the_candidate_that_accepted(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "old.example":
                return httpx.Response(404)
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j9"})
            return httpx.Response(200, json={"status": "done", "text": "ok"})

        engine = BackendTranscriptionEngine(
            ["https://old.example", "https://new.example"], poll_interval=0
        )
        async with _client(handler) as client:
            assert (await engine.transcribe_file(client, chunk)).text == "ok"

    @pytest.mark.asyncio
    async def test_all_candidates_404(self, chunk: str) -> None:
        engine = BackendTranscriptionEngine(["https://a.example", "https://b.example"])
        async with _client(lambda r: httpx.Response(404)) as client:
            with pytest.raises(TransportError) as exc_info:
                await engine.transcribe_file(client, chunk)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_other_error_does_not_fall_through(self, chunk: str) -> None:
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(500, json={"error": "boom"})

        engine = BackendTranscriptionEngine(["https://a.example", "https://b.example"])
        async with _client(handler) as client:
            with pytest.raises(TransportError, match="boom"):
                await engine.transcribe_file(client, chunk)
        assert hosts == ["a.example"]

    @pytest.mark.asyncio
    async def test_415_is_unsupported_media(self, chunk: str) -> None:
        engine = BackendTranscriptionEngine("https://a.example")
        async with _client(lambda r: httpx.Response(415, json={"error": "bad type"})) as client:
            with pytest.raises(UnsupportedMediaError, match="bad type"):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        engine = BackendTranscriptionEngine("https://a.example")
        async with _client(handler) as client:
            with pytest.raises(TransportError, match="refused"):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_202_without_job_id(self, chunk: str) -> None:
        engine = BackendTranscriptionEngine("https://a.example")
        async with _client(lambda r: httpx.Response(202, json={})) as client:
            with pytest.raises(TransportError, match="jobId"):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_lost_job(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "gone"})
            return httpx.Response(404)

        engine = BackendTranscriptionEngine("https://a.example", poll_interval=0)
        async with _client(handler) as client:
            with pytest.raises(JobLostError):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_job_error_message_propagates(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j"})
            return httpx.Response(200, json={"status": "error", "error": "decoder crashed"})

        engine = BackendTranscriptionEngine("https://a.example", poll_interval=0)
        async with _client(handler) as client:
            with pytest.raises(RemoteJobError, match="decoder crashed"):
                await engine.transcribe_file(client, chunk)

    @pytest.mark.asyncio
    async def test_poll_bound(self, chunk: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "slow"})
            return httpx.Response(200, json={"status": "running"})

        engine = BackendTranscriptionEngine(
            "https://a.example", poll_interval=0, max_poll_attempts=3
        )
        async with _client(handler) as client:
            with pytest.raises(PollTimeoutError) as exc_info:
                await engine.transcribe_file(client, chunk)
        assert exc_info.value.job_id == "slow"


class FakeEngine(TranscriptionEngine):
    """Returns canned text per file name and records call order."""

    def __init__(self, texts: dict[str, str], title: str | None = None) -> None:
        self.texts = texts
        self.title = title
        self.calls: list[str] = []

    @property
    def source(self) -> str:
        return "fake"

    async def transcribe_file(self, client, audio_path):
        name = audio_path.rsplit("/", 1)[-1]
        self.calls.append(name)
        return ChunkTranscript(text=self.texts.get(name, ""), title=self.title)


class TestTranscriptionClient:
    @pytest.mark.asyncio
    async def test_joins_chunks_in_order(self) -> None:
        engine = FakeEngine({"a.mp3": "a", "b.mp3": " b ", "c.mp3": "c"})
        progress: list[int] = []
        async with httpx.AsyncClient() as http_client:
            client = TranscriptionClient(engine, http_client=http_client)
            result = await client.transcribe(
                ["/w/a.mp3", "/w/b.mp3", "/w/c.mp3"], on_progress=progress.append
            )

        assert result.text == "a\nb\nc"
        assert result.chunk_count == 3
        assert result.source == "fake"
        assert engine.calls == ["a.mp3", "b.mp3", "c.mp3"]
        assert progress == [33, 66, 100]

    @pytest.mark.asyncio
    async def test_blank_chunks_are_skipped(self) -> None:
        engine = FakeEngine({"a.mp3": "a", "b.mp3": "   ", "c.mp3": "c"})
        result = await TranscriptionClient(engine).transcribe(
            ["/w/a.mp3", "/w/b.mp3", "/w/c.mp3"]
        )
        assert result.text == "a\nc"

    @pytest.mark.asyncio
    async def test_all_empty_raises(self) -> None:
        engine = FakeEngine({})
        with pytest.raises(EmptyTranscriptionError) as exc_info:
            await TranscriptionClient(engine).transcribe(["/w/a.mp3", "/w/b.mp3"])
        assert exc_info.value.error_label == "backend_empty_output"

    @pytest.mark.asyncio
    async def test_unsupported_type_rejected_before_any_call(self) -> None:
        engine = FakeEngine({"a.mp3": "a"})
        with pytest.raises(UnsupportedMediaError):
            await TranscriptionClient(engine).transcribe(["/w/a.mp3", "/w/notes.txt"])
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_title_only_kept_for_single_chunk(self) -> None:
        engine = FakeEngine({"a.m4a": "a", "b.m4a": "b"}, title="T")
        client = TranscriptionClient(engine)

        single = await client.transcribe(["/w/a.m4a"])
        multi = await client.transcribe(["/w/a.m4a", "/w/b.m4a"])

        assert single.title == "T"
        assert multi.title is None

