"""End-to-end tests for the runtime lifecycle and generation path."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
import pyvips

from conftest import WORDS, FakeSession, ScriptedDecoder, image_embed_session, text_embed_session
from merlin.config import RuntimeConfig
from merlin.engine import VisionLanguageRuntime
from merlin import engine as engine_module
from merlin.model_download import DEFAULT_MODEL_ID, ModelSpec, lookup_model
from merlin.errors import (
    GraphLoadError,
    ImageLoadError,
    ImageTokenMismatchError,
    RuntimeNotLoadedError,
    TransportError,
)


HELLO, WORLD = WORDS.index("hello"), WORDS.index("world")
EOS = len(WORDS) + 2


class SessionFactory:
    """Builds fake sessions for each graph and keeps them for inspection."""

    def __init__(self, script=(HELLO, WORLD, EOS), fail_on: str = "") -> None:
        self.decoder = ScriptedDecoder(list(script))
        self.fail_on = fail_on
        self.sessions: Dict[str, FakeSession] = {}

    def __call__(self, stem, model, external, providers):
        if self.fail_on and stem.startswith(self.fail_on):
            raise RuntimeError(6)
        if stem.startswith("embed_tokens"):
            session = text_embed_session()
        elif stem.startswith("embed_images"):
            session = image_embed_session(tokens_per_tile=4, fill=100.0)
        else:
            session = self.decoder.session
        self.sessions[stem.split("_q")[0].split("_fp")[0]] = session
        return session


def data_url(width: int = 64, height: int = 64) -> str:
    image = (pyvips.Image.black(width, height, bands=3) + [40, 80, 120]).cast("uchar")
    return "data:image/png;base64," + base64.b64encode(image.write_to_buffer(".png")).decode()


def serve_directory(root: Path):
    """An httpx handler serving ``root`` under any single leading path segment."""

    def handler(request: httpx.Request) -> httpx.Response:
        local = root / request.url.path.lstrip("/").split("/", 1)[1]
        if not local.is_file():
            return httpx.Response(404)
        body = local.read_bytes()
        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-length": str(len(body))})
        return httpx.Response(200, content=body)

    return handler


def make_runtime(cache_dir: Path, factory: SessionFactory, **config) -> VisionLanguageRuntime:
    return VisionLanguageRuntime(
        RuntimeConfig(cache_dir=cache_dir, device="cpu", **config),
        session_factory=factory,
        available_providers=["CPUExecutionProvider"],
    )


@pytest.fixture
def factory() -> SessionFactory:
    return SessionFactory()


@pytest.fixture
def runtime(model_dir: Path, cache_dir: Path, factory: SessionFactory):
    rt = make_runtime(cache_dir, factory)
    rt.load(str(model_dir))
    yield rt
    rt.close()


def user(text: str) -> List[Dict[str, str]]:
    return [{"role": "user", "content": text}]


class TestLoad:
    """Bringing a model up and down."""

    def test_load_reports_progress(self, model_dir: Path, cache_dir: Path, factory) -> None:
        events = []
        with make_runtime(cache_dir, factory) as rt:
            rt.load(str(model_dir), progress_callback=events.append)
            assert rt.is_loaded
            assert rt.model_config.hidden_size == 8
            assert rt.model_config.special_tokens.eos == EOS

        progress = [event.progress for event in events]
        assert progress[:2] == [0, 10]
        assert progress[-1] == 100
        assert events[-1].status == "done"
        assert {20, 40, 60} <= set(progress)

    def test_load_prunes_stale_cache_versions(self, model_dir: Path, cache_dir: Path, factory) -> None:
        (cache_dir / "merlin-models-v0").mkdir(parents=True)
        with make_runtime(cache_dir, factory) as rt:
            rt.load(str(model_dir))
        assert not (cache_dir / "merlin-models-v0").exists()

    def test_failed_load_leaves_runtime_unloaded(self, model_dir: Path, cache_dir: Path) -> None:
        with make_runtime(cache_dir, SessionFactory(fail_on="decoder")) as rt:
            with pytest.raises(GraphLoadError):
                rt.load(str(model_dir))
            assert not rt.is_loaded
            with pytest.raises(RuntimeNotLoadedError):
                rt.generate(user("hello"))

    def test_missing_config_fails_load(self, model_dir: Path, cache_dir: Path, factory) -> None:
        (model_dir / "config.json").unlink()
        with make_runtime(cache_dir, factory) as rt:
            with pytest.raises(TransportError):
                rt.load(str(model_dir))
            assert not rt.is_loaded
            assert rt.model_config is None

    def test_dispose_continues_past_release_errors(self, runtime: VisionLanguageRuntime) -> None:
        graphs = runtime._graphs

        def broken_release() -> None:
            raise RuntimeError("device lost")

        graphs.embed_images.release = broken_release

        failed = runtime.dispose()

        assert failed == ["embed_images"]
        assert graphs.embed_text.released
        assert graphs.decoder.released
        assert not runtime.is_loaded

    def test_dispose_twice_is_harmless(self, runtime: VisionLanguageRuntime) -> None:
        assert runtime.dispose() == []
        assert runtime.dispose() == []

    def test_reload_replaces_model(self, runtime: VisionLanguageRuntime, model_dir: Path) -> None:
        first = runtime._graphs
        runtime.load(str(model_dir))
        assert first.decoder.released
        assert runtime.is_loaded

    def test_local_model_has_no_uncached_files(self, runtime: VisionLanguageRuntime) -> None:
        assert runtime.uncached_files == []

    def test_files_the_cache_refused_are_reported(self, model_dir: Path, cache_dir: Path, factory, caplog) -> None:
        """A quota too small for the model leaves every file to be fetched again."""
        client = httpx.Client(transport=httpx.MockTransport(serve_directory(model_dir)))
        rt = VisionLanguageRuntime(
            RuntimeConfig(cache_dir=cache_dir, device="cpu", max_cache_bytes=1),
            client=client,
            session_factory=factory,
            available_providers=["CPUExecutionProvider"],
        )
        with rt, caplog.at_level("WARNING"):
            rt.load("https://models.example.com/model")
            assert rt.generate(user("hello")) == "hello world"

        names = [url.rsplit("/", 1)[-1] for url in rt.uncached_files]
        assert {"tokenizer.json", "config.json", "decoder_q4.onnx", "decoder_q4.onnx_data"} <= set(names)
        assert "not in the artifact cache" in caplog.text

    def test_remote_files_are_cached(self, model_dir: Path, cache_dir: Path, factory) -> None:
        client = httpx.Client(transport=httpx.MockTransport(serve_directory(model_dir)))
        rt = VisionLanguageRuntime(
            RuntimeConfig(cache_dir=cache_dir, device="cpu"),
            client=client,
            session_factory=factory,
            available_providers=["CPUExecutionProvider"],
        )
        with rt:
            rt.load("https://models.example.com/model")
            sources = rt._graphs.decoder.sources

        assert [url.rsplit("/", 1)[-1] for url in sources] == ["decoder_q4.onnx", "decoder_q4.onnx_data"]
        assert all(rt.cache.contains(url) for url in sources)


class TestModelRegistry:
    """Defaults carried by registered model ids."""

    @pytest.fixture
    def registered(self, model_dir: Path, monkeypatch) -> ModelSpec:
        (model_dir / "onnx" / "decoder_q8.onnx").write_bytes(b"graph:decoder_q8")
        spec = ModelSpec(id="tiny", label="Tiny Test Model", repo_id="tests/tiny", quantization="q8")
        monkeypatch.setattr(
            engine_module,
            "lookup_model",
            lambda model: spec if model == str(model_dir) else None,
        )
        return spec

    def test_known_ids(self) -> None:
        spec = lookup_model(DEFAULT_MODEL_ID)
        assert spec is not None and spec.quantization == "q4"
        assert lookup_model("./somewhere/else") is None

    def test_registered_quantization_is_the_default(
        self, registered, model_dir: Path, cache_dir: Path, factory, caplog
    ) -> None:
        with make_runtime(cache_dir, factory) as rt, caplog.at_level("INFO"):
            rt.load(str(model_dir))
            decoder = Path(rt._graphs.decoder.sources[0]).name
        assert decoder == "decoder_q8.onnx"
        assert "Loading Tiny Test Model" in caplog.text

    def test_configured_quantization_overrides_registry(
        self, registered, model_dir: Path, cache_dir: Path, factory
    ) -> None:
        with make_runtime(cache_dir, factory, quantization="q4") as rt:
            rt.load(str(model_dir))
            assert Path(rt._graphs.decoder.sources[0]).name == "decoder_q4.onnx"

    def test_explicit_quantization_wins(self, registered, model_dir: Path, cache_dir: Path, factory) -> None:
        with make_runtime(cache_dir, factory, quantization="q8") as rt:
            rt.load(str(model_dir), quantization="q4")
            assert Path(rt._graphs.decoder.sources[0]).name == "decoder_q4.onnx"


class TestGenerate:
    """Text and image generation through the full pipeline."""

    def test_text_only(self, runtime: VisionLanguageRuntime) -> None:
        assert runtime.generate(user("hello world")) == "hello world"

    def test_result_carries_metadata(self, runtime: VisionLanguageRuntime) -> None:
        fragments = []
        result = runtime.generate_result(
            [{"role": "system", "content": "be brief"}, *user("hello")],
            on_token=lambda text, token_id: fragments.append(token_id),
        )
        assert result.finish_reason == "eos"
        assert result.tokens == [HELLO, WORLD, EOS]
        assert fragments == [HELLO, WORLD, EOS]
        assert result.metrics.output_tokens == 3

    def test_max_new_tokens(self, runtime: VisionLanguageRuntime) -> None:
        result = runtime.generate_result(user("hello"), max_new_tokens=1)
        assert result.tokens == [HELLO]
        assert result.finish_reason == "length"

    def test_image_rows_replace_markers(self, runtime, factory: SessionFactory) -> None:
        runtime.generate(user("describe this"), images=[data_url()])

        embeds = factory.decoder.calls[0]["inputs_embeds"][0, :, 0]
        assert int((embeds == 100.0).sum()) == 4

    def test_image_cache_reused_until_cleared(self, runtime, factory: SessionFactory) -> None:
        image = data_url()
        runtime.generate(user("describe this"), images=[image])
        runtime.generate(user("describe this"), images=[image])
        assert len(factory.sessions["embed_images"].calls) == 1

        runtime.clear_image_cache()
        runtime.generate(user("describe this"), images=[image])
        assert len(factory.sessions["embed_images"].calls) == 2

    def test_message_image_map(self, runtime, factory: SessionFactory) -> None:
        image = data_url()
        messages = [*user("hello"), {"role": "assistant", "content": "hi"}, *user("describe this")]

        runtime.generate(messages, message_image_map={2: [image]})

        embeds = factory.decoder.calls[0]["inputs_embeds"][0, :, 0]
        assert int((embeds == 100.0).sum()) == 4

    def test_images_must_match_map(self, runtime) -> None:
        with pytest.raises(ValueError):
            runtime.generate(user("hello"), images=["a.png"], message_image_map={0: ["b.png"]})

    def test_images_need_a_user_turn(self, runtime) -> None:
        with pytest.raises(ValueError):
            runtime.generate([{"role": "system", "content": "x"}], images=[data_url()])

    def test_empty_messages_rejected(self, runtime) -> None:
        with pytest.raises(ValueError):
            runtime.generate([])

    def test_zero_max_new_tokens_rejected(self, runtime) -> None:
        with pytest.raises(ValueError, match="positive"):
            runtime.generate(user("hello"), max_new_tokens=0)

    def test_images_cannot_map_to_assistant_turn(self, runtime) -> None:
        messages = [*user("hello"), {"role": "assistant", "content": "hi"}]
        with pytest.raises(ValueError, match="user turn"):
            runtime.generate(messages, message_image_map={1: [data_url()]})

    def test_marker_in_system_turn_is_inert(self, runtime, factory: SessionFactory, caplog) -> None:
        """Only the attached image contributes image rows."""
        messages = [{"role": "system", "content": "Reply about <image> inputs"}, *user("describe this")]

        with caplog.at_level("WARNING"):
            assert runtime.generate(messages, images=[data_url()]) == "hello world"

        embeds = factory.decoder.calls[0]["inputs_embeds"][0, :, 0]
        assert int((embeds == 100.0).sum()) == 4
        assert "mismatch" not in caplog.text

    def test_failed_decode_leaves_model_usable(self, runtime, factory: SessionFactory, monkeypatch) -> None:
        session = factory.decoder.session
        healthy = session.run
        failures = ["device busy"]

        def run_once_failing(names, feeds, run_options=None):
            if failures:
                raise RuntimeError(failures.pop())
            return healthy(names, feeds, run_options)

        monkeypatch.setattr(session, "run", run_once_failing)

        with pytest.raises(RuntimeError, match="device busy"):
            runtime.generate(user("hello"))
        assert runtime.is_loaded
        assert runtime.generate(user("hello")) == "hello world"

    def test_unreadable_image_leaves_model_usable(self, runtime, tmp_path: Path) -> None:
        with pytest.raises(ImageLoadError):
            runtime.generate(user("describe this"), images=[str(tmp_path / "missing.png")])
        assert runtime.is_loaded
        assert runtime.generate(user("hello")) == "hello world"

    def test_strict_image_tokens(self, model_dir: Path, cache_dir: Path) -> None:
        """A user-typed marker cannot reach the prompt, so counts still agree."""
        with make_runtime(cache_dir, SessionFactory(), strict_image_tokens=True) as rt:
            rt.load(str(model_dir))
            assert rt.generate(user("<image> hello"), images=[data_url()]) == "hello world"

    def test_strict_mismatch_raises(self, model_dir: Path, cache_dir: Path, monkeypatch) -> None:
        monkeypatch.setattr(engine_module, "expand_image_tokens", lambda ids, counts, special: list(ids))
        with make_runtime(cache_dir, SessionFactory(), strict_image_tokens=True) as rt:
            rt.load(str(model_dir))
            with pytest.raises(ImageTokenMismatchError):
                rt.generate(user("hello"), images=[data_url()])


class TestCaches:
    """Model and image cache management."""

    def test_model_cache_info_and_clear(self, cache_dir: Path, factory) -> None:
        with make_runtime(cache_dir, factory) as rt:
            assert rt.clear_model_cache() is False
            rt.cache.put("https://example.com/model/config.json", b"{}")
            assert rt.get_cache_info().used >= 2
            assert rt.clear_model_cache() is True
            assert rt.get_cache_info().used == 0

    def test_clear_image_cache_when_unloaded(self, cache_dir: Path, factory) -> None:
        with make_runtime(cache_dir, factory) as rt:
            rt.clear_image_cache()
