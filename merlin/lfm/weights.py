"""Acquisition of the three ONNX graphs and their external weight shards.

Each graph lives at ``onnx/{stem}{_quant}.onnx`` relative to the model path,
with its weights split across ``.onnx_data``, ``.onnx_data_1``, ... shards.
Shards at or below the large-file threshold are fetched into memory; larger
shards are streamed to disk and handed to ONNX Runtime as read-only memory
maps, so no multi-GB body is ever materialised in process memory.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from merlin.artifacts import LARGE_FILE_THRESHOLD, Downloader, RemoteFile
from merlin.config import MiB, QuantizationConfig
from merlin.errors import GraphLoadError, MerlinError, RuntimeNotLoadedError
from merlin.model_download import ModelLocation


_LOGGER = logging.getLogger(__name__)

EMBED_TEXT = "embed_tokens"
EMBED_IMAGES = "embed_images"
DECODER = "decoder"

# Shard counts for graphs split over more than one external data file.
EXTERNAL_DATA_FILE_COUNTS: Dict[str, int] = {
    "decoder": 2,
    "decoder_fp16": 2,
}

_ORT_DTYPES: Dict[str, np.dtype] = {
    "tensor(float)": np.dtype(np.float32),
    "tensor(float16)": np.dtype(np.float16),
    "tensor(double)": np.dtype(np.float64),
    "tensor(int64)": np.dtype(np.int64),
    "tensor(int32)": np.dtype(np.int32),
    "tensor(bool)": np.dtype(np.bool_),
}


class ProgressEvent(NamedTuple):
    status: str
    progress: int
    file: str


ProgressCallback = Callable[[ProgressEvent], None]

ExternalData = List[Tuple[str, np.ndarray]]
SessionFactory = Callable[[str, bytes, ExternalData, Sequence[str]], object]


def graph_file_stem(name: str, quant: Optional[str]) -> str:
    return f"{name}_{quant}" if quant else name


def shard_names(stem: str) -> List[str]:
    count = max(1, EXTERNAL_DATA_FILE_COUNTS.get(stem, 1))
    return [f"{stem}.onnx_data"] + [f"{stem}.onnx_data_{i}" for i in range(1, count)]


def execution_providers(
    device: str, available: Optional[Sequence[str]] = None
) -> List[str]:
    """Ordered providers for ``device``, restricted to those the build ships."""

    if device == "gpu":
        requested = ["CUDAExecutionProvider", "CPUExecutionProvider"]
    elif device == "cpu":
        requested = ["CPUExecutionProvider"]
    else:
        raise ValueError(f"device must be 'gpu' or 'cpu', got {device!r}")
    if available is None:
        available = ort.get_available_providers()
    providers = [p for p in requested if p in available]
    if device == "gpu" and "CUDAExecutionProvider" not in providers:
        _LOGGER.warning("CUDAExecutionProvider unavailable; falling back to CPU")
    return providers or ["CPUExecutionProvider"]


def describe_load_error(exc: BaseException) -> str:
    """Human-readable message for a session construction failure.

    Some runtime builds surface bare integer status codes; those are turned
    into a sentence that points at the likely cause.
    """

    code = exc.args[0] if len(exc.args) == 1 else None
    if isinstance(code, int) and not isinstance(code, bool):
        return (
            f"ONNX Runtime error code: {code}. "
            "This may indicate a GPU memory or compatibility issue."
        )
    return str(exc) or type(exc).__name__


def create_session(
    graph: str,
    model: bytes,
    external_data: ExternalData,
    providers: Sequence[str],
) -> ort.InferenceSession:
    options = ort.SessionOptions()
    options.log_severity_level = 3
    if external_data:
        names = [name for name, _ in external_data]
        buffers = [buffer for _, buffer in external_data]
        options.add_external_initializers_from_files_in_memory(
            names, buffers, [int(buffer.nbytes) for buffer in buffers]
        )
    return ort.InferenceSession(model, sess_options=options, providers=list(providers))


class GraphHandle:
    """A loaded computation graph with its declared inputs and outputs."""

    def __init__(
        self,
        name: str,
        session,
        buffers: Sequence[np.ndarray] = (),
        sources: Sequence[str] = (),
    ) -> None:
        self.name = name
        self._session = session
        # The runtime reads external initializers lazily; keep them alive.
        self._buffers = list(buffers)
        # Files the graph was built from, model first.
        self.sources: List[str] = list(sources)
        self._input_types = {arg.name: arg.type for arg in session.get_inputs()}
        self.input_names: List[str] = list(self._input_types)
        self.output_names: List[str] = [arg.name for arg in session.get_outputs()]

    @property
    def released(self) -> bool:
        return self._session is None

    def input_dtype(self, name: str) -> np.dtype:
        try:
            return _ORT_DTYPES[self._input_types[name]]
        except KeyError:
            raise KeyError(f"{self.name} has no input {name!r} of a known type") from None

    def run(
        self,
        feeds: Mapping[str, np.ndarray],
        run_options: Optional[ort.RunOptions] = None,
        output_names: Optional[Sequence[str]] = None,
    ) -> Dict[str, np.ndarray]:
        if self._session is None:
            raise RuntimeNotLoadedError(f"Graph {self.name} has been released")
        names = list(output_names or self.output_names)
        results = self._session.run(names, dict(feeds), run_options)
        return dict(zip(names, results))

    def release(self) -> None:
        """Drop the session and its weight buffers. Safe to call twice."""

        if self._session is None:
            return
        self._session = None
        self._buffers = []
        _LOGGER.debug("Released graph %s", self.name)


class LoadedGraphs(NamedTuple):
    embed_text: GraphHandle
    embed_images: GraphHandle
    decoder: GraphHandle


class GraphLoader:
    """Downloads graphs and shards through the artifact cache and builds sessions."""

    def __init__(
        self,
        downloader: Downloader,
        *,
        session_factory: Optional[SessionFactory] = None,
        large_file_threshold: int = LARGE_FILE_THRESHOLD,
        available_providers: Optional[Sequence[str]] = None,
    ) -> None:
        self._downloader = downloader
        self._session_factory = session_factory or create_session
        self._large_file_threshold = large_file_threshold
        self._available_providers = available_providers

    def external_data_files(self, location: ModelLocation, stem: str) -> List[RemoteFile]:
        """Probe the shards expected for ``stem``.

        A missing first shard means the graph has no external data. Later
        shards that are missing are skipped with a warning.
        """

        files: List[RemoteFile] = []
        for idx, shard in enumerate(shard_names(stem)):
            probed = self._downloader.probe(location.url_for(f"onnx/{shard}"))
            if probed is None:
                if idx == 0:
                    return []
                _LOGGER.warning("Expected shard %s not found", shard)
                continue
            files.append(probed)
        return files

    def load_graph(
        self,
        location: ModelLocation,
        name: str,
        quant: Optional[str],
        providers: Sequence[str],
        report: Callable[[str], None],
    ) -> GraphHandle:
        stem = graph_file_stem(name, quant)
        model_file = f"{stem}.onnx"
        report(model_file)

        def file_progress(label: str) -> Callable[[int, int], None]:
            def _progress(received: int, total: int) -> None:
                report(f"{label}: {received // MiB} / {total // MiB} MB")

            return _progress

        try:
            shards = self.external_data_files(location, stem)
            total = sum(shard.size or 0 for shard in shards)
            _LOGGER.info(
                "Found %d external data file(s) for %s, total %.1f MB",
                len(shards),
                stem,
                total / MiB,
            )
            model_url = location.url_for(f"onnx/{model_file}")
            model = self._downloader.fetch(model_url, file_progress(model_file))

            external: ExternalData = []
            for shard in shards:
                shard_name = shard.url.rsplit("/", 1)[-1]
                buffer = self._fetch_shard(shard, shard_name, file_progress, report, stem)
                external.append((shard_name, buffer))
        except GraphLoadError:
            raise
        except (MerlinError, OSError) as exc:
            raise GraphLoadError(stem, str(exc)) from exc

        report(f"{stem} (initializing)")
        try:
            session = self._session_factory(stem, model, external, providers)
        except Exception as exc:
            raise GraphLoadError(stem, describe_load_error(exc)) from exc
        _LOGGER.info("Session created for %s", stem)
        return GraphHandle(
            name,
            session,
            [buffer for _, buffer in external],
            sources=[model_url] + [shard.url for shard in shards],
        )

    def _fetch_shard(
        self,
        shard: RemoteFile,
        shard_name: str,
        file_progress: Callable[[str], Callable[[int, int], None]],
        report: Callable[[str], None],
        stem: str,
    ) -> np.ndarray:
        if shard.size is not None and shard.size > self._large_file_threshold:
            _LOGGER.info(
                "Large shard %s (%.2f GB), streaming to disk",
                shard_name,
                shard.size / (1024 * MiB),
            )
            report(f"{stem} (streaming {shard_name}...)")
            path = self._downloader.fetch_to_path(
                shard.url, file_progress(shard_name), expected_size=shard.size
            )
            return np.memmap(path, dtype=np.uint8, mode="r")
        body = self._downloader.fetch(shard.url, file_progress(shard_name))
        return np.frombuffer(body, dtype=np.uint8)

    def load_graphs(
        self,
        location: ModelLocation,
        *,
        device: str = "gpu",
        quantization: QuantizationConfig = QuantizationConfig(),
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LoadedGraphs:
        """Load the text embedder, image embedder and decoder, one after another.

        Graphs already loaded are released if a later one fails.
        """

        providers = execution_providers(device, self._available_providers)
        _LOGGER.info("Using execution providers %s", providers)

        plan = (
            (EMBED_TEXT, quantization.embed_tokens, 20),
            (EMBED_IMAGES, quantization.embed_images, 40),
            (DECODER, quantization.decoder, 60),
        )
        handles: List[GraphHandle] = []
        try:
            for name, quant, progress in plan:

                def report(file: str, _progress: int = progress) -> None:
                    if progress_callback is not None:
                        progress_callback(ProgressEvent("loading", _progress, file))

                handles.append(self.load_graph(location, name, quant, providers, report))
        except BaseException:
            for handle in handles:
                handle.release()
            raise
        return LoadedGraphs(*handles)


__all__ = [
    "DECODER",
    "EMBED_IMAGES",
    "EMBED_TEXT",
    "EXTERNAL_DATA_FILE_COUNTS",
    "GraphHandle",
    "GraphLoader",
    "LoadedGraphs",
    "ProgressCallback",
    "ProgressEvent",
    "create_session",
    "describe_load_error",
    "execution_providers",
    "graph_file_stem",
    "shard_names",
]
