"""Model manager: download, load and cache ONNX classifier models.

Handles downloading models and label files from HuggingFace and creating
one cached ONNX InferenceSession per model. Sessions are read-only once
created and shared by every classification call.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from imagevision.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels for a model, indexed by output position."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LabelSpec:
    """Where to find the id-to-label mapping for a model's outputs."""

    repo_id: str
    filename: str
    repo_type: str


IMAGENET_LABELS = LabelSpec(
    repo_id="huggingface/label-files",
    filename="imagenet-1k-id2label.json",
    repo_type="dataset",
)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    input_size: int
    labels: LabelSpec
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "squeezenet1.1": ModelSpec(
        name="squeezenet1.1",
        repo_id="onnxmodelzoo/squeezenet1.1-7",
        filename="squeezenet1.1-7.onnx",
        subfolder=None,
        input_size=224,
        labels=IMAGENET_LABELS,
        license="Apache-2.0",
    ),
    "mobilenetv2": ModelSpec(
        name="mobilenetv2",
        repo_id="onnxmodelzoo/mobilenetv2-12",
        filename="mobilenetv2-12.onnx",
        subfolder=None,
        input_size=224,
        labels=IMAGENET_LABELS,
        license="Apache-2.0",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions and their labels."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._labels: dict[str, list[str]] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally.

        An explicit ``model_path`` setting short-circuits the download for
        the configured classifier.
        """
        spec = self.get_spec(model_name)

        if self._settings.model_path and model_name == self._settings.classifier_model:
            return Path(self._settings.model_path)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_labels(self, model_name: str) -> list[str]:
        """Return the model's class labels ordered by output index.

        Looks for the labels file in this order: the ``labels_path`` setting
        (configured classifier only), ``models_dir``, then HuggingFace.
        """
        with self._lock:
            cached = self._labels.get(model_name)
            if cached is not None:
                return cached

        path = self._labels_file(model_name)
        with open(path, encoding="utf-8") as fh:
            id2label: dict[str, str] = json.load(fh)
        labels = [id2label[str(i)] for i in range(len(id2label))]

        with self._lock:
            self._labels[model_name] = labels
        logger.info("Loaded %d labels for %s", len(labels), model_name)
        return labels

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    @staticmethod
    def get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    # -- Internal -----------------------------------------------------------

    def _labels_file(self, model_name: str) -> Path:
        spec = self.get_spec(model_name)

        if self._settings.labels_path and model_name == self._settings.classifier_model:
            return Path(self._settings.labels_path)

        local = self._models_dir / spec.labels.filename
        if local.exists():
            return local

        downloaded = hf_hub_download(
            repo_id=spec.labels.repo_id,
            filename=spec.labels.filename,
            repo_type=spec.labels.repo_type,
            local_dir=str(self._models_dir),
        )
        logger.info("Downloaded labels for %s to %s", model_name, downloaded)
        return Path(downloaded)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
