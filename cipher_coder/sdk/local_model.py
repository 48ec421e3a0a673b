"""
Local model backends.

The dispatcher only needs a synchronous ``predict(prompt) -> text``
capability; real numeric execution lives behind this interface. Model files
on disk are described by ModelMetadata, which also drives admission control.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..core.errors import ConfigurationError
from ..core.resources import ModelFootprint

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("gguf", "ggml", "bin", "safetensors", "onnx")


@dataclass(frozen=True)
class ModelMetadata:
    """Description of a local model file."""
    name: str
    type: str
    format: str
    size_bytes: int
    path: str

    @property
    def footprint(self) -> ModelFootprint:
        return ModelFootprint(size_bytes=self.size_bytes, name=self.name)


def _find_model_file(directory: Path) -> Path:
    candidates = [
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lstrip(".").lower() in SUPPORTED_FORMATS
    ]
    if not candidates:
        raise ConfigurationError(f"No supported model files found in {directory}")
    # Sharded or auxiliary files are smaller than the main weights
    return max(candidates, key=lambda p: p.stat().st_size)


def load_model_metadata(path: str) -> ModelMetadata:
    """Inspect a model file or directory.

    A directory resolves to its largest supported model file. The model type
    is the first dash-separated part of the file name
    (``llama-7b.gguf`` -> ``llama``).

    Args:
        path: Model file or directory

    Returns:
        ModelMetadata for the model file

    Raises:
        ConfigurationError: If the path is missing or holds no supported model
    """
    model_path = Path(path).expanduser()
    if not model_path.exists():
        raise ConfigurationError(f"Model path not found: {path}")

    model_file = _find_model_file(model_path) if model_path.is_dir() else model_path
    model_format = model_file.suffix.lstrip(".").lower()
    if model_format not in SUPPORTED_FORMATS:
        raise ConfigurationError(
            f"Unsupported model format '{model_format or model_file.name}'. "
            f"Supported formats: {', '.join(SUPPORTED_FORMATS)}"
        )

    name = model_file.stem
    metadata = ModelMetadata(
        name=name,
        type=name.split("-")[0].lower() or "unknown",
        format=model_format,
        size_bytes=model_file.stat().st_size,
        path=str(model_file),
    )
    logger.info(
        "Found %s model %s (%s, %.1f MB)",
        metadata.type, metadata.name, metadata.format, metadata.size_bytes / (1024 * 1024)
    )
    return metadata


class LocalModelBackend(ABC):
    """A loaded local model.

    ``predict`` is blocking; callers run it in a worker thread.
    """

    def __init__(self, metadata: ModelMetadata):
        self.metadata = metadata

    @property
    def model_type(self) -> str:
        return self.metadata.type

    @abstractmethod
    def predict(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Generate text for a fully formatted prompt."""

    def close(self) -> None:
        """Free model resources. Default implementation does nothing."""


class StubLocalModel(LocalModelBackend):
    """Deterministic stand-in used until a real runtime is wired in."""

    def predict(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        preview = " ".join(prompt.split()[:8])
        return (
            f"[{self.metadata.name}] mock completion for: {preview}\n"
            "```python\n"
            "def generated():\n"
            "    return None\n"
            "```"
        )


def load_local_model(path: str) -> LocalModelBackend:
    """Load the model at ``path`` into the default backend.

    Raises:
        ConfigurationError: If the path is missing or unsupported
    """
    metadata = load_model_metadata(path)
    logger.info("Loading local model from %s", metadata.path)
    return StubLocalModel(metadata)
