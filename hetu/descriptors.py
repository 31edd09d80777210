"""
Model Descriptors

Immutable records describing model files found on disk.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ModelFormat(str, Enum):
    """On-disk model file format."""
    GGUF = "gguf"
    ONNX = "onnx"


class ModelCategory(str, Enum):
    """What a model is used for."""
    LANGUAGE = "language"
    SPEECH_RECOGNITION = "speech_recognition"


class InferenceFramework(str, Enum):
    """Runtime a backend should use to execute a model."""
    LLAMA_CPP = "llama_cpp"
    ONNX = "onnx"


FRAMEWORK_FOR_CATEGORY = {
    ModelCategory.LANGUAGE: InferenceFramework.LLAMA_CPP,
    ModelCategory.SPEECH_RECOGNITION: InferenceFramework.ONNX,
}


@dataclass(frozen=True)
class ModelDescriptor:
    """A model file discovered on disk. Identity is the path."""
    name: str
    path: str
    format: ModelFormat
    category: ModelCategory
    size_bytes: int

    @property
    def size_formatted(self) -> str:
        mb = self.size_bytes / (1024.0 * 1024.0)
        gb = mb / 1024.0
        if gb >= 1.0:
            return f"{gb:.2f} GB"
        return f"{mb:.0f} MB"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "format": self.format.value,
            "category": self.category.value,
            "size_bytes": self.size_bytes,
            "size_formatted": self.size_formatted,
        }
