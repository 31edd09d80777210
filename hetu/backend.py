"""
Inference Backend Interface

The capabilities the session manager needs from whatever actually runs the models.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

from .descriptors import InferenceFramework, ModelCategory

FILE_SCHEME = "file://"


@dataclass
class ModelHandle:
    """A model declared to a backend, ready to be loaded."""
    model_id: str
    name: str
    source_uri: str
    framework: InferenceFramework
    modality: ModelCategory
    local_path: Optional[str] = None


def file_uri(path: str) -> str:
    return f"{FILE_SCHEME}{path}"


def path_from_uri(source_uri: str) -> Optional[str]:
    """Local filesystem path of a file:// URI, None for any other scheme."""
    if not source_uri.startswith(FILE_SCHEME):
        return None
    return source_uri[len(FILE_SCHEME):]


class InferenceBackend(Protocol):
    def is_available(self) -> bool: ...

    async def register_model(
        self,
        model_id: str,
        name: str,
        source_uri: str,
        framework: InferenceFramework,
        modality: ModelCategory,
    ) -> ModelHandle: ...

    async def load_model(self, handle: ModelHandle) -> None: ...

    async def unload_model(self, category: ModelCategory) -> None: ...

    def generate_stream(self, prompt: str) -> AsyncIterator[str]: ...
