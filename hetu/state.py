"""
Session State

Immutable snapshots of everything the UI observes about the model session.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .descriptors import ModelDescriptor


class LoadState(str, Enum):
    """Lifecycle of one model category."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class ChatMessage:
    text: str
    is_user: bool


@dataclass(frozen=True)
class SessionState:
    """A point-in-time view of the session. Replaced, never mutated."""
    discovered_models: Tuple[ModelDescriptor, ...] = ()
    language_state: LoadState = LoadState.UNLOADED
    speech_state: LoadState = LoadState.UNLOADED
    loaded_language_model_id: Optional[str] = None
    loaded_language_model_name: Optional[str] = None
    loaded_speech_model_id: Optional[str] = None
    loaded_speech_model_name: Optional[str] = None
    backend_available: bool = False
    chat_history: Tuple[ChatMessage, ...] = field(default_factory=tuple)
    streaming_buffer: str = ""
    is_generating: bool = False
    last_error: Optional[str] = None

    @property
    def language_ready(self) -> bool:
        return self.language_state == LoadState.READY

    @property
    def speech_ready(self) -> bool:
        return self.speech_state == LoadState.READY

    @property
    def is_loading(self) -> bool:
        return LoadState.LOADING in (self.language_state, self.speech_state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discovered_models": [m.to_dict() for m in self.discovered_models],
            "language_state": self.language_state.value,
            "speech_state": self.speech_state.value,
            "language_ready": self.language_ready,
            "speech_ready": self.speech_ready,
            "is_loading": self.is_loading,
            "loaded_language_model_id": self.loaded_language_model_id,
            "loaded_language_model_name": self.loaded_language_model_name,
            "loaded_speech_model_id": self.loaded_speech_model_id,
            "loaded_speech_model_name": self.loaded_speech_model_name,
            "backend_available": self.backend_available,
            "chat_history": [
                {"text": m.text, "is_user": m.is_user} for m in self.chat_history
            ],
            "streaming_buffer": self.streaming_buffer,
            "is_generating": self.is_generating,
            "last_error": self.last_error,
        }
