"""
Session Manager

Tracks the loaded language and speech models, proxies load/unload/generate calls to the
inference backend and publishes every change as an immutable SessionState snapshot.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, NamedTuple, Optional, Sequence

from loguru import logger

from .backend import InferenceBackend, file_uri
from .config import DEFAULT_GREETING, DEFAULT_PLACEHOLDER_REPLY, Settings
from .descriptors import FRAMEWORK_FOR_CATEGORY, ModelCategory, ModelDescriptor
from .discovery import ModelDiscovery
from .errors import BackendUnavailableError
from .state import ChatMessage, LoadState, SessionState

StateListener = Callable[[SessionState], None]

NO_MODEL_LOADED = "No LLM model loaded"
GENERATION_IN_PROGRESS = "A response is already being generated"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NO_MODEL = "no_model"
    FAILED = "failed"
    REJECTED = "rejected"
    STOPPED = "stopped"


@dataclass
class GenerationOutcome:
    """How one generate() call ended. Filled in by the call itself, never shared."""
    status: GenerationStatus = GenerationStatus.PENDING
    response: Optional[str] = None
    error: Optional[str] = None


class _CategoryFields(NamedTuple):
    state: str
    model_id: str
    model_name: str
    error_prefix: str


_FIELDS: Dict[ModelCategory, _CategoryFields] = {
    ModelCategory.LANGUAGE: _CategoryFields(
        "language_state",
        "loaded_language_model_id",
        "loaded_language_model_name",
        "Failed to load model",
    ),
    ModelCategory.SPEECH_RECOGNITION: _CategoryFields(
        "speech_state",
        "loaded_speech_model_id",
        "loaded_speech_model_name",
        "Failed to load STT model",
    ),
}


def make_model_id(name: str) -> str:
    """Stable backend id for a display name: lowercased, spaces/underscores collapsed to '-'."""
    return re.sub(r"[\s_]+", "-", name.strip().lower())


class SessionManager:
    """Owns the session state; all mutation goes through the methods below."""

    def __init__(
        self,
        backend: InferenceBackend,
        discovery: Optional[ModelDiscovery] = None,
        greeting: str = DEFAULT_GREETING,
        placeholder_reply: str = DEFAULT_PLACEHOLDER_REPLY,
    ):
        self.backend = backend
        self.discovery = discovery or ModelDiscovery()
        self.greeting = greeting
        self.placeholder_reply = placeholder_reply

        self._listeners: List[StateListener] = []
        self._state = SessionState(chat_history=self._initial_history())

    @classmethod
    def from_settings(cls, backend: InferenceBackend, settings: Settings) -> "SessionManager":
        return cls(
            backend=backend,
            discovery=ModelDiscovery(settings.search_paths),
            greeting=settings.greeting,
            placeholder_reply=settings.placeholder_reply,
        )

    # Observation

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call listener with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def _initial_history(self):
        return (ChatMessage(self.greeting, is_user=False),)

    # Discovery and backend availability

    async def initialize(self) -> None:
        """Scan for models first (always works), then probe the backend."""
        await self.scan_models()
        self.refresh_backend()

    async def scan_models(self, root_paths: Optional[Sequence[str]] = None) -> List[ModelDescriptor]:
        """Re-run discovery and replace the discovered model list."""
        models = await self.discovery.scan_async(root_paths)
        self._update(discovered_models=tuple(models))
        return models

    def refresh_backend(self) -> bool:
        """Ask the backend whether it can run models and record the answer."""
        try:
            available = bool(self.backend.is_available())
        except Exception as e:
            logger.error(f"Inference backend check failed: {e}")
            self._update(
                backend_available=False,
                last_error=f"Inference runtime not available: {e}",
            )
            return False

        logger.info(f"Inference backend available: {available}")
        self._update(backend_available=available)
        return available

    def _backend_ready(self) -> bool:
        try:
            available = bool(self.backend.is_available())
        except Exception as e:
            logger.error(f"Inference backend check failed: {e}")
            available = False
        if available != self._state.backend_available:
            self._update(backend_available=available)
        return available

    def find_model(self, path: str) -> Optional[ModelDescriptor]:
        for model in self._state.discovered_models:
            if model.path == path:
                return model
        return None

    def models_for(self, category: ModelCategory) -> List[ModelDescriptor]:
        return [m for m in self._state.discovered_models if m.category == category]

    # Load / unload

    async def load(self, descriptor: ModelDescriptor) -> bool:
        """Load a discovered model into the slot for its category."""
        return await self._load(descriptor, descriptor.category)

    async def load_language_model(self, descriptor: ModelDescriptor) -> bool:
        return await self._load(descriptor, ModelCategory.LANGUAGE)

    async def load_speech_model(self, descriptor: ModelDescriptor) -> bool:
        return await self._load(descriptor, ModelCategory.SPEECH_RECOGNITION)

    async def _load(self, descriptor: ModelDescriptor, category: ModelCategory) -> bool:
        fields = _FIELDS[category]

        if not self._backend_ready():
            self._update(last_error=BackendUnavailableError().describe())
            return False

        if getattr(self._state, fields.state) == LoadState.LOADING:
            logger.warning(f"Ignoring load of {descriptor.name}: a {category.value} model is already loading")
            return False

        model_id = make_model_id(descriptor.name)
        self._update(**{fields.state: LoadState.LOADING}, last_error=None)
        logger.info(f"Loading {category.value} model {descriptor.name} ({descriptor.path})")

        try:
            handle = await self.backend.register_model(
                model_id=model_id,
                name=descriptor.name,
                source_uri=file_uri(descriptor.path),
                framework=FRAMEWORK_FOR_CATEGORY[category],
                modality=category,
            )
            handle.local_path = descriptor.path
            await self.backend.load_model(handle)
        except Exception as e:
            logger.error(f"Failed to load {category.value} model {descriptor.name}: {e}")
            self._update(
                **{fields.state: LoadState.UNLOADED},
                last_error=f"{fields.error_prefix}: {e}",
            )
            return False

        self._update(**{
            fields.state: LoadState.READY,
            fields.model_id: handle.model_id,
            fields.model_name: descriptor.name,
        })
        logger.info(f"Loaded {category.value} model: {descriptor.name}")
        return True

    async def unload_language_model(self) -> None:
        """Unload the language model. Local state is always reset, even if the backend call fails."""
        changes = {
            "language_state": LoadState.UNLOADED,
            "loaded_language_model_id": None,
            "loaded_language_model_name": None,
        }
        try:
            if self._backend_ready():
                await self.backend.unload_model(ModelCategory.LANGUAGE)
        except Exception as e:
            logger.error(f"Failed to unload model: {e}")
            changes["last_error"] = f"Failed to unload model: {e}"

        self._update(**changes)
        logger.info("Language model unloaded")

    # Chat

    async def generate(self, prompt: str, outcome: Optional[GenerationOutcome] = None) -> AsyncIterator[str]:
        """Stream a response to prompt, yielding each fragment as it is added to the buffer.

        The prompt is added to the history right away. When the stream finishes, the buffer
        becomes a single assistant message; if it raises or the caller stops iterating early,
        the partial text is dropped. Pass an outcome to learn how this particular call ended;
        last_error is shared by every caller and may already describe a later request.
        """
        if outcome is None:
            outcome = GenerationOutcome()

        if self._state.is_generating:
            logger.warning("Ignoring prompt: generation already in progress")
            outcome.status, outcome.error = GenerationStatus.REJECTED, GENERATION_IN_PROGRESS
            self._update(last_error=GENERATION_IN_PROGRESS)
            return

        self._append_message(ChatMessage(prompt, is_user=True))

        if not self._state.language_ready or not self._backend_ready():
            outcome.status, outcome.error = GenerationStatus.NO_MODEL, NO_MODEL_LOADED
            outcome.response = self.placeholder_reply
            self._update(
                last_error=NO_MODEL_LOADED,
                chat_history=self._state.chat_history + (ChatMessage(self.placeholder_reply, is_user=False),),
            )
            return

        self._update(is_generating=True, streaming_buffer="", last_error=None)
        committed = False
        fragment_count = 0
        stream = self.backend.generate_stream(prompt)
        try:
            async for fragment in stream:
                fragment_count += 1
                self._update(streaming_buffer=self._state.streaming_buffer + fragment)
                yield fragment

            reply = self._state.streaming_buffer
            self._update(
                chat_history=self._state.chat_history + (ChatMessage(reply, is_user=False),),
                streaming_buffer="",
            )
            committed = True
            outcome.status, outcome.response = GenerationStatus.COMPLETED, reply
            logger.info(f"Generation complete. Total fragments: {fragment_count}")
        except Exception as e:
            logger.error(f"Generation failed: {e}")
            outcome.status, outcome.error = GenerationStatus.FAILED, f"Generation failed: {e}"
            self._update(last_error=outcome.error)
        finally:
            if outcome.status == GenerationStatus.PENDING:
                outcome.status = GenerationStatus.STOPPED
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            if committed:
                self._update(is_generating=False)
            else:
                self._update(is_generating=False, streaming_buffer="")

    async def run_generation(self, prompt: str, outcome: Optional[GenerationOutcome] = None) -> Optional[str]:
        """Run generate() to completion and return the assistant reply it added to the history."""
        if outcome is None:
            outcome = GenerationOutcome()
        async for _ in self.generate(prompt, outcome):
            pass
        return outcome.response

    def _append_message(self, message: ChatMessage) -> None:
        self._update(chat_history=self._state.chat_history + (message,))

    def reset_conversation(self) -> bool:
        """Drop the conversation back to the greeting. Refused while a response is streaming."""
        if self._state.is_generating:
            logger.warning("Cannot reset conversation while generating")
            return False
        self._update(chat_history=self._initial_history(), streaming_buffer="")
        return True

    def clear_error(self) -> None:
        self._update(last_error=None)
