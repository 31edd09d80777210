"""
Hetu Local Model Session

Discovers on-device language and speech models and manages their load/unload/generate lifecycle.
"""

from .backend import InferenceBackend, ModelHandle
from .config import Settings, load_settings
from .descriptors import InferenceFramework, ModelCategory, ModelDescriptor, ModelFormat
from .discovery import ModelDiscovery, scan
from .session import GenerationOutcome, GenerationStatus, SessionManager
from .state import ChatMessage, LoadState, SessionState

__all__ = [
    "InferenceBackend",
    "ModelHandle",
    "Settings",
    "load_settings",
    "InferenceFramework",
    "ModelCategory",
    "ModelDescriptor",
    "ModelFormat",
    "ModelDiscovery",
    "scan",
    "GenerationOutcome",
    "GenerationStatus",
    "SessionManager",
    "ChatMessage",
    "LoadState",
    "SessionState",
]
