"""
Error Types

Failure taxonomy shared by discovery, backends and the session manager.
"""

from typing import Optional


class HetuError(Exception):
    """Base class for all model lifecycle errors."""

    user_message = "Something went wrong"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(detail or self.user_message)

    def describe(self) -> str:
        """Text suitable for showing to the user."""
        if self.detail:
            return f"{self.user_message}: {self.detail}"
        return self.user_message


class BackendUnavailableError(HetuError):
    """The inference runtime is missing or failed to initialize."""

    user_message = "SDK not available. Native libraries may not be loaded correctly."

    def describe(self) -> str:
        return self.user_message


class RegistrationFailedError(HetuError):
    """The backend rejected a model declaration."""

    user_message = "Model registration failed"


class LoadFailedError(HetuError):
    """The backend could not load a registered model."""

    user_message = "Model load failed"


class GenerationFailedError(HetuError):
    """The generation stream raised before completing."""

    user_message = "Generation failed"


class ScanPathUnreadableError(HetuError):
    """A search root could not be listed. Never surfaced to the user."""

    user_message = "Search path unreadable"
