from __future__ import annotations


class AssistantError(Exception):
    """Base class for failures raised by the assistant backend."""


class UnsupportedMediaType(AssistantError):
    pass


class MissingRequiredField(AssistantError):
    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"Missing required field '{field}'.")
        self.field = field


class ExtractionFailure(AssistantError):
    pass


class ModelInvocationFailure(AssistantError):
    def __init__(self, message: str, warnings: list[str] | None = None):
        super().__init__(message)
        self.warnings = list(warnings or [])


class FetchFailure(AssistantError):
    """Website could not be fetched; recovered by the context builder."""
