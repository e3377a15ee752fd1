"""
Exceptions raised by branchchat.

Lookups of absent trees or turns are not errors: they return None
(or False, or an empty list). The exceptions below cover the other
failure categories.
"""

from typing import Any


class BranchChatError(Exception):
    """Base class of the package exceptions."""


class ValidationFailure(BranchChatError):
    """A variable state chain is inconsistent."""

    def __init__(self, message: str, broken_at: str | None = None):
        super().__init__(message)
        self.broken_at = broken_at


class ChangeConflictError(BranchChatError):
    """A recorded change does not match the state it is applied to."""


class StorageError(BranchChatError):
    """The storage collaborator failed to read or write."""


class PipelineDefinitionError(BranchChatError):
    """The stage graph of a pipeline is not valid."""


class PipelineCancelled(BranchChatError):
    """The caller withdrew interest in a pipeline run."""


class StageFailure(BranchChatError):
    """A pipeline stage raised an exception."""

    def __init__(
        self,
        stage_id: str,
        error: BaseException,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(f"Stage '{stage_id}' failed: {error}")
        self.stage_id = stage_id
        self.error = error
        self.context: dict[str, Any] = context or {}


class ExtensionFailure(BranchChatError):
    """An extension hook or tool raised an exception."""

    def __init__(self, extension_id: str, message: str):
        super().__init__(f"Extension '{extension_id}': {message}")
        self.extension_id = extension_id


class ExtensionPermissionError(ExtensionFailure):
    """An extension used an API it was not granted."""


class ManifestError(BranchChatError):
    """An extension manifest is missing or invalid."""


class InputRejected(BranchChatError):
    """User input was refused by the input validation stage."""
