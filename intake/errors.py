from __future__ import annotations

from typing import Any, Optional


class IntakeError(RuntimeError):
    """Base class for ticket intake failures."""


class MissingCredentialsError(RuntimeError):
    pass


class RemoteIOError(IntakeError):
    """Network or HTTP failure against OneDrive/Graph or OpenProject."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class DocumentLockedError(RemoteIOError):
    """The remote workbook is held open by another writer."""


class TrackerRequestError(RemoteIOError):
    """OpenProject answered with an error envelope."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
        error_identifier: Optional[str] = None,
        attributes: Optional[list] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, payload=payload)
        self.error_identifier = error_identifier
        self.attributes = list(attributes or [])


class TicketParseError(IntakeError):
    pass


class InvalidReferenceError(IntakeError):
    """Project, assignee or priority could not be resolved to an OpenProject id."""


class CreationError(IntakeError):
    """Work package submission failed, including after the permission fallback."""


class SyncError(IntakeError):
    """The history workbook could not be updated for a work item."""


class QueuePersistenceError(IntakeError):
    """Reading or writing the local retry queue snapshot failed."""
