from __future__ import annotations


class EngineError(Exception):
    """Base class for adherence engine failures that callers can classify."""

    code = "engine_error"
    status_code = 500

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class NotFound(EngineError):
    """Unknown id, or an id that does not belong to the caller."""

    code = "not_found"
    status_code = 404


class AlreadyReverted(EngineError):
    """Revert requested for a medication action that was already reverted."""

    code = "already_reverted"
    status_code = 400


class Conflict(EngineError):
    """Unique-key collision on insert; recovered by the caller, never surfaced."""

    code = "conflict"
    status_code = 409


class StorageFailure(EngineError):
    """Any underlying persistence error."""

    code = "storage_failure"
    status_code = 500
