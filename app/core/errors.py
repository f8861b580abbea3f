from typing import Optional


class BranchingTrailError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NodeNotFoundError(BranchingTrailError):
    status_code = 404


class SessionNotFoundError(BranchingTrailError):
    status_code = 404

    def __init__(self, message: str = "Session not found."):
        super().__init__(message)


class SessionConflictError(BranchingTrailError):
    status_code = 409


class TreeTooLargeError(BranchingTrailError):
    status_code = 422


class InvalidNodeOperationError(BranchingTrailError):
    status_code = 422


class GenerationError(BranchingTrailError):
    status_code = 502


class OptionsParseError(GenerationError):
    """The model output could not be turned into exactly four options."""


class StorageError(BranchingTrailError):
    """The session store could not persist a change; stored state is unchanged."""

    status_code = 500


class ExpansionFailedError(BranchingTrailError):
    """A workflow failed after the snapshot was taken.

    ``session`` is the untouched snapshot with the affected node marked
    ``status="error"``. The stored session is not modified.
    """

    status_code = 502

    def __init__(self, message: str, session=None, node_id: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(message, getattr(cause, "status_code", None))
        self.session = session
        self.node_id = node_id
        self.cause = cause
