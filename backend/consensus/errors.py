"""Domain errors raised by the lobby and consensus services.

Each error carries the HTTP status the API reports it with; the message is
shown to the user verbatim.
"""

from __future__ import annotations


class ConsensusError(Exception):
    """Base class for domain errors."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ConsensusError):
    """Raised when input has a bad shape or is out of range."""

    status_code = 400


class AuthorizationError(ConsensusError):
    """Raised when a non-owner attempts an owner-only action."""

    status_code = 403


class NotFoundError(ConsensusError):
    """Raised for unknown users, lobbies, codes or rounds."""

    status_code = 404


class ConflictError(ConsensusError):
    """Raised when the lobby state does not allow the requested action."""

    status_code = 409


class FullError(ConflictError):
    """Raised when joining a lobby that reached max_members."""


class NotReadyError(ConflictError):
    """Raised when starting a lobby before every member is ready."""


class RoundClosedError(ConflictError):
    """Raised when voting on a round that already resolved."""


class NoOptionsError(ConflictError):
    """Raised when a round has no feasible options for the lobby's date and hours."""


class OverflowError(ConflictError):  # noqa: A001
    """Raised when an itinerary move would run past the lobby's end hour."""
