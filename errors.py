"""
Error taxonomy for the suggestion box.

Every failure that leaves a service call is one of these. Each class carries
the HTTP status the API layer answers with.
"""


class SuggestionBoxError(Exception):
    """Base exception for suggestion box operations."""
    status_code = 400


class Unauthorized(SuggestionBoxError):
    """Not logged in, banned, or lacking the moderator role for a write."""
    status_code = 403


class LoginRequired(Unauthorized):
    """No session at all."""
    status_code = 401


class ValidationError(SuggestionBoxError):
    """Empty required field or malformed input."""
    status_code = 422


class NotFound(SuggestionBoxError):
    """The record being operated on does not exist (any more)."""
    status_code = 404


class CommentIndexError(SuggestionBoxError, IndexError):
    """Comment index outside the suggestion's comment list."""
    status_code = 404


class AlreadyExists(SuggestionBoxError):
    """Registration for an identity that is already registered."""
    status_code = 409


class InvalidCredential(SuggestionBoxError):
    """Login with an unknown identity or a wrong password."""
    status_code = 401


class StoreError(SuggestionBoxError):
    """The record store refused or could not be reached."""
    status_code = 503


class SummarizerError(SuggestionBoxError):
    """The AI summary call failed. Always recovered by the caller."""
    status_code = 502
