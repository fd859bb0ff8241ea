"""
starling.errors — Error Taxonomy
=================================

Every failure the engine surfaces is one of the classes below, so callers
can tell them apart without parsing messages.  None of them are retried by
the engine itself:

* ``InvalidInput`` / ``Forbidden`` / ``NotFound`` — surfaced verbatim.
* ``Conflict`` — a state-machine precondition failed; the caller may
  re-read state and retry.
* ``StorageTimeout`` / ``StorageUnavailable`` — the store could not be
  reached in time; safe for the caller to retry with backoff.
"""

from __future__ import annotations


class StarlingError(Exception):
    """Base class for all engine errors."""

    code = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.message}


class InvalidInput(StarlingError):
    code = "invalid_input"
    status_code = 400


class Forbidden(StarlingError):
    code = "forbidden"
    status_code = 403


class SelfVoteForbidden(Forbidden):
    """Raised when a user tries to rate their own post."""

    code = "self_vote_forbidden"


class NotFound(StarlingError):
    code = "not_found"
    status_code = 404


class Conflict(StarlingError):
    code = "conflict"
    status_code = 409


class StorageUnavailable(StarlingError):
    code = "unavailable"
    status_code = 503


class StorageTimeout(StorageUnavailable):
    code = "timeout"
    status_code = 504
