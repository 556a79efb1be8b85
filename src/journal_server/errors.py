"""Error taxonomy for the journal server.

Every error carries a public ``message`` (safe to return to clients) and the
HTTP ``status_code`` it maps to. Only the FastAPI layer translates these into
wire responses; nothing below it knows about HTTP.
"""

from __future__ import annotations


class JournalServerError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(JournalServerError):
    """Malformed or empty chat request. Nothing was written."""

    status_code = 400
    default_message = "Missing 'message'."


class StorageUnavailable(JournalServerError):
    """A transcript could not be read or durably written."""

    status_code = 503
    default_message = "Transcript storage is unavailable."


class CollaboratorFailure(JournalServerError):
    """The inference service errored or could not be reached."""

    status_code = 502
    default_message = "Inference service failed."
