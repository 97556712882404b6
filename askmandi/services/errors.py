"""Error taxonomy for the chat pipeline.

Unclear intent, empty results and rate limiting are outcomes, not errors, and
are returned by the service rather than raised.
"""


class MandiError(Exception):
    """Base class for errors surfaced to the HTTP layer."""

    status_code = 500
    public_message = "Failed to process your question"
    # When False the client gets a fixed details string; the message is logged only.
    expose_details = True


class InputError(MandiError):
    """Missing/empty messages or an over-long question. No external calls are made."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class ConfigError(MandiError):
    """Required connection settings are missing."""

    public_message = "Server misconfigured"


class UpstreamFailure(MandiError):
    """The execution or text-generation capability raised.

    Driver and model messages can quote the generated SQL, so they stay in the logs.
    """

    expose_details = False
