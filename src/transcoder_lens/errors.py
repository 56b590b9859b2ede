"""Exception types shared across the package."""


class TranscoderError(Exception):
    """Base class for transcoder-lens errors."""


class InvalidArgumentError(TranscoderError, ValueError):
    """Raised when a caller passes arguments that can never succeed.

    Examples are a vector whose dimension does not match the model, an
    unknown embedding method or a non-positive session id.
    """


class CorruptDataError(TranscoderError, ValueError):
    """Raised when stored bytes cannot be decoded into vectors or weights."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
