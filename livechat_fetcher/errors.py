from __future__ import annotations


class FetcherError(Exception):
    """Base class for every error raised by the live chat fetcher."""

    exit_code = 1


class ConfigurationError(FetcherError):
    exit_code = 2


class AuthError(FetcherError):
    pass


class ChatNotFoundError(FetcherError):
    pass


class TransportError(FetcherError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamTimeoutError(TransportError):
    pass


class InitialConnectionError(FetcherError):
    pass


class DurabilityError(FetcherError):
    pass


class MalformedResumeStateError(FetcherError):
    pass


class CursorRewindError(FetcherError):
    def __init__(self, message: str, *, current_token: str | None, rewound_token: str) -> None:
        super().__init__(message)
        self.current_token = current_token
        self.rewound_token = rewound_token
