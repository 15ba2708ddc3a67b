"""Failure classes raised by the sync engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of an engine failure, kept alongside per-input status."""

    RATE_LIMIT = 'rate-limit'
    AUTH = 'auth'
    NOT_FOUND = 'not-found'
    NETWORK = 'network'
    API = 'api'
    INPUT = 'input'
    COMMAND = 'command'
    ABORTED = 'aborted'
    FLAKE = 'flake'


class MeltError(Exception):
    """Base class for melt failures."""

    kind = ErrorKind.API


class RateLimitError(MeltError):
    """The forge refused the request because the rate limit is exhausted."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str = 'API rate limit exceeded', reset_at: int | None = None):
        super().__init__(message)
        self.reset_at = reset_at


class AuthError(MeltError):
    kind = ErrorKind.AUTH


class NotFoundError(MeltError):
    kind = ErrorKind.NOT_FOUND


class NetworkError(MeltError):
    kind = ErrorKind.NETWORK


class ApiError(MeltError):
    """Any other unsuccessful or unparsable API response."""

    kind = ErrorKind.API

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class InputError(MeltError):
    """The input lacks what the operation needs (e.g. owner/repo)."""

    kind = ErrorKind.INPUT


class CommandError(MeltError):
    """An external command exited with a nonzero status."""

    kind = ErrorKind.COMMAND

    def __init__(self, cmd: list[str], returncode: int, stderr: str = ''):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f'exit status {returncode}'
        super().__init__(f'{cmd[0]} {cmd[1] if len(cmd) > 1 else ""}'.strip() + f' failed: {detail}')


class AbortedError(MeltError):
    """The operation was cancelled."""

    kind = ErrorKind.ABORTED

    def __init__(self, message: str = 'Command aborted'):
        super().__init__(message)


class FlakeError(MeltError):
    """The flake could not be found or its metadata could not be read."""

    kind = ErrorKind.FLAKE


def error_kind(exc: BaseException) -> ErrorKind:
    """Get the kind of an exception, treating foreign exceptions as API failures."""
    if isinstance(exc, MeltError):
        return exc.kind
    return ErrorKind.API
