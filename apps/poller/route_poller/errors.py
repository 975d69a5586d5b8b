"""Failure conditions raised by the poller pipeline."""
from __future__ import annotations


class PollError(Exception):
    """Cycle-scoped failure: the current poll is abandoned, the next tick still runs."""

    stage = "poll"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def detail(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"

    def __str__(self) -> str:
        return f"[{self.stage}] {self.detail}"


class NetworkTimeout(PollError):
    stage = "fetch"


class NetworkUnavailable(PollError):
    stage = "fetch"


class UnexpectedStatus(PollError):
    stage = "fetch"

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"{url} returned HTTP {status_code}")
        self.status_code = status_code


class DecodeError(PollError):
    stage = "decode"


class WriteFailed(PollError):
    stage = "persist"


class QueryFailed(PollError):
    stage = "query"


class StoreUnavailable(Exception):
    """The observation store could not be opened; the poller cannot start."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}: {self.cause}" if self.cause is not None else base
