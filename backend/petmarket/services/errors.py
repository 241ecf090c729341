from dataclasses import dataclass
from typing import Literal


class MarketplaceError(Exception):
    """Base class for user-visible marketplace errors."""


class TransportError(MarketplaceError):
    pass


class AuthorizationError(MarketplaceError):
    pass


class InvalidTransitionError(MarketplaceError):
    pass


class MalformedResponseError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    pass


class InvalidInputError(MarketplaceError):
    pass


@dataclass(frozen=True)
class ErrorNotice:
    """How a failed operation should be surfaced to the user."""

    kind: Literal["banner", "blocking", "inline"]
    message: str
    retryable: bool = False


def describe_error(exc: BaseException) -> ErrorNotice:
    if isinstance(exc, TransportError):
        return ErrorNotice(kind="banner", message=str(exc) or "Network request failed", retryable=True)
    if isinstance(exc, AuthorizationError):
        return ErrorNotice(kind="blocking", message=str(exc) or "You are not allowed to do that")
    if isinstance(exc, InvalidTransitionError):
        return ErrorNotice(kind="inline", message=str(exc) or "That status change is not allowed")
    if isinstance(exc, MalformedResponseError):
        return ErrorNotice(kind="banner", message="Received an unexpected response", retryable=True)
    if isinstance(exc, MarketplaceError):
        return ErrorNotice(kind="inline", message=str(exc))
    return ErrorNotice(kind="banner", message="Something went wrong", retryable=True)
