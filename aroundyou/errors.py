"""
Error taxonomy for the conversational commerce core.

Public engine operations never raise these for expected failures; they are
caught at the dispatcher / session boundary and turned into result objects
carrying ``error`` and ``error_kind``. Only ``SnapshotCorruptedError`` is
allowed to escape (a corrupted restore is session-fatal).
"""

import asyncio
from typing import Awaitable, List, Optional, TypeVar

T = TypeVar("T")


class CommerceError(Exception):
    """Base class for all expected failures."""

    kind = "error"
    retryable = False


class NetworkError(CommerceError):
    """Transient transport or provider failure. Retry by re-sending the turn."""

    kind = "network"
    retryable = True


class CallTimeoutError(CommerceError):
    """An external call exceeded its bounded wait."""

    kind = "timeout"
    retryable = True

    def __init__(self, operation: str, seconds: Optional[float] = None):
        self.operation = operation
        self.seconds = seconds
        if seconds is not None:
            message = f"{operation} timed out after {seconds:g}s"
        else:
            message = f"{operation} timed out"
        super().__init__(message)


class UnknownFunctionError(CommerceError):
    kind = "unknown_function"

    def __init__(self, function_name: str):
        self.function_name = function_name
        super().__init__("unknown function")


class MalformedFunctionArguments(CommerceError):
    """Tool-call arguments failed the registry contract."""

    kind = "malformed_arguments"

    def __init__(self, function_name: str, violations: List[str]):
        self.function_name = function_name
        self.violations = list(violations)
        detail = "; ".join(self.violations) or "invalid arguments"
        super().__init__(f"Malformed arguments for {function_name}: {detail}")


class UpstreamSearchFailure(CommerceError):
    """A search pipeline step failed because a collaborator failed."""

    kind = "upstream_search"

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(message)


class BusinessValidationError(CommerceError):
    """Business-rule rejection, e.g. a delivery landmark is missing."""

    kind = "validation"


class SnapshotCorruptedError(CommerceError):
    """A conversation snapshot could not be restored. Recreate the session."""

    kind = "snapshot_corrupted"


class ProgressTransitionError(CommerceError):
    """Attempt to move a search step backwards or out of order."""

    kind = "progress_transition"


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], operation: str) -> T:
    """
    Await ``awaitable`` for at most ``seconds``.

    Args:
        awaitable: Coroutine or future to wait on
        seconds: Upper bound; ``None`` waits indefinitely
        operation: Human-readable name used in the timeout message

    Raises:
        CallTimeoutError: If the bound is exceeded
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise CallTimeoutError(operation, seconds) from e
