"""Exception taxonomy shared by every harvester component.

Management operations raise these and the CLI renders them as structured
error payloads via ``to_dict()``. Upstream fetch failures are caught by the
crawl executor and recorded on the job instead of reaching callers.
"""

from __future__ import annotations

from typing import Any


class HarvesterError(Exception):
    """Base class for other exceptions."""

    code = "ERROR"

    def __init__(self, message: str = "Harvester error", **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(HarvesterError):
    """Missing or invalid request fields. Raised before any state change."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation Error", **details: Any) -> None:
        super().__init__(message, **details)


class InvalidTransition(ValidationError):
    """A batch or review state change that the state machine forbids."""

    code = "INVALID_TRANSITION"


class AuthorizationError(HarvesterError):
    """Unauthenticated or insufficiently privileged actor."""

    code = "FORBIDDEN"

    def __init__(self, message: str = "Authorization Failed", **details: Any) -> None:
        super().__init__(message, **details)


class NotFoundError(HarvesterError):
    """Unknown source, batch, job, item or problem id."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}", kind=kind, id=identifier)
        self.kind = kind
        self.identifier = identifier


class UpstreamFetchError(HarvesterError):
    """A robots or page fetch failed.

    Attributes:
        url: The URL that failed.
        category: Failure classification used as the crawl-log ``action``
            (TIMEOUT, CONNECTION_ERROR, HTTP_4XX, HTTP_5XX, RATE_LIMITED,
            FETCH_ERROR).
        status_code: HTTP status when the server answered.
    """

    code = "UPSTREAM_FETCH_ERROR"

    def __init__(self, url: str, category: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message, url=url, category=category, status_code=status_code)
        self.url = url
        self.category = category
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category in ("TIMEOUT", "CONNECTION_ERROR", "HTTP_5XX", "RATE_LIMITED")


class AggregationDegraded(HarvesterError):
    """A dashboard metric's backing data was unavailable."""

    code = "AGGREGATION_DEGRADED"

    def __init__(self, metric: str, reason: str) -> None:
        super().__init__(f"Metric {metric} degraded: {reason}", metric=metric)
        self.metric = metric


class RetryExhausted(HarvesterError):
    """``attempt()`` ran out of attempts without a result."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        reason = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Gave up after {attempts} attempts{reason}", attempts=attempts)
        self.attempts = attempts
        self.last_error = last_error
