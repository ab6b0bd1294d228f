"""Consolidated exceptions for the Haystack client.

All custom exceptions are defined here to provide a single source of truth
for error handling across the client.
"""

from typing import Any


class HaystackClientError(Exception):
    """Base exception for Haystack client errors"""

    pass


class AuthenticationError(HaystackClientError):
    """Raised when the token endpoint returns an unusable response"""

    pass


class TransportError(HaystackClientError):
    """Raised by a transport when a request fails

    Attributes:
        status_code: HTTP status of the response, None if none was received
        data: Decoded response body, None if absent or not JSON
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.data = data

    @property
    def has_response(self) -> bool:
        """Check if the server answered at all"""
        return self.status_code is not None

    @property
    def is_auth_error(self) -> bool:
        """Check if the server rejected the credentials attached"""
        return self.status_code == 401


class RequestError(HaystackClientError):
    """Domain error reported by the API server in a response payload"""

    @staticmethod
    def make(error: Exception) -> Exception:
        """Reclassify a transport failure by the shape of its payload

        Args:
            error: Exception raised by the transport

        Returns:
            HaystackError or GraphQLError when the payload matches one of
            those shapes, otherwise the given error itself
        """
        data = getattr(error, "data", None)
        if not isinstance(data, dict):
            return error

        meta = data.get("meta")
        if isinstance(meta, dict) and isinstance(meta.get("dis"), str):
            return HaystackError(meta["dis"][2:])

        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return GraphQLError(errors)

        return error


class HaystackError(RequestError):
    """Haystack op error (e.g. hisWrite, createRec, hisRead)"""

    pass


class GraphQLError(RequestError):
    """GraphQL error, typically a syntax or schema issue in the query

    Attributes:
        errors: Raw error objects returned by the server
        details: One "<message> @ location/s <line:col>" line per error
    """

    def __init__(self, errors: list[dict]) -> None:
        if len(errors) == 1:
            message = str(errors[0].get("message", ""))
        else:
            message = "More than 1 error encountered"
        super().__init__(message.replace("\n", ""))
        self.errors = errors
        self.details = [self._describe(err) for err in errors]

    @staticmethod
    def _describe(error: dict) -> str:
        message = str(error.get("message", "")).replace("\n", "")
        locations = error.get("locations") or []
        if not locations:
            return message
        where = ", ".join(
            f"{loc.get('line')}:{loc.get('column')}" for loc in locations
        )
        return f"{message} @ location/s {where}"


class BatchPayloadError(HaystackClientError):
    """Raised when a batch payload cannot be partitioned"""

    pass


class PartitionError(HaystackClientError):
    """Failure of a single batch partition

    Never raised by the executor; collected into BatchOutcome.errors so
    the failed call can be reproduced from op_args.

    Attributes:
        op_args: Operation name followed by the exact arguments dispatched
        cause: The exception the operation raised
    """

    def __init__(
        self, message: str, op_args: list, cause: BaseException | None = None
    ) -> None:
        super().__init__(message)
        self.op_args = op_args
        self.cause = cause

    @property
    def error(self) -> str:
        """Get the error message of the failed partition"""
        return str(self)

    def to_dict(self) -> dict:
        return {"error": self.error, "args": self.op_args}


class HisMergeError(HaystackClientError):
    """Raised when a partial history read cannot be merged"""

    pass
