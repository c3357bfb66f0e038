"""Error taxonomy for queryforge.

two families: validation errors are caller mistakes (4xx, never retried) and
execution errors come from the store (5xx, some retryable). validation errors
also subclass ValueError so plain `except ValueError` call sites keep working.
"""


class QueryError(Exception):
    """Base class for every error the query layer reports to callers."""

    code = "QUERY_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class QueryValidationError(QueryError, ValueError):
    """Caller supplied something we refuse to compile."""

    code = "VALIDATION_ERROR"
    status_code = 400


class QueryTypeNotFoundError(QueryValidationError, KeyError):
    code = "QUERY_TYPE_NOT_FOUND"
    status_code = 404

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown query type: {name}")
        self.name = name

    # KeyError.__str__ wraps the message in quotes
    def __str__(self) -> str:
        return self.message


class UnknownFilterFieldError(QueryValidationError):
    code = "UNKNOWN_FILTER_FIELD"


class UnsupportedOperatorError(QueryValidationError):
    code = "UNSUPPORTED_OPERATOR"


class EmptyInListError(QueryValidationError):
    code = "EMPTY_IN_LIST"


class InvalidFilterValueError(QueryValidationError):
    code = "INVALID_FILTER_VALUE"


class NotCustomizableError(QueryValidationError):
    code = "NOT_CUSTOMIZABLE"


class InvalidOrderByError(QueryValidationError):
    code = "INVALID_ORDER_BY"


class InvalidPaginationError(QueryValidationError):
    code = "INVALID_PAGINATION"


class InvalidTimezoneError(QueryValidationError):
    code = "INVALID_TIMEZONE"


class InvalidDateRangeError(QueryValidationError):
    code = "INVALID_DATE_RANGE"


class QueryExecutionError(QueryError):
    """The store failed to run a compiled statement."""

    code = "EXECUTION_ERROR"
    status_code = 502


class MalformedQueryError(QueryExecutionError):
    # a compiler bug, retrying won't help
    code = "MALFORMED_QUERY"
    status_code = 500


class QueryTimeoutError(QueryExecutionError):
    code = "TIMEOUT"
    status_code = 504
    retryable = True


class StoreUnavailableError(QueryExecutionError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True
