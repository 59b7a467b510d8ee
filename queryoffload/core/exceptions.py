"""Error taxonomy for the query offload engine."""

from typing import Optional


class QueryOffloadError(Exception):
    """Base exception for the query offload engine."""

    code = "QUERY_OFFLOAD_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# =========================
# Submission-time errors (synchronous to the caller)
# =========================
class ValidationError(QueryOffloadError):
    """The query was rejected by the read-only gate."""

    code = "VALIDATION_ERROR"


class NotASelectError(ValidationError):
    code = "NOT_A_SELECT"

    def __init__(self, message: str = "Only SELECT queries are allowed."):
        super().__init__(message)


class MultiStatementError(ValidationError):
    code = "MULTI_STATEMENT"

    def __init__(self, message: str = "Semicolons are not permitted in queries."):
        super().__init__(message)


class ForbiddenKeywordError(ValidationError):
    code = "FORBIDDEN_KEYWORD"

    def __init__(self, keyword: str):
        self.keyword = keyword
        super().__init__(f"Forbidden SQL keyword detected in the query: {keyword}")


class AdmissionError(QueryOffloadError):
    code = "ADMISSION_ERROR"


class QueueFullError(AdmissionError):
    code = "QUEUE_FULL"

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Maximum queue size of {max_size} reached.")


class EnqueueError(AdmissionError):
    code = "ENQUEUE_FAILED"

    def __init__(self, reason: str):
        super().__init__(f"Unable to enqueue job: {reason}")


# =========================
# Execution-time errors (delivered through JobFailed only)
# =========================
class ExecutionError(QueryOffloadError):
    code = "EXECUTION_ERROR"

    def __init__(self, job_id: str, step: str, reason: str):
        self.job_id = job_id
        self.step = step
        super().__init__(f"Job {job_id} failed during {step}: {reason}")


class CleanupError(QueryOffloadError):
    code = "CLEANUP_ERROR"

    def __init__(self, table_name: str, reason: str):
        self.table_name = table_name
        super().__init__(f"Unable to remove result table {table_name}: {reason}")


class MetadataLookupError(QueryOffloadError):
    code = "LOOKUP_FAILED"

    def __init__(self, reason: str):
        super().__init__(f"Error retrieving table name: {reason}")


# =========================
# Lifecycle errors
# =========================
class LifecycleError(QueryOffloadError):
    code = "LIFECYCLE_ERROR"


class AlreadyInitializedError(LifecycleError):
    code = "ALREADY_INITIALIZED"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "QueryOffload is already initialized.")


class NotInitializedError(LifecycleError):
    code = "NOT_INITIALIZED"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "QueryOffload is not running.")
