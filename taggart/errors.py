from typing import List, Optional


class TaggartError(Exception):
    """Base class for every error the catalog core raises on purpose."""


class ValidationError(TaggartError):
    """Input was rejected before touching the database or the filesystem."""


class ConflictError(TaggartError):
    """The requested filename is already in use."""


class NotFoundError(TaggartError):
    """A file, category or tag could not be found.

    Bulk validation reports every missing id at once through `missing`.
    """

    def __init__(self, message: str, missing: Optional[List[int]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class NoMatchesError(TaggartError):
    """A tag query matched nothing. Recoverable; the user should adjust the query."""


class StorageError(TaggartError):
    """A catalog read or write failed. Wraps the driver error with context."""


class MediaProcessingError(TaggartError):
    """The external media tooling (ffprobe/ffmpeg) failed."""


class PartialFailureError(TaggartError):
    """
    A multi-step operation failed after some steps had completed. The
    completed steps were reversed; any reversal that itself failed is listed
    in `rollback_failures`. The original exception is chained as __cause__.
    """

    def __init__(self, operation: str, cause: BaseException, rollback_failures: Optional[List[str]] = None):
        self.operation = operation
        self.rollback_failures = list(rollback_failures or [])
        message = f"{operation} failed: {cause}"
        if self.rollback_failures:
            message += f" (rollback incomplete: {'; '.join(self.rollback_failures)})"
        super().__init__(message)
