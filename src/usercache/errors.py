"""Exception types for the user cache and mapping of Microsoft Graph errors onto them."""

from typing import Any
from typing import Dict
from typing import Optional

# Graph error codes returned when a delta link can no longer be used
DELTA_TOKEN_EXPIRED_CODES = {
    "resyncrequired",
    "syncstatenotfound",
    "syncstateinvalid",
}

__all__ = [
    "UserCacheError",
    "DataLoadError",
    "DeltaTokenExpiredError",
    "GraphAuthError",
    "CacheStorageError",
    "SyncError",
    "classify_graph_error",
]


class UserCacheError(Exception):
    """Base class for all user cache failures."""


class DataLoadError(UserCacheError):
    """Upstream directory could not be read (network, auth, throttling, server error)."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class DeltaTokenExpiredError(DataLoadError):
    """The continuation token was rejected; a full load is required."""


class GraphAuthError(DataLoadError):
    """Token acquisition for Microsoft Graph failed."""


class CacheStorageError(UserCacheError):
    """The persistence layer failed to read or write."""


class SyncError(UserCacheError):
    """A sync cycle failed. The original failure is chained as __cause__."""


def classify_graph_error(status_code: int, payload: Optional[Dict[str, Any]] = None) -> DataLoadError:
    """
    Map a failed Graph response to the matching exception.

    - 410 Gone, or a resync/sync-state error code -> DeltaTokenExpiredError
    - 401 Unauthorized / 403 Forbidden -> GraphAuthError
    - anything else (429 throttling, 5xx, other 4xx) -> DataLoadError

    Parameters
    ----------
    status_code : int
        HTTP status of the Graph response
    payload : dict, optional
        Parsed JSON body; Graph wraps failures as {"error": {"code": ..., "message": ...}}

    Returns
    -------
    DataLoadError
        Exception instance ready to be raised by the caller
    """
    error = (payload or {}).get("error") or {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    error_code = error.get("code") or ""
    error_message = error.get("message") or ""

    detail = f"Graph request failed with status {status_code}"
    if error_code:
        detail += f" ({error_code})"
    if error_message:
        detail += f": {error_message}"

    if status_code == 410 or error_code.lower() in DELTA_TOKEN_EXPIRED_CODES:
        return DeltaTokenExpiredError(detail, status_code=status_code, error_code=error_code or None)
    if status_code in (401, 403):
        return GraphAuthError(detail, status_code=status_code, error_code=error_code or None)
    return DataLoadError(detail, status_code=status_code, error_code=error_code or None)
