from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class PosError(Exception):
    """Base for every failure surfaced to the operator as an error alert."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics or {}

    def to_detail(self) -> Dict[str, Any]:
        detail = {"alert": {"type": "error", "message": self.message}}
        if self.diagnostics:
            detail["diagnostics"] = self.diagnostics
        return detail


# --- Client-side validation, never reaches the network ---
class ValidationError(PosError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransition(ValidationError):
    pass


class TableUnavailable(ValidationError):
    status_code = status.HTTP_409_CONFLICT


class PermissionDenied(PosError):
    status_code = status.HTTP_403_FORBIDDEN


class OrderNotFound(PosError):
    status_code = status.HTTP_404_NOT_FOUND


# --- Backend answered, but not in a way we can trust ---
class AmbiguousResponseError(PosError):
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        body: Any = None,
        tried_urls: Optional[List[str]] = None,
    ):
        diagnostics: Dict[str, Any] = {"status_code": http_status}
        if body is not None:
            diagnostics["details"] = truncate(body)
        if tried_urls:
            diagnostics["triedUrls"] = tried_urls
        super().__init__(message, diagnostics)


class BillCreationAmbiguous(AmbiguousResponseError):
    """Bill may exist server-side but its id was not returned."""


class PaymentFailed(AmbiguousResponseError):
    pass


class BackendUnavailable(PosError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def truncate(body: Any, limit: int = 500) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text if len(text) <= limit else text[:limit] + "..."


def to_http(error: PosError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_detail())
