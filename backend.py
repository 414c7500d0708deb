from typing import Any, Dict, List, Optional
import json
import logging
import os

import httpx

# --- Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- PHP backend configuration ---
PHP_API_BASE_URL = os.getenv("PHP_API_BASE_URL", "http://localhost/restuarent/api")
BACKEND_TIMEOUT = float(os.getenv("BACKEND_TIMEOUT", "30"))

DB_ERROR_MARKERS = ("access denied", "using password: no", "mysqli_connect", "database connection", "connection failed")


class BackendResponse:
    """
    Envelope for one PHP call. `ok` follows the dashboard convention:
    HTTP 2xx, or a JSON body that explicitly says success=true.
    Network failures never raise; they come back with status 0.
    """

    def __init__(
        self,
        ok: bool,
        status: int,
        data: Any = None,
        url: str = "",
        raw_text: str = "",
        timed_out: bool = False,
    ):
        self.ok = ok
        self.status = status
        self.data = data
        self.url = url
        self.raw_text = raw_text
        self.timed_out = timed_out

    @property
    def is_success(self) -> bool:
        return self.ok and isinstance(self.data, dict) and self.data.get("success") is True

    @property
    def message(self) -> Optional[str]:
        data = self.data
        if isinstance(data, str):
            return data
        if not isinstance(data, dict):
            return None
        for key in ("message", "error", "details", "msg"):
            if data.get(key):
                return str(data[key])
        nested = data.get("data")
        if isinstance(nested, dict):
            for key in ("message", "error"):
                if nested.get(key):
                    return str(nested[key])
        return None

    @property
    def tried_urls(self) -> List[str]:
        if isinstance(self.data, dict) and isinstance(self.data.get("triedUrls"), list):
            return self.data["triedUrls"]
        return [self.url] if self.url else []

    def __repr__(self):
        return f"<BackendResponse ok={self.ok} status={self.status} url={self.url}>"


def _failure(url: str, status: int, message: str, raw_text: str = "", timed_out: bool = False) -> BackendResponse:
    data = {"success": False, "message": message, "endpoint": url}
    if raw_text:
        data["rawResponse"] = raw_text[:500]
    return BackendResponse(False, status, data, url=url, raw_text=raw_text, timed_out=timed_out)


def parse_backend_response(endpoint: str, response: httpx.Response) -> BackendResponse:
    url = str(response.request.url) if response.request else endpoint
    text = response.text or ""

    if not text.strip():
        logger.error(f"❌ Empty response from {endpoint} (HTTP {response.status_code})")
        return _failure(url, response.status_code, "Server returned an empty response. Please check server logs or try again.")

    try:
        data = json.loads(text)
    except ValueError:
        lowered = text.lower()
        if any(marker in lowered for marker in DB_ERROR_MARKERS):
            logger.error(f"❌ Database error page from {endpoint}: {text[:200]}")
            return _failure(url, response.status_code or 500, "Database Connection Error", raw_text=text)
        logger.error(f"❌ Invalid JSON response from {endpoint}: {text[:200]}")
        return _failure(url, response.status_code, "Invalid response from server. Please check server logs.", raw_text=text)

    if isinstance(data, dict) and not data:
        # List endpoints answer {} when there are no rows
        if "get_" in endpoint:
            return BackendResponse(True, response.status_code, [], url=url, raw_text=text)
        return BackendResponse(response.is_success, response.status_code, {}, url=url, raw_text=text)

    if isinstance(data, dict) and data.get("success") is not True:
        lowered = json.dumps(data).lower()
        if any(marker in lowered for marker in DB_ERROR_MARKERS):
            logger.error(f"❌ Database error reported by {endpoint}: {data}")
            return BackendResponse(False, response.status_code or 500, {
                "success": False,
                "message": "Database Connection Error",
                "details": data.get("message") or data.get("error"),
                "rawResponse": data,
            }, url=url, raw_text=text)

    ok = response.is_success or (isinstance(data, dict) and data.get("success") is True)
    return BackendResponse(ok, response.status_code, data, url=url, raw_text=text)


class PosBackend:
    """Thin async client for the PHP endpoints; one short-lived httpx client per call."""

    def __init__(
        self,
        base_url: str = None,
        token: Optional[str] = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or PHP_API_BASE_URL).rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else BACKEND_TIMEOUT
        self.transport = transport

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> BackendResponse:
        url = self._url(endpoint)
        try:
            async with httpx.AsyncClient(
                timeout=timeout if timeout is not None else self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, url, json=payload, params=params, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️  {method} {endpoint} timed out: {e}")
            return _failure(url, 0, "Request Timeout: the server took too long to respond.", timed_out=True)
        except httpx.RequestError as e:
            logger.error(f"❌ {method} {endpoint} failed (network error): {e}")
            return _failure(url, 0, "Cannot connect to server. Please ensure the API is running and accessible.")

        return parse_backend_response(endpoint, response)

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> BackendResponse:
        return await self.request("GET", endpoint, params=params, **kwargs)

    async def post(self, endpoint: str, payload: Dict[str, Any], **kwargs) -> BackendResponse:
        return await self.request("POST", endpoint, payload=payload, **kwargs)

    async def delete(self, endpoint: str, payload: Dict[str, Any], **kwargs) -> BackendResponse:
        return await self.request("DELETE", endpoint, payload=payload, **kwargs)
