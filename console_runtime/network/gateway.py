"""Authenticated HTTP gateway with timeout, bounded retry and error normalization."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode, urlsplit

import requests
from requests import Response

from console_runtime.config import RuntimeSettings
from console_runtime.errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    NetworkError,
    ProtocolError,
    RequestTimeout,
)
from console_runtime.models import ApiResponse, DownloadResult

LOGGER = logging.getLogger(__name__)

_IDEMPOTENT_READS = frozenset({"GET", "HEAD", "OPTIONS"})
_CHUNK_SIZE = 1024 * 1024

TokenProvider = Callable[[], Optional[str]]


class RequestGateway:
    """Executes every outbound REST call for the console.

    The gateway never stores or changes the credential. It reads it through
    ``token_provider`` and, when an authenticated call comes back 401, calls
    ``on_unauthorized`` with the token that call carried before raising
    :class:`AuthorizationError`.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        token_provider: TokenProvider,
        on_unauthorized: Optional[Callable[[Optional[str]], Any]] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings
        self._token_provider = token_provider
        self.on_unauthorized = on_unauthorized
        self._http = http if http is not None else requests.Session()
        self._base_url = str(settings.api_base_url).rstrip("/")
        self._base_path = urlsplit(self._base_url).path.rstrip("/")
        self._retry_statuses = frozenset(settings.retry_status_codes)

    async def get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("GET", endpoint, params=params, **kwargs)

    async def post(self, endpoint: str, json: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.request("POST", endpoint, json=json, **kwargs)

    async def put(self, endpoint: str, json: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.request("PUT", endpoint, json=json, **kwargs)

    async def delete(self, endpoint: str, **kwargs: Any) -> ApiResponse:
        return await self.request("DELETE", endpoint, **kwargs)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        authenticated: bool = True,
        retry: Optional[bool] = None,
        invalidate_on_unauthorized: bool = True,
        bearer: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ApiResponse:
        method = method.upper()
        url = self.build_url(endpoint, params=params)
        token = self._credential(authenticated=authenticated, bearer=bearer)
        headers = self._build_headers(token)
        timeout = self._timeout(timeout_ms)
        should_retry = method in _IDEMPOTENT_READS if retry is None else retry
        max_attempts = 1 + (self._settings.request_retry_attempts if should_retry else 0)

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._execute(
                    lambda: self._http.request(method, url, headers=headers, json=json, timeout=timeout),
                    description=f"{method} {url}",
                    timeout=timeout,
                )
            except NetworkError as exc:
                if attempt >= max_attempts:
                    raise
                LOGGER.warning("Request %s %s failed (attempt %s/%s): %s", method, url, attempt, max_attempts, exc)
                await self._sleep_before_retry(attempt)
                continue

            status = response.status_code
            if status == 401:
                self._raise_unauthorized(
                    response,
                    token=token,
                    authenticated=authenticated,
                    invalidate=invalidate_on_unauthorized,
                )
            if status in self._retry_statuses and attempt < max_attempts:
                LOGGER.warning(
                    "Request %s %s returned %s (attempt %s/%s); retrying",
                    method,
                    url,
                    status,
                    attempt,
                    max_attempts,
                )
                await self._sleep_before_retry(attempt)
                continue
            return self._normalize(response)

    async def download(
        self,
        endpoint: str,
        dest_path: Path,
        *,
        params: Optional[Mapping[str, Any]] = None,
        authenticated: bool = True,
    ) -> DownloadResult:
        """Stream a binary response body to ``dest_path``."""

        url = self.build_url(endpoint, params=params)
        token = self._credential(authenticated=authenticated, bearer=None)
        headers = self._build_headers(token)
        headers["Accept"] = "*/*"
        timeout = self._timeout(None)
        response = await self._execute(
            lambda: self._http.request("GET", url, headers=headers, timeout=timeout, stream=True),
            description=f"GET {url}",
            timeout=timeout,
        )
        try:
            self._check_status(response, token=token, authenticated=authenticated, invalidate=True)
            size_bytes = await asyncio.to_thread(self._write_stream, response, Path(dest_path))
        finally:
            response.close()
        LOGGER.info("Downloaded %s bytes from %s to %s", size_bytes, url, dest_path)
        return DownloadResult(path=Path(dest_path), size_bytes=size_bytes)

    async def upload(
        self,
        endpoint: str,
        path: Path,
        *,
        field: str = "file",
        data: Optional[Dict[str, Any]] = None,
        content_type: str = "application/octet-stream",
        authenticated: bool = True,
    ) -> ApiResponse:
        """Send ``path`` as a multipart upload."""

        url = self.build_url(endpoint)
        token = self._credential(authenticated=authenticated, bearer=None)
        headers = self._build_headers(token)
        timeout = self._timeout(None)
        source = Path(path)

        def _post() -> Response:
            with source.open("rb") as handle:
                files = {field: (source.name, handle, content_type)}
                return self._http.request("POST", url, headers=headers, data=data, files=files, timeout=timeout)

        response = await self._execute(_post, description=f"POST {url}", timeout=timeout)
        if response.status_code == 401:
            self._raise_unauthorized(response, token=token, authenticated=authenticated, invalidate=True)
        return self._normalize(response)

    def build_url(self, endpoint: str, *, params: Optional[Mapping[str, Any]] = None) -> str:
        if endpoint.startswith(("http://", "https://")):
            url = endpoint
        else:
            path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
            if self._base_path and (path == self._base_path or path.startswith(f"{self._base_path}/")):
                path = path[len(self._base_path):]
            url = f"{self._base_url}{path}"
        if params:
            query = urlencode({key: value for key, value in params.items() if value is not None}, doseq=True)
            if query:
                return f"{url}?{query}"
        return url

    def _credential(self, *, authenticated: bool, bearer: Optional[str]) -> Optional[str]:
        return bearer or (self._token_provider() if authenticated else None)

    def _build_headers(self, token: Optional[str]) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _timeout(self, timeout_ms: Optional[int]) -> float:
        value = timeout_ms if timeout_ms is not None else self._settings.request_timeout_ms
        return max(0.001, value / 1000.0)

    async def _execute(self, call: Callable[[], Response], *, description: str, timeout: float) -> Response:
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(f"{description} timed out after {timeout:.3f}s") from exc
        except requests.Timeout as exc:
            raise RequestTimeout(f"{description} timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"{description} failed: {exc}") from exc

    async def _sleep_before_retry(self, attempt: int) -> None:
        delay_ms = self._settings.request_retry_delay_ms
        if self._settings.request_retry_backoff == "linear":
            delay_ms *= attempt
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

    def _raise_unauthorized(
        self,
        response: Response,
        *,
        token: Optional[str],
        authenticated: bool,
        invalidate: bool,
    ) -> None:
        message = _error_message(response) or "Unauthorized"
        if not (authenticated and invalidate):
            raise AuthenticationError(message)
        LOGGER.warning("Authenticated request to %s rejected with 401; clearing session", response.url)
        if self.on_unauthorized is not None:
            try:
                self.on_unauthorized(token)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Session invalidation hook failed")
        raise AuthorizationError(message)

    def _check_status(
        self,
        response: Response,
        *,
        token: Optional[str],
        authenticated: bool,
        invalidate: bool,
    ) -> None:
        status = response.status_code
        if status == 401:
            self._raise_unauthorized(response, token=token, authenticated=authenticated, invalidate=invalidate)
        if status >= 400:
            raise ApiError(status, _error_message(response) or f"HTTP {status}")

    def _normalize(self, response: Response) -> ApiResponse:
        status = response.status_code
        if status >= 400:
            raise ApiError(status, _error_message(response) or f"HTTP {status}")
        if not response.content:
            return ApiResponse(success=True, status_code=status, data=None)
        try:
            body = json.loads(response.content)
        except ValueError as exc:
            raise ProtocolError(f"Unparsable response body from {response.url} (HTTP {status})") from exc
        if not isinstance(body, dict):
            return ApiResponse(success=True, status_code=status, data=body)
        success = body.get("success", True) is not False
        data = body["data"] if "data" in body else body
        error = None if success else _message_from_body(body)
        return ApiResponse(success=success, status_code=status, data=data, error=error)

    @staticmethod
    def _write_stream(response: Response, dest_path: Path) -> int:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        size_bytes = 0
        with dest_path.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if not chunk:
                    continue
                handle.write(chunk)
                size_bytes += len(chunk)
        return size_bytes


def _message_from_body(body: Mapping[str, Any]) -> Optional[str]:
    for key in ("error", "message"):
        value = body.get(key)
        if isinstance(value, dict):
            value = value.get("message")
        if value:
            return str(value)
    return None


def _error_message(response: Response) -> Optional[str]:
    if not response.content:
        return None
    try:
        body = json.loads(response.content)
    except ValueError:
        return None
    if isinstance(body, dict):
        return _message_from_body(body)
    return None


__all__ = ["RequestGateway", "TokenProvider"]
