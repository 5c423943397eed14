from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

import httpx

from authsession.logging import get_logger
from authsession.service.errors import ErrorKind, error_for
from authsession.storage.credentials import CredentialStore

logger = get_logger(__name__)

RefreshHandler = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class ApiResult:
    """Outcome of one backend call: either ``data`` or an ``error`` kind."""

    ok: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, status_code: int, data: Any) -> "ApiResult":
        return cls(ok=True, status_code=status_code, data=data)

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        *,
        status_code: Optional[int] = None,
        data: Any = None,
        message: Optional[str] = None,
    ) -> "ApiResult":
        return cls(ok=False, status_code=status_code, data=data, error=error, message=message)

    def with_data(self, data: Any) -> "ApiResult":
        return replace(self, data=data)

    def raise_for_error(self) -> "ApiResult":
        """Raise the matching ``SessionError`` for a failed result."""
        if not self.ok:
            raise error_for(self.error or ErrorKind.UNREACHABLE, self.status_code, self.data)
        return self


def classify_status(
    status_code: int, *, unauthorized: ErrorKind = ErrorKind.INVALID_CREDENTIALS
) -> ErrorKind:
    if status_code == 400:
        return ErrorKind.MALFORMED_REQUEST
    if status_code == 401:
        return unauthorized
    if status_code == 409:
        return ErrorKind.DUPLICATE_ACCOUNT
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNEXPECTED_STATUS


class TransportClient:
    """HTTP access to the backend.

    Two ``httpx.AsyncClient`` instances are kept. The main client attaches the
    stored access token and, on a 401, asks the registered refresh handler for
    a new token and retries the request once. The isolated client never
    attaches a token and never retries; refresh calls go through it so a
    failing access token cannot re-enter refresh handling.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.credentials = credentials
        headers = {"Content-Type": "application/json"}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            headers=headers,
            transport=transport,
        )
        self._isolated_client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            headers=headers,
            transport=transport,
        )
        self._refresh_handler: Optional[RefreshHandler] = None

    def set_refresh_handler(self, handler: Optional[RefreshHandler]) -> None:
        self._refresh_handler = handler

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        json: Any = None,
        token: Optional[str] = None,
        unauthorized: ErrorKind = ErrorKind.INVALID_CREDENTIALS,
    ) -> ApiResult:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "backend_unreachable",
                method=method,
                path=path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ApiResult.failure(ErrorKind.UNREACHABLE, message=str(exc))

        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                if response.is_success:
                    logger.warning(
                        "backend_response_not_json", path=path, status_code=response.status_code
                    )
                    return ApiResult.failure(
                        ErrorKind.MALFORMED_RESPONSE, status_code=response.status_code
                    )
        if response.is_success:
            return ApiResult.success(response.status_code, body)
        kind = classify_status(response.status_code, unauthorized=unauthorized)
        logger.info("backend_call_failed", path=path, status_code=response.status_code, kind=kind.value)
        return ApiResult.failure(kind, status_code=response.status_code, data=body)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        authenticate: bool = True,
        token: Optional[str] = None,
        retry_on_401: bool = True,
        unauthorized: ErrorKind = ErrorKind.INVALID_CREDENTIALS,
    ) -> ApiResult:
        """Issue a request through the authenticated path.

        ``token`` overrides the stored access token. With ``authenticate``
        false no Authorization header is sent and no retry happens.
        """
        if authenticate and token is None:
            token = await self.credentials.get_access_token()
            if not token:
                logger.debug("request_without_access_token", path=path)
        result = await self._send(
            self._client, method, path, json=json, token=token, unauthorized=unauthorized
        )
        if (
            result.status_code != 401
            or not authenticate
            or not retry_on_401
            or self._refresh_handler is None
        ):
            return result

        logger.info("request_unauthorized_refreshing", path=path)
        if not await self._refresh_handler():
            return result
        new_token = await self.credentials.get_access_token()
        return await self._send(
            self._client, method, path, json=json, token=new_token, unauthorized=unauthorized
        )

    async def request_isolated(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        unauthorized: ErrorKind = ErrorKind.REFRESH_FAILED,
    ) -> ApiResult:
        """Issue a request with no token decoration and no 401 handling."""
        return await self._send(
            self._isolated_client, method, path, json=json, unauthorized=unauthorized
        )

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._isolated_client.aclose()
