from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import ErrorKind
from authsession.service.schemas import (
    LoginResponse,
    PassportResponse,
    RefreshResponse,
    RegisterResponse,
    ValidateResponse,
)
from authsession.service.transport import ApiResult, TransportClient

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _user_payload(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """User fields either inline or nested under ``user``."""
    if data.get("id") is not None:
        return data
    nested = data.get("user")
    if isinstance(nested, dict) and nested.get("id") is not None:
        return nested
    return None


class AuthAPI:
    """Typed calls to the backend's auth and passport endpoints.

    Every method returns an ``ApiResult``; on success ``data`` holds the parsed
    response model (or user dict), never the raw body.
    """

    def __init__(self, transport: TransportClient, settings: Settings) -> None:
        self.transport = transport
        self.settings = settings

    @staticmethod
    def _parse(result: ApiResult, model: Type[ModelT], operation: str) -> ApiResult:
        if not result.ok:
            return result
        if not isinstance(result.data, dict):
            logger.warning("backend_payload_not_object", operation=operation)
            return ApiResult.failure(ErrorKind.MALFORMED_RESPONSE, status_code=result.status_code)
        try:
            return result.with_data(model.model_validate(result.data))
        except ValidationError as exc:
            logger.warning(
                "backend_payload_invalid",
                operation=operation,
                errors=exc.error_count(),
            )
            return ApiResult.failure(
                ErrorKind.MALFORMED_RESPONSE, status_code=result.status_code, data=result.data
            )

    async def login(self, email: str, password: str) -> ApiResult:
        result = await self.transport.request(
            "POST",
            self.settings.login_path,
            json={"email": email, "password": password},
            authenticate=False,
        )
        result = self._parse(result, LoginResponse, "login")
        if result.ok and _user_payload(result.data.user_fields()) is None:
            logger.warning("login_response_missing_user")
            return ApiResult.failure(ErrorKind.MALFORMED_RESPONSE, status_code=result.status_code)
        return result

    async def register(self, username: str, email: str, password: str) -> ApiResult:
        result = await self.transport.request(
            "POST",
            self.settings.register_path,
            json={"username": username, "email": email, "password": password},
            authenticate=False,
        )
        return self._parse(result, RegisterResponse, "register")

    async def validate(self, access_token: str) -> ApiResult:
        """Present ``access_token`` to the backend; 401 maps to TOKEN_EXPIRED."""
        result = await self.transport.request(
            self.settings.validate_method.value,
            self.settings.validate_path,
            token=access_token,
            retry_on_401=False,
            unauthorized=ErrorKind.TOKEN_EXPIRED,
        )
        return self._parse(result, ValidateResponse, "validate")

    async def me(self) -> ApiResult:
        result = await self.transport.request(
            "GET", self.settings.me_path, unauthorized=ErrorKind.TOKEN_EXPIRED
        )
        if not result.ok:
            return result
        user = _user_payload(result.data) if isinstance(result.data, dict) else None
        if user is None:
            return ApiResult.failure(ErrorKind.MALFORMED_RESPONSE, status_code=result.status_code)
        return result.with_data(user)

    async def refresh(self, refresh_token: str) -> ApiResult:
        """Exchange ``refresh_token`` over the isolated transport path."""
        result = await self.transport.request_isolated(
            "POST",
            self.settings.refresh_path,
            json={"refresh_token": refresh_token},
        )
        if not result.ok and result.error in (
            ErrorKind.MALFORMED_REQUEST,
            ErrorKind.UNEXPECTED_STATUS,
        ):
            return ApiResult.failure(
                ErrorKind.REFRESH_FAILED, status_code=result.status_code, data=result.data
            )
        return self._parse(result, RefreshResponse, "refresh")

    async def fetch_passport(self) -> ApiResult:
        result = await self.transport.request("GET", self.settings.passport_path)
        return self._parse(result, PassportResponse, "passport")

    async def sync_passport(self) -> ApiResult:
        result = await self.transport.request("POST", self.settings.passport_sync_path)
        return self._parse(result, PassportResponse, "passport_sync")

    async def health_check(self) -> ApiResult:
        return await self.transport.request(
            "GET", self.settings.health_check_path, authenticate=False
        )
