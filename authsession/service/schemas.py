from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Response bodies of the backend auth endpoints. Unknown fields are kept
# (extra="allow") because login and register responses inline the user.


class LoginResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None

    def user_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class RefreshResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None

    @field_validator("refresh_token")
    @classmethod
    def _blank_is_missing(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ValidateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user: Dict[str, Any]

    @field_validator("user")
    @classmethod
    def _require_id(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if value.get("id") is None:
            raise ValueError("user payload has no id")
        return value


class RegisterResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    token: Optional[str] = None
    refresh_token: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        data = dict(self.model_extra or {})
        if self.token:
            data["token"] = self.token
        return data


class PassportResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    memberships: List[Dict[str, Any]] = Field(default_factory=list)
    last_updated: Optional[str] = None

    @field_validator("memberships", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return value or []
