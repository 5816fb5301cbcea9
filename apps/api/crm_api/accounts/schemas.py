from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


UserStatus = Literal["active", "inactive"]


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    created_at: datetime


class RoleWithCapabilities(RoleRead):
    capabilities: dict[str, Any] = Field(default_factory=dict)


class RegionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    country_id: int


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    email: str
    status: str
    roles: list[str] = Field(default_factory=list)
    regions: list[RegionSummary] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CurrentUserRead(UserRead):
    permissions: dict[str, Any] = Field(default_factory=dict)


class LoginResponse(BaseModel):
    token: str
    user: CurrentUserRead


class UserRegister(BaseModel):
    full_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    roles: list[str] = Field(default_factory=lambda: ["User"])
    status: UserStatus = "active"
    region_ids: list[int] = Field(default_factory=list)


class UserRegistered(BaseModel):
    user: UserRead
    token: str
    temporary_password: str
    note: str


class UserUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    password: str | None = Field(default=None, min_length=8)
    status: UserStatus | None = None
    roles: list[str] | None = None
    region_ids: list[int] | None = None


class UserStatusUpdate(BaseModel):
    status: UserStatus


class CountryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str | None
    is_active: bool
    created_at: datetime


class RegionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    country_id: int
    is_active: bool = True


class RegionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    country_id: int
    is_active: bool
    created_at: datetime


class RegionWithCountry(RegionRead):
    country_name: str | None = None
    country_code: str | None = None
