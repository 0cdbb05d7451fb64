from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


RoleValue = Literal["community_member", "architect", "admin", "tool_doctor"]


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    fullName: Optional[str] = None
    organization: Optional[str] = None
    role: Optional[RoleValue] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


class RoleUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: RoleValue
