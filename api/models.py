"""
API request and response models for IDecs REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in accounts/models.py and
nav/models.py, which own the internal domain representation. Route handlers
map between the two.

JSON field names are camelCase on the wire (confirmPassword, parentId,
pageSize). alias_generator=to_camel plus populate_by_name lets route code use
the snake_case attribute names while clients send either form.

Field rules (password strength, phone and email format) come from core.policy
so the API and the server-rendered forms reject exactly the same input.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.models import LoginType, ResponseCode
from core.policy import USERNAME_MAX_LENGTH, check_email, check_password, check_phone, normalize_identity

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _raise_if(message: Optional[str]) -> None:
    if message:
        raise ValueError(message)


def _check_confirm(new_password: str, confirm_password: str) -> None:
    if new_password != confirm_password:
        raise ValueError("Passwords do not match.")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ResponseHead(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: int = ResponseCode.OK
    message: str = "OK"


class ApiResponse(BaseModel):
    """Every /api response body: {"head": {"code", "message"}, "data": ...}.

    head.code == 0 means success. On errors data is None, or a list of
    {field, message} entries for validation failures.
    """

    model_config = ConfigDict(frozen=True)

    head: ResponseHead = Field(default_factory=ResponseHead)
    data: Any = None


# ---------------------------------------------------------------------------
# User -- signup and login
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/user/signup.

    Exactly one of email / phone is given. code is the OTP previously sent to
    that identity via POST /api/email or POST /api/sms.
    """

    model_config = _REQUEST_CONFIG

    email: Optional[str] = None
    phone: Optional[str] = None
    code: str = Field(min_length=1, max_length=12)
    password: str
    confirm_password: str
    username: Optional[str] = Field(default=None, max_length=USERNAME_MAX_LENGTH)
    profile: dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = normalize_identity(v)
        _raise_if(check_email(v))
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        _raise_if(check_phone(v))
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        _raise_if(check_password(v))
        return v

    @model_validator(mode="after")
    def check_identity_and_confirm(self) -> "SignupRequest":
        if bool(self.email) == bool(self.phone):
            raise ValueError("Provide either an email address or a phone number.")
        _check_confirm(self.password, self.confirm_password)
        return self


class LoginRequest(BaseModel):
    """Request body for POST /api/user/login.

    type=password needs password; type=otp needs code. service binds the
    issued ticket to a relying service URL (must be an allowed SSO service).
    """

    model_config = _REQUEST_CONFIG

    identity: str = Field(min_length=1, max_length=128)
    type: LoginType = LoginType.password
    password: Optional[str] = Field(default=None, max_length=128)
    code: Optional[str] = Field(default=None, max_length=12)
    service: Optional[str] = Field(default=None, max_length=512)

    @field_validator("identity")
    @classmethod
    def strip_identity(cls, v: str) -> str:
        return normalize_identity(v)

    @model_validator(mode="after")
    def check_secret_present(self) -> "LoginRequest":
        if self.type is LoginType.password and not self.password:
            raise ValueError("Password is required.")
        if self.type is LoginType.otp and not self.code:
            raise ValueError("Verification code is required.")
        return self


# ---------------------------------------------------------------------------
# User -- password, profile, identity binding
# ---------------------------------------------------------------------------


class PasswordChangeRequest(BaseModel):
    """Request body for PUT /api/user/password/change."""

    model_config = _REQUEST_CONFIG

    old_password: str = Field(min_length=1, max_length=128)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        _raise_if(check_password(v))
        return v

    @model_validator(mode="after")
    def check_confirm(self) -> "PasswordChangeRequest":
        _check_confirm(self.new_password, self.confirm_password)
        return self


class PasswordResetRequest(BaseModel):
    """Request body for PUT /api/user/password/reset (forgotten password)."""

    model_config = _REQUEST_CONFIG

    identity: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=1, max_length=12)
    new_password: str
    confirm_password: str

    @field_validator("identity")
    @classmethod
    def strip_identity(cls, v: str) -> str:
        return normalize_identity(v)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        _raise_if(check_password(v))
        return v

    @model_validator(mode="after")
    def check_confirm(self) -> "PasswordResetRequest":
        _check_confirm(self.new_password, self.confirm_password)
        return self


class ProfileUpdateRequest(BaseModel):
    """Request body for PUT /api/user/profile.

    profile is merged into the stored profile one level deep; a key sent with
    value null is removed.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=USERNAME_MAX_LENGTH)
    profile: Optional[dict[str, Any]] = None


class BindRequest(BaseModel):
    """Request body for PUT /api/user/bind. Exactly one of email / phone."""

    model_config = _REQUEST_CONFIG

    email: Optional[str] = None
    phone: Optional[str] = None
    code: str = Field(min_length=1, max_length=12)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = normalize_identity(v)
        _raise_if(check_email(v))
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        _raise_if(check_phone(v))
        return v

    @model_validator(mode="after")
    def check_one_identity(self) -> "BindRequest":
        if bool(self.email) == bool(self.phone):
            raise ValueError("Provide either an email address or a phone number.")
        return self


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------


class SmsRequest(BaseModel):
    """Request body for POST /api/sms."""

    model_config = _REQUEST_CONFIG

    phone: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        _raise_if(check_phone(v))
        return v


class SmsVerifyRequest(SmsRequest):
    """Request body for POST /api/sms/verify."""

    code: str = Field(min_length=1, max_length=12)


class EmailRequest(BaseModel):
    """Request body for POST /api/email."""

    model_config = _REQUEST_CONFIG

    email: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = normalize_identity(v)
        _raise_if(check_email(v))
        return v


class EmailVerifyRequest(EmailRequest):
    """Request body for POST /api/email/verify."""

    code: str = Field(min_length=1, max_length=12)


# ---------------------------------------------------------------------------
# Nav
# ---------------------------------------------------------------------------


class NavRequest(BaseModel):
    """Request body for POST /api/nav and PUT /api/nav/{id}.

    parentId 0 places the entry at the top level.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=64)
    description: str = Field(default="", max_length=255)
    parent_id: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    app: str = "ok"
    database: str = "ok"


class HealthResponse(BaseModel):
    """Response for GET /api/health. Not wrapped in the envelope."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: HealthComponents = Field(default_factory=HealthComponents)
