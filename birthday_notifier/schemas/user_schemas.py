from typing import Optional
from datetime import date, datetime
import uuid

from pydantic import Field, field_validator, model_validator

from birthday_notifier.schemas.camel_base_model import CamelCaseBaseModel


class CreateUserRequest(CamelCaseBaseModel):
    """Request schema for registering a user"""

    first_name: str = Field(..., min_length=1, max_length=100, description="First name")
    last_name: str = Field(..., min_length=1, max_length=100, description="Last name")
    birthday: date = Field(..., description="Birthday (ISO date)")
    location: str = Field(..., min_length=1, max_length=200, description="Location")
    timezone: str = Field(
        ..., min_length=1, max_length=50, description="IANA timezone, e.g. America/New_York"
    )

    @field_validator("first_name", "last_name", "location", "timezone", mode="before")
    @classmethod
    def strip_strings(cls, v):
        return v.strip() if isinstance(v, str) else v


class UpdateUserRequest(CamelCaseBaseModel):
    """Request schema for updating a user; at least one field is required"""

    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    birthday: Optional[date] = None
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    timezone: Optional[str] = Field(None, min_length=1, max_length=50)

    @field_validator("first_name", "last_name", "location", "timezone", mode="before")
    @classmethod
    def strip_strings(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def require_any_field(self):
        if not self.model_dump(exclude_none=True):
            raise ValueError("At least one field must be provided")
        return self


class UserResponse(CamelCaseBaseModel):
    """Response schema for user data"""

    id: uuid.UUID
    first_name: str
    last_name: str
    birthday: date
    location: str
    timezone: str
    pending_notifications: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OccurrenceResponse(CamelCaseBaseModel):
    """Response schema for one scheduled birthday notification"""

    id: uuid.UUID
    user_id: uuid.UUID
    scheduled_at: datetime
    status: str
    attempt_count: int
    error_kind: Optional[str] = None
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
