"""Pydantic schemas for the secrets API. Responses never include ciphertext or plaintext."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from deadman.models.enums import ContactMethod


class RecipientIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, max_length=32)
    contact_method: ContactMethod = ContactMethod.EMAIL

    @model_validator(mode="after")
    def contact_matches_method(self):
        if self.contact_method in (ContactMethod.EMAIL, ContactMethod.BOTH) and not self.email:
            raise ValueError(f"email is required for contact method {self.contact_method.value}")
        if self.contact_method in (ContactMethod.PHONE, ContactMethod.BOTH) and not self.phone:
            raise ValueError(f"phone is required for contact method {self.contact_method.value}")
        return self


class SecretCreate(BaseModel):
    """Body for creating a secret. `content` is encrypted before it is stored."""

    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    check_in_days: int = Field(30, ge=1)
    recipients: list[RecipientIn] = Field(..., min_length=1)


class SecretUpdate(BaseModel):
    """Partial update: title and/or interval."""

    title: str | None = Field(None, min_length=1, max_length=255)
    check_in_days: int | None = Field(None, ge=1)


class RecipientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    email: str | None
    phone: str | None
    contact_method: str


class SecretResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    check_in_days: int
    status: str
    last_check_in: datetime
    next_check_in: datetime
    triggered_at: datetime | None
    created_at: datetime
    recipients: list[RecipientResponse]


class ReminderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    scheduled_for: datetime
    status: str
    retry_count: int
    sent_at: datetime | None
    error: str | None


class CheckInResponse(BaseModel):
    success: bool = True
    secret_id: str
    secret_title: str
    next_check_in: datetime
    message: str = "Check-in successful"
