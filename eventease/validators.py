"""Request payload schemas and the per-event RSVP validator."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    FiniteFloat,
    ValidationError,
    create_model,
    field_validator,
    model_validator,
)

from .utils import to_naive_utc

FieldType = Literal["text", "number", "email", "select", "checkbox", "date"]
RoleName = Literal["ADMIN", "STAFF", "EVENT_OWNER"]

_SCALAR_TYPES: dict[str, Any] = {
    "text": str,
    "number": FiniteFloat,
    "email": EmailStr,
    "checkbox": bool,
    "date": date,
}


class CustomField(BaseModel):
    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: FieldType
    required: bool = False
    options: list[str] | None = None
    placeholder: str | None = None

    @model_validator(mode="after")
    def _select_needs_options(self) -> "CustomField":
        if self.type == "select" and not self.options:
            raise ValueError("Select fields need at least one option")
        return self


def _validate_custom_field_ids(fields: list[CustomField] | None):
    if not fields:
        return fields
    seen: set[str] = set()
    for field in fields:
        if field.id in seen:
            raise ValueError(f"Duplicate custom field id: {field.id}")
        seen.add(field.id)
    return fields


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=3)
    description: str | None = None
    location: str | None = None
    start_date: datetime
    end_date: datetime | None = None
    custom_fields: list[CustomField] = Field(default_factory=list)
    is_published: bool = False

    @field_validator("custom_fields")
    @classmethod
    def _unique_field_ids(cls, value):
        return _validate_custom_field_ids(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _naive_utc(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> "EventCreatePayload":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be after the start date")
        return self


class EventUpdatePayload(BaseModel):
    title: str | None = Field(None, min_length=3)
    description: str | None = None
    location: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    custom_fields: list[CustomField] | None = None
    is_published: bool | None = None

    @field_validator("custom_fields")
    @classmethod
    def _unique_field_ids(cls, value):
        return _validate_custom_field_ids(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _naive_utc(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value)


class RSVPPayload(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: str | None = None
    responses: dict[str, Any] | None = None


class SignUpPayload(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=50)


class SignInPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class RoleUpdatePayload(BaseModel):
    user_id: str
    role: RoleName


def parse_custom_fields(raw: Any) -> list[CustomField]:
    """Return the valid custom fields stored on an event.

    Stored data that no longer parses is treated as "no custom fields".
    """
    if not raw:
        return []
    try:
        return [CustomField.model_validate(item) for item in raw]
    except (ValidationError, TypeError):
        return []


def build_rsvp_model(custom_fields: list[CustomField]) -> type[BaseModel]:
    """Build an RSVP schema whose ``responses`` match the event's fields."""
    if not custom_fields:
        return RSVPPayload

    definitions: dict[str, Any] = {}
    for index, field in enumerate(custom_fields):
        if field.type == "select":
            annotation: Any = Literal[tuple(field.options or ())]
        else:
            annotation = _SCALAR_TYPES.get(field.type, str)
        # Field ids are arbitrary strings, so they travel as aliases.
        if field.required:
            definitions[f"field_{index}"] = (annotation, Field(..., alias=field.id))
        else:
            definitions[f"field_{index}"] = (
                Optional[annotation],
                Field(None, alias=field.id),
            )

    responses_model = create_model(
        "RSVPResponses",
        __config__=ConfigDict(extra="ignore"),
        **definitions,
    )
    return create_model(
        "EventRSVPPayload",
        __base__=RSVPPayload,
        responses=(responses_model, Field(default={}, validate_default=True)),
    )


def validate_rsvp(custom_fields: list[CustomField], data: dict[str, Any]) -> dict:
    """Validate a submission and return plain, JSON-ready values.

    Raises ``pydantic.ValidationError`` when the submission does not fit.
    """
    model = build_rsvp_model(custom_fields)
    payload = model.model_validate(data)
    cleaned = payload.model_dump(mode="json", by_alias=True)
    responses = cleaned.get("responses") or {}
    cleaned["responses"] = {
        key: value for key, value in responses.items() if value is not None
    }
    return cleaned


def format_validation_errors(exc) -> list[str]:
    """Flatten pydantic or FastAPI validation errors into "loc: msg" lines."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages
