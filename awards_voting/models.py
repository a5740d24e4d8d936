"""
Pydantic models for the awards voting service.

This module contains:
- Entities returned by the service (Category, Nominee, VotingSlot, StatisticEntry, User)
- Request payloads validated client-side before anything is sent
- build_request: turns pydantic failures into the client's ValidationError
"""
from enum import Enum
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class Role(str, Enum):
    """User roles known to the service."""
    USER = "USER"
    ADMIN = "ADMIN"


class ServiceModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    class Config:
        populate_by_name = True
        extra = "ignore"

    def to_payload(self) -> dict:
        """Convert to the JSON body expected by the service."""
        return self.model_dump(by_alias=True)


class Category(ServiceModel):
    """Award category."""

    id: int
    name: str
    description: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoUrl")


class Nominee(ServiceModel):
    """Nominee, belonging to exactly one category."""

    id: int
    name: str
    photo_url: Optional[str] = Field(default=None, alias="photoUrl")
    category: Optional[Category] = None


class VotingSlot(ServiceModel):
    """
    A nominee enabled for voting within a category.

    The slot id is what a vote is cast for.
    """

    id: int
    category: Optional[Category] = None
    nominee: Nominee


class StatisticEntry(ServiceModel):
    """
    Read-only per (category, nominee) vote count reported by the service.

    Rows for a deleted nominee or category come back with that side null.
    """

    id: Optional[int] = None
    category: Optional[Category] = None
    nominee: Optional[Nominee] = None
    count: int = 0

    @property
    def is_countable(self) -> bool:
        return self.category is not None and self.nominee is not None


class User(ServiceModel):
    """Authenticated user as returned by login."""

    id: int
    username: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Request payloads

def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} is required")
    return str(value).strip()


class Credentials(ServiceModel):
    """Login / registration payload."""

    username: str = ""
    password: str = ""

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        """Validate username is not blank."""
        return _require_text(v, "Username")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        """Validate password is not blank."""
        if not v:
            raise ValueError("Password is required")
        return v


class CategoryRequest(ServiceModel):
    """Create/update category payload."""

    name: str = ""
    description: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoUrl")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Validate category name is not blank."""
        return _require_text(v, "Category name")


class NomineeRequest(ServiceModel):
    """Create nominee payload."""

    category_id: Optional[int] = Field(default=None, alias="categoryId", validate_default=True)
    name: str = ""
    photo_url: Optional[str] = Field(default=None, alias="photoUrl")

    @field_validator("category_id")
    @classmethod
    def validate_category(cls, v):
        """A nominee must belong to a category."""
        if v is None:
            raise ValueError("Category is required")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Validate nominee name is not blank."""
        return _require_text(v, "Nominee name")


class NomineeUpdateRequest(ServiceModel):
    """Update nominee payload (category is fixed)."""

    name: str = ""
    photo_url: Optional[str] = Field(default=None, alias="photoUrl")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Validate nominee name is not blank."""
        return _require_text(v, "Nominee name")


class VotingSlotsRequest(ServiceModel):
    """Enable a set of nominees for voting in a category."""

    category_id: Optional[int] = Field(default=None, alias="categoryId", validate_default=True)
    nominee_ids: List[int] = Field(default_factory=list, alias="nomineeIds", validate_default=True)

    @field_validator("category_id")
    @classmethod
    def validate_category(cls, v):
        """A voting round needs a category."""
        if v is None:
            raise ValueError("Category is required")
        return v

    @field_validator("nominee_ids")
    @classmethod
    def validate_nominees(cls, v):
        """At least one nominee must be selected."""
        if not v:
            raise ValueError("At least one nominee must be selected")
        # Drop repeats, keep order
        return list(dict.fromkeys(v))


RequestT = TypeVar("RequestT", bound=ServiceModel)


def build_request(model: Type[RequestT], **fields) -> RequestT:
    """
    Build a request payload, raising the client's ValidationError on failure.

    Args:
        model: Request model class
        **fields: Field values by Python name

    Returns:
        Validated request model

    Raises:
        ValidationError: First validation failure, before any call is made
    """
    try:
        return model(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = first.get("loc") or ()
        message = first.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        raise ValidationError(message, field=str(loc[0]) if loc else None) from e
