from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, field_validator, model_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    def matches(self, email: Optional[str], phone: Optional[str]) -> bool:
        """True when every supplied field equals the stored value."""
        if email is not None and self.email != email:
            return False
        if phone is not None and self.phoneNumber != phone:
            return False
        return email is not None or phone is not None


class ContactDraft(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY

    @model_validator(mode="after")
    def check_link(self):
        if self.email is None and self.phoneNumber is None:
            raise ValueError("a contact needs an email or a phoneNumber")
        if self.linkPrecedence == LinkPrecedence.PRIMARY and self.linkedId is not None:
            raise ValueError("a primary contact cannot have a linkedId")
        if self.linkPrecedence == LinkPrecedence.SECONDARY and self.linkedId is None:
            raise ValueError("a secondary contact needs a linkedId")
        return self


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[Union[str, int]] = None

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("phoneNumber")
    @classmethod
    def phone_as_text(cls, value):
        if value is None:
            return None
        return str(value)


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse
