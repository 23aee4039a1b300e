from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _trimmed(value: str) -> str:
    return value.strip() if isinstance(value, str) else value


class SignupIn(BaseModel):
    email: EmailStr
    name: str = Field(min_length=2, max_length=128)
    dob: date

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _trimmed(v)


class SignupOut(BaseModel):
    message: str
    user_id: str
    otp_sent: bool
    dev_code: Optional[str] = None
    expires_at: Optional[datetime] = None


class SigninIn(BaseModel):
    email: EmailStr


class SigninOut(BaseModel):
    message: str
    email: str
    status: str
    expires_at: Optional[datetime] = None
    dev_code: Optional[str] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None


class VerifyOtpIn(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=16)

    @field_validator("otp", mode="before")
    @classmethod
    def strip_otp(cls, v):
        return _trimmed(v)


class MessageOut(BaseModel):
    message: str


class GoogleSigninIn(BaseModel):
    id_token: str = Field(min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    dob: Optional[date] = None
    verified: bool
    profile_picture: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def id_as_str(cls, v):
        return str(v)


class SessionOut(BaseModel):
    message: str
    user: UserOut
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    user: UserOut


class NoteIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1, max_length=10000)

    @field_validator("title", "content", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _trimmed(v)


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    content: str
    user_id: str
    created_at: datetime
    updated_at: datetime

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def ids_as_str(cls, v):
        return str(v)


class NoteEnvelopeOut(BaseModel):
    message: str
    note: NoteOut


class NotesListOut(BaseModel):
    notes: List[NoteOut]
