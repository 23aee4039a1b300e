import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    email = Column(String(254), nullable=False, unique=True, index=True)  # lower-cased
    name = Column(String(128), nullable=False)
    dob = Column(Date, nullable=True)  # absent for federated identities
    verified = Column(Boolean, nullable=False, default=False)
    google_id = Column(String(64), nullable=True, unique=True, index=True)
    profile_picture = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    notes = relationship("Note", back_populates="owner")


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"

    id = Column(String(32), primary_key=True)
    email = Column(String(254), nullable=False, unique=True, index=True)
    code = Column(String(16), nullable=False)
    provider_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)  # naive UTC
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Note(Base):
    __tablename__ = "notes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User", back_populates="notes")
