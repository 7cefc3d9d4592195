from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, false, func, true
from sqlalchemy.orm import relationship

from app.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Public, non-sequential identifier handed to clients.
    user_uid = Column(String(36), unique=True, index=True, nullable=False)

    username = Column(String(255), unique=True, index=True, nullable=False)
    # Nullable: Apple users may withhold their email entirely.
    email = Column(String(255), unique=True, index=True, nullable=True)
    first_name = Column(String(100), nullable=False, server_default="")
    last_name = Column(String(100), nullable=False, server_default="")
    role = Column(String(30), nullable=False, server_default="user")
    phone_number = Column(String(32), nullable=True)

    media_data = Column(JSON, nullable=True)
    other_data = Column(JSON, nullable=True)
    user_data = Column(JSON, nullable=True)

    # Owned by password login; social-only accounts have none.
    password_hash = Column(String(255), nullable=True)

    is_active = Column(Boolean, nullable=False, server_default=true())
    is_email_verified = Column(Boolean, nullable=False, server_default=false())
    # Bumped to invalidate outstanding access tokens.
    token_version = Column(Integer, nullable=False, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # user → linked provider identities
    linked_identities = relationship(
        "LinkedIdentity",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    # user → refresh tokens
    refresh_tokens = relationship(
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
    )
