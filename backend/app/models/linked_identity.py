from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class LinkedIdentity(Base):
    """Binding of an external provider identity to a local user. Never mutated."""

    __tablename__ = "linked_identities"
    __table_args__ = (
        # One provider identity maps to exactly one local account.
        UniqueConstraint("provider", "subject", name="uq_linked_identities_provider_subject"),
        # A local account holds at most one identity per provider.
        UniqueConstraint("user_id", "provider", name="uq_linked_identities_user_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)

    provider = Column(String(20), nullable=False)
    # Provider `sub` claim: opaque and stable.
    subject = Column(String(255), nullable=False)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="linked_identities")
