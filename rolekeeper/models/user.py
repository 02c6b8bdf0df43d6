"""User model — the subset of identity columns the role core reads and writes."""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, func
from rolekeeper.db.base import Base


class User(Base):
    """Platform user carrying both the legacy and the new-model role fields.

    ``role`` is the free-form pre-migration value; ``primary_role`` and
    ``role_status`` belong to the assignment model. Rows are owned by the
    identity subsystem and never deleted here.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(String(50), nullable=True)
    primary_role = Column(String(50), nullable=True)
    role_status = Column(String(20), nullable=True)
    institution_id = Column(String(36), ForeignKey("institutions.id"), nullable=True, index=True)
    department_id = Column(String(36), ForeignKey("departments.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
