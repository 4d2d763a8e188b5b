# models/user.py
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, func
from sqlalchemy.orm import relationship
from .base import Base


class Role(str, enum.Enum):
     """Marketplace roles. Selects which profile row accompanies the user."""
     STUDENT = "STUDENT"
     TUTOR = "TUTOR"
     PARENT = "PARENT"
     ADMIN = "ADMIN"


class User(Base):
     """
     User model - central identity record shared by every role.
     Role-specific data lives in a profile table selected by `role`
     (only the student profile is needed by the ticket ledger).
     """
     __tablename__ = "users"

     id = Column(Integer, primary_key=True, autoincrement=True)
     email = Column(String(255), unique=True, nullable=False, index=True)
     first_name = Column(String(100), nullable=False)
     last_name = Column(String(100), nullable=False)
     role = Column(
          Enum(Role, name="user_role", create_constraint=True),
          nullable=False,
          index=True
     )
     is_active = Column(Boolean, default=True, nullable=False)
     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     # Relationships
     student = relationship("Student", back_populates="user", uselist=False)

     def __repr__(self):
          return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"
