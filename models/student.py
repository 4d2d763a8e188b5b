# models/student.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from .base import Base


class Student(Base):
     """
     Student model - profile for users with role=STUDENT.
     Owns exactly one ticket account (created at first need).
     """
     __tablename__ = "students"

     id = Column(Integer, primary_key=True, autoincrement=True)
     user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

     # Profile
     school_level = Column(String(100), nullable=True)
     parent_email = Column(String(255), nullable=True)

     # Timestamps
     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     # Relationships
     user = relationship("User", back_populates="student")
     ticket_account = relationship("TicketAccount", back_populates="student", uselist=False)
     recharges = relationship("TicketRecharge", back_populates="student")

     def __repr__(self):
          return f"<Student(id={self.id}, user_id={self.user_id})>"
