# models/__init__.py
from .base import Base, utcnow
from .user import User, Role
from .student import Student
from .ticket_account import TicketAccount
from .ticket_transaction import TicketTransaction, TransactionType
from .ticket_recharge import TicketRecharge, RechargeStatus

__all__ = [
     "Base",
     "utcnow",
     "User",
     "Role",
     "Student",
     "TicketAccount",
     "TicketTransaction",
     "TransactionType",
     "TicketRecharge",
     "RechargeStatus",
]
