# dependencies.py
"""
Shared FastAPI dependencies: bearer token auth, role checks, ledger error mapping.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

import config
from models import Student
from services.exceptions import (
     LedgerError,
     NotFoundError,
     InsufficientBalanceError,
     DuplicateDebitError,
     DuplicateRefundError,
     ConflictError,
     InvalidPayloadError,
     InvalidRequestError,
)


def verify_token(request: Request) -> dict:
     auth = request.headers.get("Authorization")
     if not auth or not auth.startswith("Bearer "):
          raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
     token = auth.split(" ")[1]
     try:
          payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
          return payload
     except JWTError:
          raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")


def token_role(token: dict) -> str:
     return str(token.get("role") or "").upper()


def require_roles(*roles: str):
     """Dependency factory: the token role must be one of `roles`."""
     allowed = {r.upper() for r in roles}

     def _check(token: dict = Depends(verify_token)) -> dict:
          if token_role(token) not in allowed:
               raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="You do not have permission to perform this action"
               )
          return token

     return _check


def resolve_student_id(db: Session, token: dict, requested: Optional[int] = None) -> int:
     """
     Student the request acts on.

     Students always act on themselves; admins and internal services must
     name the student explicitly.
     """
     role = token_role(token)
     if role in ("ADMIN", "SERVICE"):
          if requested is None:
               raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="student_id is required")
          return requested

     if role != "STUDENT":
          raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only students own ticket accounts")

     student_id = token.get("student_id")
     if student_id is None:
          student = db.query(Student).filter(Student.user_id == token.get("id")).first()
          if student is None:
               raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student profile not found")
          student_id = student.id
     if requested is not None and requested != student_id:
          raise HTTPException(
               status_code=status.HTTP_403_FORBIDDEN,
               detail="You do not have permission to access this ticket account"
          )
     return student_id


_LEDGER_ERROR_STATUS = (
     (NotFoundError, status.HTTP_404_NOT_FOUND),
     (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
     (DuplicateDebitError, status.HTTP_409_CONFLICT),
     (DuplicateRefundError, status.HTTP_409_CONFLICT),
     (ConflictError, status.HTTP_409_CONFLICT),
     (InvalidPayloadError, status.HTTP_400_BAD_REQUEST),
     (InvalidRequestError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def ledger_http_error(exc: LedgerError) -> HTTPException:
     """HTTP error for a ledger exception raised by the services."""
     for error_type, status_code in _LEDGER_ERROR_STATUS:
          if isinstance(exc, error_type):
               return HTTPException(status_code=status_code, detail=str(exc))
     return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
