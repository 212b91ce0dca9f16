from __future__ import annotations

import logging
from typing import List, Optional

from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .errors import ValidationError
from .models import User as DBUser
from .schemas import (
    ROLES,
    USER_PATCH_FIELDS,
    UserPatch,
    UserRecord,
    UserWithHash,
    check_email,
    check_password,
    check_user_name,
    first_error_message,
)
from .security import get_password_hash, make_password_context, verify_password

logger = logging.getLogger(__name__)


def _validated(check, value):
    try:
        return check(value)
    except ValueError as e:
        raise ValidationError(str(e))


class UserStore:
    """
    Credential store over one SQLAlchemy session.

    Every mutating call commits before returning. Records handed out are
    ``UserRecord`` snapshots; the password hash only leaves through
    ``find_by_email(..., include_hash=True)``.
    """

    def __init__(self, db: Session, pwd_context: Optional[CryptContext] = None) -> None:
        self.db = db
        self.pwd_context = pwd_context or make_password_context()

    def _get(self, user_id) -> Optional[DBUser]:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        return self.db.get(DBUser, user_id)

    def create(self, name: str, email: str, password: str, role: str = "student") -> UserRecord:
        name = _validated(check_user_name, name)
        email = _validated(check_email, email)
        password = _validated(check_password, password)
        if role not in ROLES:
            raise ValidationError("Role must be student or admin")

        if self.db.query(DBUser.id).filter(DBUser.email == email).first():
            raise ValidationError("User already exists")

        db_user = DBUser(
            name=name,
            email=email,
            hashed_password=get_password_hash(self.pwd_context, password),
            role=role,
        )
        self.db.add(db_user)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race against a concurrent signup for the same email.
            self.db.rollback()
            raise ValidationError("User already exists")
        self.db.refresh(db_user)
        logger.info("User created id=%s role=%s", db_user.id, role)
        return UserRecord.model_validate(db_user)

    def find_by_email(self, email: str, include_hash: bool = False) -> Optional[UserRecord]:
        email = (email or "").strip().lower()
        if not email:
            return None
        db_user = self.db.query(DBUser).filter(func.lower(DBUser.email) == email).first()
        if db_user is None:
            return None
        if include_hash:
            return UserWithHash.model_validate(db_user)
        return UserRecord.model_validate(db_user)

    def find_by_id(self, user_id) -> Optional[UserRecord]:
        db_user = self._get(user_id)
        return UserRecord.model_validate(db_user) if db_user is not None else None

    async def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        return await run_in_threadpool(verify_password, self.pwd_context, plain_password, hashed_password)

    # ---- administrative ----

    def update(self, user_id, patch: dict) -> Optional[UserRecord]:
        changes = {k: v for k, v in (patch or {}).items() if k in USER_PATCH_FIELDS}
        if not changes:
            raise ValidationError("No valid fields to update")

        db_user = self._get(user_id)
        if db_user is None:
            return None

        try:
            changes = UserPatch.model_validate(changes).changes()
        except PydanticValidationError as e:
            raise ValidationError(first_error_message(e))

        if "email" in changes:
            clash = (
                self.db.query(DBUser.id)
                .filter(DBUser.email == changes["email"], DBUser.id != db_user.id)
                .first()
            )
            if clash:
                raise ValidationError("User already exists")

        for key, value in changes.items():
            setattr(db_user, key, value)
        self.db.commit()
        self.db.refresh(db_user)
        return UserRecord.model_validate(db_user)

    def delete(self, user_id) -> bool:
        """Remove a user; their tasks go with them."""
        db_user = self._get(user_id)
        if db_user is None:
            return False
        self.db.delete(db_user)
        self.db.commit()
        logger.info("User deleted id=%s", user_id)
        return True

    def find_all(self) -> List[UserRecord]:
        return [UserRecord.model_validate(u) for u in self.db.query(DBUser).order_by(DBUser.id).all()]

    def count(self) -> int:
        return self.db.query(DBUser).count()
