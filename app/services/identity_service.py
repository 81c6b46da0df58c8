from __future__ import annotations

import hashlib
import os

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.domain.models import (
    BootstrapAdminRequest,
    User,
    UserCreate,
    UserUpdate,
)
from app.domain.state_machine import ActorRole
from app.infra.db import get_engine


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "team-sync-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.exec(select(User)).first() is not None:
                raise ConflictError("workspace already initialized")
            admin_user = User(
                username=payload.username,
                display_name=payload.display_name or payload.username,
                password_hash=self._hash_password(payload.password),
                role=ActorRole.ADMIN,
                is_active=True,
            )
            session.add(admin_user)
            session.commit()
            session.refresh(admin_user)
            return admin_user

    def create_user(self, payload: UserCreate) -> User:
        user = User(
            username=payload.username,
            display_name=payload.display_name or payload.username,
            password_hash=self._hash_password(payload.password),
            role=payload.role,
            is_active=payload.is_active,
        )
        with self._session() as session:
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists") from exc
            session.refresh(user)
            return user

    def list_users(self, *, role: ActorRole | None = None, is_active: bool | None = None) -> list[User]:
        with self._session() as session:
            statement = select(User)
            if role is not None:
                statement = statement.where(User.role == role)
            if is_active is not None:
                statement = statement.where(User.is_active == is_active)
            rows = list(session.exec(statement).all())
            return sorted(rows, key=lambda item: item.created_at)

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if payload.password is not None:
                user.password_hash = self._hash_password(payload.password)
            if payload.display_name is not None:
                user.display_name = payload.display_name
            if payload.role is not None:
                if user.role == ActorRole.ADMIN and payload.role != ActorRole.ADMIN:
                    self._ensure_other_active_admin(session, user.id)
                user.role = payload.role
            if payload.is_active is not None:
                if user.role == ActorRole.ADMIN and not payload.is_active:
                    self._ensure_other_active_admin(session, user.id)
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def delete_user(self, user_id: str) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if user.role == ActorRole.ADMIN:
                self._ensure_other_active_admin(session, user.id)
            session.delete(user)
            session.commit()

    def display_name(self, user_id: str) -> str:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return user_id
            return user.display_name or user.username

    def active_user_ids(self, user_ids: list[str]) -> set[str]:
        if not user_ids:
            return set()
        with self._session() as session:
            rows = session.exec(select(User).where(User.id.in_(user_ids))).all()  # type: ignore[attr-defined]
            return {item.id for item in rows if item.is_active}

    def dev_login(self, username: str, password: str) -> User:
        with self._session() as session:
            user = session.exec(select(User).where(User.username == username)).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user

    def _ensure_other_active_admin(self, session: Session, user_id: str) -> None:
        others = session.exec(
            select(User)
            .where(User.role == ActorRole.ADMIN)
            .where(User.is_active == True)  # noqa: E712
            .where(User.id != user_id)
        ).first()
        if others is None:
            raise ConflictError("cannot remove the last active admin")
