"""Session lookup and the employee allow-list.

Sessions are created by the login flow; this core only reads them to
identify HTTP callers and WebSocket connections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.config import Settings
from jerkyrank.db.models import User, UserSession


@dataclass(frozen=True)
class AdminPolicy:
    """Who counts as an employee, and who may run destructive admin operations."""

    roles: frozenset[str] = frozenset({"employee_admin"})
    email_domains: tuple[str, ...] = ("jerky.com",)
    super_admin_emails: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> AdminPolicy:
        return cls(
            roles=frozenset(settings.admin_roles),
            email_domains=tuple(d.lower().lstrip("@") for d in settings.admin_email_domains),
            super_admin_emails=frozenset(e.lower() for e in settings.super_admin_emails),
        )

    def is_admin(self, role: str | None, email: str | None) -> bool:
        if role in self.roles:
            return True
        if not email:
            return False
        domain = email.rsplit("@", 1)[-1].lower()
        return domain in self.email_domains

    def is_super_admin(self, role: str | None, email: str | None) -> bool:
        if not self.is_admin(role, email):
            return False
        if not self.super_admin_emails:
            return True
        return (email or "").lower() in self.super_admin_emails


@dataclass(frozen=True)
class SessionUser:
    """The authenticated caller behind a session id."""

    id: int
    email: str
    first_name: str | None
    last_name: str | None
    display_name: str | None
    role: str
    is_admin: bool
    is_super_admin: bool


async def load_session_user(db: AsyncSession, session_id: str, now: datetime | None = None) -> User | None:
    """The user owning an unexpired session, or None."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(User)
        .join(UserSession, UserSession.user_id == User.id)
        .where(UserSession.id == session_id, UserSession.expires_at > now)
    )
    return result.scalar_one_or_none()


class SessionAuthenticator:
    """Resolves a session id to a :class:`SessionUser` in a session of its own."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], policy: AdminPolicy) -> None:
        self._session_factory = session_factory
        self.policy = policy

    def to_session_user(self, user: User) -> SessionUser:
        return SessionUser(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            role=user.role,
            is_admin=self.policy.is_admin(user.role, user.email),
            is_super_admin=self.policy.is_super_admin(user.role, user.email),
        )

    async def __call__(self, session_id: str | None) -> SessionUser | None:
        if not session_id:
            return None
        async with self._session_factory() as db:
            user = await load_session_user(db, session_id)
        if user is None:
            return None
        return self.to_session_user(user)
