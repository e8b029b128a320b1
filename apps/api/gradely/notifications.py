from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gradely.db import AsyncSessionLocal
from gradely.models import Notification

GRADED_NOTIFICATION = "graded"


class Notifier(Protocol):
    async def graded(self, user_id: int, assignment_id: int, score: float) -> None:
        ...


class SqlNotifier(Notifier):
    """Stores an in-app notification row per finished grading pass."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self.session_factory = session_factory

    async def graded(self, user_id: int, assignment_id: int, score: float) -> None:
        async with self.session_factory() as session:
            session.add(
                Notification(
                    user_id=user_id,
                    type=GRADED_NOTIFICATION,
                    payload={"assignment_id": assignment_id, "score": score},
                )
            )
            await session.commit()
