"""User repository: idempotent upsert and atomic counter updates.

Counter writes are single UPDATE statements with SQL-side arithmetic so that
concurrent handlers never lose an increment (no read-modify-write in Python).
"""

import logging
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from smachno_api.db.models import User

logger = logging.getLogger(__name__)


class UserRepository:
    """Data access for the users table. Does not commit."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_pk: int) -> Optional[User]:
        return self.db.get(User, user_pk)

    def get_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        stmt = select(User).where(User.telegram_id == telegram_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> User:
        """Return the user for telegram_id, creating it on first sight.

        Profile fields are refreshed when supplied; counters are never touched.
        A concurrent insert losing the unique constraint re-reads the winner.
        """
        user = self.get_by_telegram_id(telegram_id)
        if user is None:
            candidate = User(
                telegram_id=telegram_id,
                username=username,
                first_name=first_name,
                free_generations_used=0,
                paid_generations_used=0,
                total_generations=0,
                total_paid=0,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(candidate)
                    self.db.flush()
                logger.info(
                    "USER_CREATED",
                    extra={"event": "user.created", "telegram_id": telegram_id},
                )
                return candidate
            except IntegrityError:
                logger.info(
                    "USER_CREATE_RACE_LOST",
                    extra={"event": "user.create_race_lost", "telegram_id": telegram_id},
                )
                user = self.get_by_telegram_id(telegram_id)
                if user is None:
                    raise

        if username is not None and user.username != username:
            user.username = username
        if first_name is not None and user.first_name != first_name:
            user.first_name = first_name
        self.db.flush()
        return user

    def add_total_paid(self, user_pk: int, amount: int) -> None:
        """total_paid += amount (atomic)."""
        self.db.execute(
            update(User)
            .where(User.id == user_pk)
            .values(total_paid=User.total_paid + amount)
        )

    def subtract_total_paid_floored(self, user_pk: int, amount: int) -> None:
        """total_paid = max(0, total_paid - amount) (atomic)."""
        self.db.execute(
            update(User)
            .where(User.id == user_pk)
            .values(
                total_paid=case(
                    (User.total_paid > amount, User.total_paid - amount),
                    else_=0,
                )
            )
        )

    def try_consume_free(self, user_pk: int, quota: int) -> bool:
        """Increment free usage iff still below quota. Returns True on success."""
        result = self.db.execute(
            update(User)
            .where(User.id == user_pk, User.free_generations_used < quota)
            .values(
                free_generations_used=User.free_generations_used + 1,
                total_generations=User.total_generations + 1,
            )
        )
        return result.rowcount == 1

    def try_consume_paid(self, user_pk: int, granted: int) -> bool:
        """Increment paid usage iff still below granted credits."""
        result = self.db.execute(
            update(User)
            .where(User.id == user_pk, User.paid_generations_used < granted)
            .values(
                paid_generations_used=User.paid_generations_used + 1,
                total_generations=User.total_generations + 1,
            )
        )
        return result.rowcount == 1

    def totals(self) -> tuple[int, int]:
        """Return (user count, sum of total_generations) across all users."""
        stmt = select(
            func.count(User.id),
            func.coalesce(func.sum(User.total_generations), 0),
        )
        users, generations = self.db.execute(stmt).one()
        return int(users), int(generations)
