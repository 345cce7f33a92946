"""
Requester preference storage. Missing preferences resolve to the defaults,
in the deployment's default timezone.
"""

from typing import Protocol

from psycopg.types.json import Jsonb

from stina.db.helpers import execute_query, fetch_one, with_db_retry
from stina.db.pool import DatabasePoolManager
from stina.models.domain.preferences_domain import UserPreferences


class PreferencesRepository(Protocol):
    async def get(self, user_email: str) -> UserPreferences: ...

    async def save(self, user_email: str, preferences: UserPreferences) -> UserPreferences: ...


class InMemoryPreferencesRepository:
    def __init__(
        self,
        preferences: dict[str, UserPreferences] | None = None,
        default_timezone: str = "UTC",
    ):
        self._preferences = {k.lower(): v for k, v in (preferences or {}).items()}
        self.default_timezone = default_timezone

    async def get(self, user_email: str) -> UserPreferences:
        stored = self._preferences.get(user_email.lower())
        if stored is None:
            return UserPreferences(timezone=self.default_timezone)
        return stored.model_copy(deep=True)

    async def save(self, user_email: str, preferences: UserPreferences) -> UserPreferences:
        self._preferences[user_email.lower()] = preferences.model_copy(deep=True)
        return preferences


class PostgresPreferencesRepository:
    def __init__(self, db_pool: DatabasePoolManager, default_timezone: str = "UTC"):
        self.db_pool = db_pool
        self.default_timezone = default_timezone

    @with_db_retry(max_retries=2)
    async def get(self, user_email: str) -> UserPreferences:
        row = await fetch_one(
            self.db_pool,
            "SELECT preferences FROM user_preferences WHERE user_email = %s",
            (user_email.lower(),),
        )
        if not row or not row["preferences"]:
            return UserPreferences(timezone=self.default_timezone)
        return UserPreferences.model_validate(row["preferences"])

    @with_db_retry(max_retries=2)
    async def save(self, user_email: str, preferences: UserPreferences) -> UserPreferences:
        await execute_query(
            self.db_pool,
            """
            INSERT INTO user_preferences (user_email, preferences, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (user_email)
            DO UPDATE SET preferences = EXCLUDED.preferences, updated_at = NOW()
            """,
            (user_email.lower(), Jsonb(preferences.model_dump(mode="json"))),
        )
        return preferences
