"""
Contact directory lookups used by the get_contact tool.

Returns None when nobody matches; callers must not invent contact data.
"""

from typing import Protocol

from stina.db.helpers import fetch_all, with_db_retry
from stina.db.pool import DatabasePoolManager
from stina.models.domain.preferences_domain import ContactRecord


class ContactDirectory(Protocol):
    async def find(self, identifier: str, strict: bool = False) -> ContactRecord | None: ...


def match_contact(contacts: list[ContactRecord], identifier: str, strict: bool) -> ContactRecord | None:
    """
    Exact email or exact name first; non-strict lookups fall back to a
    case-insensitive partial name match.
    """
    needle = identifier.strip().lower()
    if not needle:
        return None

    for contact in contacts:
        if contact.email.lower() == needle:
            return contact
    for contact in contacts:
        if contact.name and contact.name.lower() == needle:
            return contact

    if strict:
        return None

    for contact in contacts:
        if contact.name and needle in contact.name.lower():
            return contact
    return None


class InMemoryContactDirectory:
    def __init__(self, contacts: list[ContactRecord] | None = None):
        self._contacts = list(contacts or [])

    def add(self, contact: ContactRecord) -> None:
        self._contacts = [c for c in self._contacts if c.email.lower() != contact.email.lower()]
        self._contacts.append(contact)

    async def find(self, identifier: str, strict: bool = False) -> ContactRecord | None:
        return match_contact(self._contacts, identifier, strict)


class PostgresContactDirectory:
    """Contacts owned by one user, stored in user_contacts."""

    def __init__(self, db_pool: DatabasePoolManager, owner_email: str):
        self.db_pool = db_pool
        self.owner_email = owner_email.lower()

    @with_db_retry(max_retries=2)
    async def find(self, identifier: str, strict: bool = False) -> ContactRecord | None:
        needle = identifier.strip().lower()
        if not needle:
            return None

        query = """
            SELECT record FROM user_contacts
            WHERE owner_email = %s
              AND (lower(email) = %s OR lower(name) = %s OR (%s AND lower(name) LIKE %s))
            ORDER BY email
        """
        rows = await fetch_all(
            self.db_pool,
            query,
            (self.owner_email, needle, needle, not strict, f"%{needle}%"),
        )
        contacts = [ContactRecord.model_validate(row["record"]) for row in rows]
        return match_contact(contacts, identifier, strict)
