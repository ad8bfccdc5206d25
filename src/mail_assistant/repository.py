"""Mail repository used by the retrieval engine to load messages and contacts."""

import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from mail_assistant.models import Contact, Email


@runtime_checkable
class MailRepository(Protocol):
    async def load_email(self, email_id: str) -> Email | None: ...

    async def load_contact(self, address: str) -> Contact | None: ...

    async def load_prior_response(
        self, thread_id: str, after: datetime | None
    ) -> Email | None: ...

    async def load_thread(self, thread_id: str, limit: int) -> list[Email]: ...


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _sort_key(email: Email) -> datetime:
    return _as_utc(email.sent_date)


class InMemoryMailRepository:
    """Messages and contacts held in dictionaries.

    Contacts not added explicitly are derived from the messages: every
    sender gets a Contact with received/sent counts and the date of the
    latest exchange.
    """

    def __init__(
        self,
        emails: Iterable[Email] = (),
        contacts: Iterable[Contact] = (),
    ) -> None:
        self._lock = threading.Lock()
        self._emails: dict[str, Email] = {}
        self._contacts: dict[str, Contact] = {c.email.lower(): c for c in contacts}
        self.add_many(emails)

    def __len__(self) -> int:
        return len(self._emails)

    def add(self, email: Email) -> None:
        with self._lock:
            self._emails[email.id] = email

    def add_many(self, emails: Iterable[Email]) -> None:
        with self._lock:
            for email in emails:
                self._emails[email.id] = email

    def add_contact(self, contact: Contact) -> None:
        with self._lock:
            self._contacts[contact.email.lower()] = contact

    def all_emails(self) -> list[Email]:
        with self._lock:
            return sorted(self._emails.values(), key=_sort_key)

    async def load_email(self, email_id: str) -> Email | None:
        with self._lock:
            return self._emails.get(email_id)

    async def load_contact(self, address: str) -> Contact | None:
        key = address.lower()
        with self._lock:
            contact = self._contacts.get(key)
            if contact is not None:
                return contact
            received = [e for e in self._emails.values() if e.sender_email.lower() == key]
            sent = [
                e
                for e in self._emails.values()
                if e.is_sent and key in (r.lower() for r in e.recipients)
            ]
        if not received and not sent:
            return None
        exchanged = received + sent
        latest = max(exchanged, key=_sort_key)
        named = next((e.sender_name for e in received if e.sender_name), None)
        return Contact(
            email=key,
            name=named,
            email_count_received=len(received),
            email_count_sent=len(sent),
            last_contacted=latest.sent_date,
        )

    async def load_prior_response(
        self, thread_id: str, after: datetime | None
    ) -> Email | None:
        """Earliest message the user sent in *thread_id* after *after*."""
        with self._lock:
            replies = [
                e
                for e in self._emails.values()
                if e.is_sent and (e.thread_id or e.id) == thread_id
            ]
        if after is not None:
            cutoff = _as_utc(after)
            replies = [e for e in replies if _sort_key(e) > cutoff]
        if not replies:
            return None
        return min(replies, key=_sort_key)

    async def load_thread(self, thread_id: str, limit: int) -> list[Email]:
        """The *limit* most recent messages of a thread, oldest first."""
        with self._lock:
            messages = [
                e for e in self._emails.values() if (e.thread_id or e.id) == thread_id
            ]
        messages.sort(key=_sort_key)
        return messages[-limit:] if limit > 0 else []
