"""Tests for the repository module."""

import pytest

from conftest import NOW, make_email
from mail_assistant.models import Contact
from mail_assistant.repository import InMemoryMailRepository, MailRepository


class TestInMemoryMailRepository:
    def test_satisfies_protocol(self, repository) -> None:
        assert isinstance(repository, MailRepository)
        assert len(repository) == 5

    def test_all_emails_sorted(self, repository) -> None:
        ids = [e.id for e in repository.all_emails()]
        assert ids == ["in-1", "out-1", "in-2", "out-2", "in-3"]

    def test_undated_sorts_first(self) -> None:
        repo = InMemoryMailRepository(
            [make_email("dated", "x"), make_email("undated", "y", days_ago=None)]
        )
        assert [e.id for e in repo.all_emails()] == ["undated", "dated"]

    @pytest.mark.asyncio
    async def test_load_email(self, repository) -> None:
        assert (await repository.load_email("in-2")).subject == "Offsite"
        assert await repository.load_email("missing") is None

    @pytest.mark.asyncio
    async def test_add_replaces_by_id(self, repository) -> None:
        repository.add(make_email("in-2", "changed"))
        assert (await repository.load_email("in-2")).body_plain == "changed"
        assert len(repository) == 5


class TestLoadContact:
    @pytest.mark.asyncio
    async def test_derived_from_messages(self, repository) -> None:
        contact = await repository.load_contact("Bob@Example.com")
        assert contact.email == "bob@example.com"
        assert contact.name == "Bob"
        assert contact.email_count_received == 1
        assert contact.email_count_sent == 1
        assert contact.last_contacted == (await repository.load_email("out-2")).sent_date

    @pytest.mark.asyncio
    async def test_explicit_contact_wins(self, repository) -> None:
        repository.add_contact(Contact(email="bob@example.com", company="Acme"))
        contact = await repository.load_contact("bob@example.com")
        assert contact.company == "Acme"
        assert contact.email_count_received == 0

    @pytest.mark.asyncio
    async def test_unknown(self, repository) -> None:
        assert await repository.load_contact("nobody@example.com") is None


class TestLoadPriorResponse:
    @pytest.mark.asyncio
    async def test_reply_after_incoming(self, repository, incoming_email) -> None:
        reply = await repository.load_prior_response("t-1", incoming_email.sent_date)
        assert reply.id == "out-1"

    @pytest.mark.asyncio
    async def test_earliest_reply_wins(self) -> None:
        repo = InMemoryMailRepository(
            [
                make_email("q", "question", thread_id="t", days_ago=5),
                make_email("r2", "second", thread_id="t", days_ago=1, is_sent=True),
                make_email("r1", "first", thread_id="t", days_ago=3, is_sent=True),
            ]
        )
        reply = await repo.load_prior_response("t", (await repo.load_email("q")).sent_date)
        assert reply.id == "r1"

    @pytest.mark.asyncio
    async def test_no_reply_after_date(self, repository) -> None:
        assert await repository.load_prior_response("t-1", NOW) is None

    @pytest.mark.asyncio
    async def test_none_after_means_any(self, repository) -> None:
        assert (await repository.load_prior_response("t-2", None)).id == "out-2"

    @pytest.mark.asyncio
    async def test_naive_after(self, repository, incoming_email) -> None:
        naive = incoming_email.sent_date.replace(tzinfo=None)
        assert (await repository.load_prior_response("t-1", naive)).id == "out-1"

    @pytest.mark.asyncio
    async def test_message_without_thread_id(self) -> None:
        repo = InMemoryMailRepository([make_email("solo", "hi", is_sent=True)])
        assert (await repo.load_prior_response("solo", None)).id == "solo"


class TestLoadThread:
    @pytest.mark.asyncio
    async def test_oldest_first(self, repository) -> None:
        thread = await repository.load_thread("t-2", limit=10)
        assert [e.id for e in thread] == ["in-2", "out-2"]

    @pytest.mark.asyncio
    async def test_limit_keeps_most_recent(self, repository) -> None:
        thread = await repository.load_thread("t-2", limit=1)
        assert [e.id for e in thread] == ["out-2"]

    @pytest.mark.asyncio
    async def test_zero_limit(self, repository) -> None:
        assert await repository.load_thread("t-2", limit=0) == []

    @pytest.mark.asyncio
    async def test_unknown_thread(self, repository) -> None:
        assert await repository.load_thread("t-9", limit=5) == []
