"""Shared fixtures for the test suite."""

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mail_assistant.config import RAGConfig
from mail_assistant.embeddings import HashingEmbeddingProvider
from mail_assistant.models import Email, GenerationRequest, GenerationResponse, ModelInfo
from mail_assistant.orchestrator import ProviderOrchestrator
from mail_assistant.repository import InMemoryMailRepository
from mail_assistant.retrieval import RetrievalEngine
from mail_assistant.vector_store import InMemoryVectorStore

NOW = datetime.now(UTC).replace(microsecond=0)


class FakeProvider:
    """Generation provider driven by a script of outcomes.

    Each entry of ``outcomes`` is either a string (returned as the
    completion) or an exception instance (raised). The last entry repeats
    once the script is exhausted. ``stream_outcomes`` works the same way
    for streaming, with each entry a list of chunks optionally followed
    by an exception raised after them.
    """

    def __init__(
        self,
        provider_id: str,
        outcomes: list | None = None,
        stream_outcomes: list[list] | None = None,
        valid: bool | Exception = True,
    ) -> None:
        self.id = provider_id
        self.name = provider_id.title()
        self.outcomes = outcomes or [f"reply from {provider_id}"]
        self.stream_outcomes = stream_outcomes or [["Hello", " world"]]
        self.valid = valid
        self.calls = 0
        self.stream_calls = 0
        self.requests: list[GenerationRequest] = []

    def _next(self, script: list, count: int):
        return script[min(count, len(script) - 1)]

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        outcome = self._next(self.outcomes, self.calls)
        self.calls += 1
        self.requests.append(request)
        if isinstance(outcome, BaseException):
            raise outcome
        return GenerationResponse(text=outcome, model=request.model or "fake-model")

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        script = self._next(self.stream_outcomes, self.stream_calls)
        self.stream_calls += 1
        self.requests.append(request)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def validate_configuration(self) -> bool:
        if isinstance(self.valid, Exception):
            raise self.valid
        return self.valid

    async def available_models(self) -> list[ModelInfo]:
        return [ModelInfo(id="fake-model", name="Fake")]


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def orchestrator(sleeps: list[float]) -> ProviderOrchestrator:
    """Orchestrator with no store whose backoff sleeps are recorded, not awaited."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return ProviderOrchestrator(sleep=_sleep)


def make_email(
    email_id: str,
    body: str,
    subject: str | None = None,
    sender: str = "alice@example.com",
    sender_name: str | None = "Alice",
    days_ago: float | None = 1,
    thread_id: str | None = None,
    is_sent: bool = False,
    recipients: tuple[str, ...] = (),
) -> Email:
    return Email(
        id=email_id,
        sender_email=sender,
        sender_name=sender_name,
        subject=subject,
        body_plain=body,
        sent_date=None if days_ago is None else NOW - timedelta(days=days_ago),
        thread_id=thread_id,
        recipients=recipients,
        is_sent=is_sent,
    )


@pytest.fixture
def incoming_email() -> Email:
    return make_email(
        "in-1",
        "Could you send me the quarterly budget report before Friday?",
        subject="Budget report",
        thread_id="t-1",
        days_ago=30,
    )


@pytest.fixture
def mailbox_emails(incoming_email: Email) -> list[Email]:
    """A small conversation history: two threads with replies and one without."""
    return [
        incoming_email,
        make_email(
            "out-1",
            "Sure, the budget report is attached. Let me know if anything is unclear.",
            subject="Re: Budget report",
            sender="me@example.com",
            sender_name="Me",
            thread_id="t-1",
            days_ago=29,
            is_sent=True,
            recipients=("alice@example.com",),
        ),
        make_email(
            "in-2",
            "Following up on the offsite: are we still meeting next week?",
            subject="Offsite",
            sender="bob@example.com",
            sender_name="Bob",
            thread_id="t-2",
            days_ago=10,
        ),
        make_email(
            "out-2",
            "Yes, we are still meeting next Tuesday at ten.",
            subject="Re: Offsite",
            sender="me@example.com",
            sender_name="Me",
            thread_id="t-2",
            days_ago=9,
            is_sent=True,
            recipients=("bob@example.com",),
        ),
        make_email(
            "in-3",
            "Newsletter: ten tips for a tidy garden this autumn.",
            subject="Garden newsletter",
            sender="news@example.org",
            sender_name=None,
            days_ago=5,
        ),
    ]


@pytest.fixture
def repository(mailbox_emails: list[Email]) -> InMemoryMailRepository:
    return InMemoryMailRepository(mailbox_emails)


@pytest.fixture
def embedder() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider(dimension=64)


@pytest.fixture
def engine(
    embedder: HashingEmbeddingProvider, repository: InMemoryMailRepository
) -> RetrievalEngine:
    """Retrieval engine over in-memory components with a permissive threshold."""
    return RetrievalEngine(
        embedding_provider=embedder,
        vector_store=InMemoryVectorStore(),
        repository=repository,
        config=RAGConfig(similarity_threshold=0.0, time_decay_enabled=False),
    )


EML_TEMPLATE = """\
From: {sender}
To: me@example.com
Subject: {subject}
Date: Mon, 14 Sep 2026 09:30:00 +0000
Message-ID: {message_id}
{extra}Content-Type: text/plain; charset="utf-8"

{body}
"""


def write_eml(
    path: Path,
    subject: str,
    body: str,
    message_id: str,
    sender: str = "Alice <alice@example.com>",
    extra: str = "",
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        EML_TEMPLATE.format(
            sender=sender, subject=subject, message_id=message_id, extra=extra, body=body
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def mailbox_dir(tmp_path: Path) -> Path:
    """A mailbox folder with an inbox message, a sent reply and a stray file."""
    root = tmp_path / "mailbox"
    write_eml(
        root / "Inbox" / "1.eml",
        "Budget report",
        "Could you send me the budget report?",
        "<root@example.com>",
    )
    write_eml(
        root / "Sent" / "2.eml",
        "Re: Budget report",
        "Here it is.",
        "<reply@example.com>",
        sender="Me <me@example.com>",
        extra="In-Reply-To: <root@example.com>\nReferences: <root@example.com>\n",
    )
    (root / "notes.txt").write_text("not mail", encoding="utf-8")
    return root
