"""Domain models for the mail assistant."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_HTML_ENTITIES = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&amp;", "&"),
)


def strip_html(html: str) -> str:
    """Remove HTML tags and decode the handful of entities mail bodies use."""
    text = _HTML_TAG_RE.sub("", html)
    for entity, replacement in _HTML_ENTITIES:
        text = text.replace(entity, replacement)
    return text


@dataclass(frozen=True)
class Email:
    """A mail message as seen by the retrieval engine and prompt builder."""

    id: str
    sender_email: str
    subject: str | None = None
    sender_name: str | None = None
    recipients: tuple[str, ...] = ()
    body_plain: str | None = None
    body_html: str | None = None
    sent_date: datetime | None = None
    thread_id: str | None = None
    message_id: str | None = None
    is_sent: bool = False

    @property
    def sender_display(self) -> str:
        return self.sender_name or self.sender_email

    @property
    def body_text(self) -> str:
        """Plain-text body, falling back to the HTML body with tags stripped."""
        if self.body_plain is not None:
            return self.body_plain
        if self.body_html is not None:
            return strip_html(self.body_html)
        return ""


@dataclass(frozen=True)
class Contact:
    """What is known about a correspondent."""

    email: str
    name: str | None = None
    company: str | None = None
    role: str | None = None
    email_count_received: int = 0
    email_count_sent: int = 0
    last_contacted: datetime | None = None
    relationship_score: float | None = None


@dataclass(frozen=True)
class WritingStyle:
    """A learned profile of how the user writes.

    Scores are in [0, 1].
    """

    formality_score: float = 0.5
    friendliness_score: float = 0.5
    brevity_score: float = 0.5
    enthusiasm_score: float = 0.5
    avg_sentence_length: float | None = None
    common_phrases: tuple[str, ...] = ()
    greeting_patterns: tuple[str, ...] = ()
    closing_patterns: tuple[str, ...] = ()


class ResponseTone(str, Enum):
    AUTO = "auto"
    FORMAL = "formal"
    CASUAL = "casual"
    FRIENDLY = "friendly"
    PROFESSIONAL = "professional"
    ASSERTIVE = "assertive"
    DIPLOMATIC = "diplomatic"


class ResponseLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def word_range(self) -> tuple[int, int]:
        return _WORD_RANGES[self]


_WORD_RANGES = {
    ResponseLength.SHORT: (30, 80),
    ResponseLength.MEDIUM: (80, 200),
    ResponseLength.LONG: (200, 400),
}


class ResponsePurpose(str, Enum):
    REPLY = "reply"
    FOLLOW_UP = "follow_up"
    INTRODUCTION = "introduction"
    DECLINE = "decline"
    ACCEPT = "accept"
    REQUEST = "request"
    APOLOGY = "apology"
    REMINDER = "reminder"


@dataclass(frozen=True)
class RAGExample:
    """A past incoming message paired with the user's reply to it."""

    incoming_email: str
    user_response: str
    similarity: float
    date: datetime | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class RAGSearchResult:
    """A retrieved message with its time-decayed similarity."""

    email: Email
    similarity: float
    matched_text: str
    user_response: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_example(self) -> RAGExample:
        return RAGExample(
            id=self.id,
            incoming_email=self.matched_text,
            user_response=self.user_response or "",
            similarity=self.similarity,
            date=self.email.sent_date,
        )


@dataclass(frozen=True)
class PromptContext:
    """Everything the prompt builder needs to draft a reply."""

    email: Email
    thread_context: tuple[Email, ...] = ()
    sender_contact: Contact | None = None
    user_writing_style: WritingStyle | None = None
    rag_examples: tuple[RAGExample, ...] = ()
    tone: ResponseTone = ResponseTone.AUTO
    length: ResponseLength = ResponseLength.MEDIUM
    purpose: ResponsePurpose = ResponsePurpose.REPLY


@dataclass(frozen=True)
class GenerationRequest:
    """A provider-agnostic text generation request.

    Unset sampling fields are filled from the orchestrator's configuration
    on a copy; the caller's request is never modified.
    """

    prompt: str
    system_prompt: str | None = None
    context: Any = None
    style: WritingStyle | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


@dataclass(frozen=True)
class GenerationResponse:
    """The completion returned by a provider."""

    text: str
    model: str
    tokens_used: int = 0
    finish_reason: str = "stop"


@dataclass(frozen=True)
class ModelInfo:
    """A model a provider can serve."""

    id: str
    name: str
    description: str = ""
    max_tokens: int = 0
    context_window: int = 0
    supports_streaming: bool = True


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time copy of a provider's health record."""

    is_healthy: bool
    average_response_time: float
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure: datetime | None = None
