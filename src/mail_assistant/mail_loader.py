"""Mailbox loader — reads RFC 822 ``.eml`` files from a directory tree."""

import logging
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from pathlib import Path

from mail_assistant.models import Email

logger = logging.getLogger(__name__)

SENT_FOLDER_NAMES = frozenset({"sent", "sent items", "sent mail", "sent messages"})

_parser = BytesParser(policy=policy.default)


def _addresses(message: EmailMessage, header: str) -> list[tuple[str, str]]:
    value = message.get(header)
    if value is None:
        return []
    return [
        (address.addr_spec, address.display_name)
        for address in getattr(value, "addresses", ())
        if address.addr_spec
    ]


def _message_ids(value: object) -> list[str]:
    return str(value).split() if value else []


def _thread_id(message: EmailMessage, message_id: str | None) -> str | None:
    """Root message id of the conversation a message belongs to."""
    references = _message_ids(message.get("References"))
    if references:
        return references[0]
    in_reply_to = _message_ids(message.get("In-Reply-To"))
    if in_reply_to:
        return in_reply_to[0]
    return message_id


def _sent_date(message: EmailMessage) -> datetime | None:
    try:
        value = message.get("Date")
        return parsedate_to_datetime(str(value)) if value is not None else None
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header in %s", message.get("Message-ID"))
        return None


def _body(message: EmailMessage, subtype: str) -> str | None:
    part = message.get_body(preferencelist=(subtype,))
    if part is None:
        return None
    return part.get_content()


def parse_email(
    data: bytes,
    fallback_id: str,
    is_sent: bool = False,
    user_addresses: Iterable[str] = (),
) -> Email:
    """Parse raw message bytes into an Email.

    Args:
        data: The RFC 822 message.
        fallback_id: Id to use when the message has no Message-ID header.
        is_sent: Whether the message is known to be written by the user.
        user_addresses: The user's own addresses; a message from one of
            them is treated as sent.

    Returns:
        The parsed Email. Threads are keyed by the root Message-ID taken
        from References or In-Reply-To.
    """
    message = _parser.parsebytes(data)
    message_id = str(message.get("Message-ID") or "").strip() or None

    senders = _addresses(message, "From")
    sender_email, sender_name = senders[0] if senders else ("", "")
    recipients = tuple(
        addr for addr, _ in _addresses(message, "To") + _addresses(message, "Cc")
    )

    own = {a.lower() for a in user_addresses}
    subject = message.get("Subject")
    return Email(
        id=message_id or fallback_id,
        sender_email=sender_email,
        sender_name=sender_name or None,
        subject=str(subject) if subject is not None else None,
        recipients=recipients,
        body_plain=_body(message, "plain"),
        body_html=_body(message, "html"),
        sent_date=_sent_date(message),
        thread_id=_thread_id(message, message_id),
        message_id=message_id,
        is_sent=is_sent or sender_email.lower() in own,
    )


def load_mailbox(
    folder_path: str | Path,
    user_addresses: Iterable[str] = (),
) -> list[Email]:
    """Load every ``.eml`` file below a folder.

    Messages inside a folder named like "Sent" are marked as written by
    the user. Files that fail to parse are skipped with a logged error.

    Args:
        folder_path: Mailbox root directory.
        user_addresses: The user's own addresses, used to detect sent mail
            outside a sent folder.

    Returns:
        Emails sorted by file path.

    Raises:
        FileNotFoundError: If the folder does not exist.
        NotADirectoryError: If the path is not a directory.
    """
    folder = Path(folder_path)
    if not folder.exists():
        raise FileNotFoundError(f"Folder not found: {folder_path}")
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder_path}")

    addresses = list(user_addresses)
    emails: list[Email] = []

    for file_path in sorted(folder.rglob("*")):
        if not file_path.is_file() or file_path.suffix.lower() != ".eml":
            continue

        relative = file_path.relative_to(folder)
        in_sent = any(part.lower() in SENT_FOLDER_NAMES for part in relative.parts[:-1])
        try:
            email = parse_email(
                file_path.read_bytes(),
                fallback_id=relative.as_posix(),
                is_sent=in_sent,
                user_addresses=addresses,
            )
        except Exception:
            logger.exception("Failed to load %s", relative)
            continue

        if not email.body_text.strip():
            logger.warning("Skipping email without a body: %s", relative)
            continue
        emails.append(email)
        logger.debug("Loaded: %s", relative)

    logger.info("Loaded %d emails from %s", len(emails), folder)
    return emails


def load_email_file(file_path: str | Path, user_addresses: Iterable[str] = ()) -> Email:
    """Parse a single ``.eml`` file."""
    path = Path(file_path)
    return parse_email(path.read_bytes(), fallback_id=path.name, user_addresses=user_addresses)
