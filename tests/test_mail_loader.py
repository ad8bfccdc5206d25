"""Tests for the mail_loader module."""

from datetime import UTC, datetime

import pytest

from conftest import write_eml
from mail_assistant.mail_loader import load_email_file, load_mailbox, parse_email


class TestParseEmail:
    def test_headers_and_body(self) -> None:
        raw = (
            b"From: Alice Smith <alice@example.com>\r\n"
            b"To: me@example.com, Bob <bob@example.com>\r\n"
            b"Cc: carol@example.com\r\n"
            b"Subject: Lunch?\r\n"
            b"Date: Tue, 15 Sep 2026 12:00:00 +0000\r\n"
            b"Message-ID: <abc@example.com>\r\n"
            b"\r\n"
            b"Are you free at noon?\r\n"
        )
        email = parse_email(raw, fallback_id="x.eml")

        assert email.id == "<abc@example.com>"
        assert email.message_id == "<abc@example.com>"
        assert email.sender_email == "alice@example.com"
        assert email.sender_name == "Alice Smith"
        assert email.recipients == ("me@example.com", "bob@example.com", "carol@example.com")
        assert email.subject == "Lunch?"
        assert email.sent_date == datetime(2026, 9, 15, 12, 0, tzinfo=UTC)
        assert email.body_plain.strip() == "Are you free at noon?"
        assert email.thread_id == "<abc@example.com>"
        assert email.is_sent is False

    def test_thread_from_references(self) -> None:
        raw = (
            b"From: a@example.com\r\n"
            b"Message-ID: <c@x>\r\n"
            b"In-Reply-To: <b@x>\r\n"
            b"References: <a@x> <b@x>\r\n"
            b"\r\nbody\r\n"
        )
        assert parse_email(raw, "f").thread_id == "<a@x>"

    def test_thread_from_in_reply_to(self) -> None:
        raw = b"From: a@example.com\r\nMessage-ID: <c@x>\r\nIn-Reply-To: <b@x>\r\n\r\nbody\r\n"
        assert parse_email(raw, "f").thread_id == "<b@x>"

    def test_missing_headers(self) -> None:
        email = parse_email(b"From: a@example.com\r\nDate: not a date\r\n\r\nbody\r\n", "f.eml")
        assert email.id == "f.eml"
        assert email.thread_id is None
        assert email.subject is None
        assert email.sent_date is None
        assert email.sender_name is None

    def test_multipart_alternative(self) -> None:
        raw = (
            b"From: a@example.com\r\n"
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/alternative; boundary="b1"\r\n'
            b"\r\n"
            b"--b1\r\n"
            b"Content-Type: text/plain\r\n\r\nplain text\r\n"
            b"--b1\r\n"
            b"Content-Type: text/html\r\n\r\n<p>html text</p>\r\n"
            b"--b1--\r\n"
        )
        email = parse_email(raw, "f")
        assert email.body_plain.strip() == "plain text"
        assert "<p>html text</p>" in email.body_html

    def test_html_only(self) -> None:
        raw = b"From: a@example.com\r\nContent-Type: text/html\r\n\r\n<b>Hi</b> there\r\n"
        email = parse_email(raw, "f")
        assert email.body_plain is None
        assert email.body_text.strip() == "Hi there"

    def test_user_address_marks_sent(self) -> None:
        raw = b"From: Me <ME@example.com>\r\n\r\nbody\r\n"
        assert parse_email(raw, "f", user_addresses=["me@example.com"]).is_sent is True


class TestLoadMailbox:
    def test_loads_eml_files_only(self, mailbox_dir) -> None:
        emails = load_mailbox(mailbox_dir)
        assert [e.id for e in emails] == ["<root@example.com>", "<reply@example.com>"]

    def test_sent_folder_marks_sent(self, mailbox_dir) -> None:
        inbox, sent = load_mailbox(mailbox_dir)
        assert inbox.is_sent is False
        assert sent.is_sent is True
        assert sent.thread_id == inbox.id

    def test_skips_empty_body(self, tmp_path) -> None:
        write_eml(tmp_path / "empty.eml", "Nothing", "   ", "<e@x>")
        write_eml(tmp_path / "full.eml", "Something", "content", "<f@x>")
        assert [e.id for e in load_mailbox(tmp_path)] == ["<f@x>"]

    def test_user_addresses(self, tmp_path) -> None:
        write_eml(tmp_path / "a.eml", "S", "body", "<a@x>", sender="me@example.com")
        (email,) = load_mailbox(tmp_path, user_addresses=["me@example.com"])
        assert email.is_sent is True

    def test_missing_folder(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_mailbox(tmp_path / "nope")

    def test_not_a_directory(self, tmp_path) -> None:
        path = tmp_path / "file.eml"
        path.write_text("x")
        with pytest.raises(NotADirectoryError):
            load_mailbox(path)

    def test_empty_folder(self, tmp_path) -> None:
        assert load_mailbox(tmp_path) == []


class TestLoadEmailFile:
    def test_parses_file(self, mailbox_dir) -> None:
        email = load_email_file(mailbox_dir / "Inbox" / "1.eml")
        assert email.subject == "Budget report"
        assert email.sender_email == "alice@example.com"

    def test_fallback_id_is_file_name(self, tmp_path) -> None:
        path = tmp_path / "draft.eml"
        path.write_bytes(b"From: a@example.com\r\n\r\nbody\r\n")
        assert load_email_file(path).id == "draft.eml"
