"""CLI interface for the mail assistant."""

import argparse
import asyncio
import logging
import sys

from mail_assistant.config import AppConfig
from mail_assistant.errors import AIProviderError, InvalidConfigurationError, RetrievalError
from mail_assistant.mail_loader import load_email_file, load_mailbox
from mail_assistant.models import GenerationRequest, ResponseLength, ResponseTone
from mail_assistant.orchestrator import ProviderOrchestrator
from mail_assistant.prompts import build_response_prompt
from mail_assistant.repository import InMemoryMailRepository
from mail_assistant.services import build_orchestrator, build_retrieval_engine
from mail_assistant.style import analyze_style


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def index(mailbox: str, config: AppConfig | None = None) -> int:
    """Index every message of a mailbox into the vector store.

    Messages already in the store are skipped, so re-running after new
    mail arrives only embeds the new messages.

    Args:
        mailbox: Directory holding ``.eml`` files.
        config: Application configuration. Uses defaults if not provided.

    Returns:
        Number of newly indexed messages.
    """
    cfg = config or AppConfig()

    print(f"\n📂 Loading mail from: {mailbox}")
    emails = load_mailbox(mailbox)
    if not emails:
        print("No .eml messages found")
        return 0

    print(f"\n💾 Indexing {len(emails)} message(s)...")
    repository = InMemoryMailRepository(emails)
    engine = build_retrieval_engine(cfg, repository)
    indexed = asyncio.run(engine.index_many(emails))

    print(f"\n✅ Indexing complete! ({indexed} new, {len(emails) - indexed} already indexed)")
    return indexed


async def _draft(
    email_file: str,
    mailbox: str,
    cfg: AppConfig,
    orchestrator: ProviderOrchestrator,
    provider_id: str | None,
    tone: ResponseTone,
    length: ResponseLength,
    stream: bool,
) -> str:
    emails = load_mailbox(mailbox)
    repository = InMemoryMailRepository(emails)
    email = load_email_file(email_file)
    engine = build_retrieval_engine(cfg, repository)

    style = analyze_style(emails, cfg.style)
    context = await engine.assemble_context(email, style=style, tone=tone, length=length)
    print(
        f"🔎 {len(context.rag_examples)} example(s), "
        f"{len(context.thread_context)} thread message(s), "
        f"purpose: {context.purpose.value}\n"
    )
    request = GenerationRequest(prompt=build_response_prompt(context))

    if not stream:
        response = await orchestrator.generate(request, provider_id=provider_id)
        print(response.text)
        return response.text

    parts = []
    async for chunk in await orchestrator.stream(request, provider_id=provider_id):
        print(chunk, end="", flush=True)
        parts.append(chunk)
    print()
    return "".join(parts)


def draft(
    email_file: str,
    mailbox: str,
    provider_id: str | None = None,
    tone: ResponseTone = ResponseTone.AUTO,
    length: ResponseLength = ResponseLength.MEDIUM,
    stream: bool = False,
    config: AppConfig | None = None,
) -> str:
    """Draft a reply to one message, grounded in the indexed mailbox.

    Args:
        email_file: The ``.eml`` message to answer.
        mailbox: Directory holding the indexed mail, used to resolve
            retrieved messages and the user's past replies.
        provider_id: Pin generation to this provider.
        tone: Requested tone.
        length: Requested length.
        stream: Print the reply as it is generated.
        config: Application configuration. Uses defaults if not provided.

    Returns:
        The drafted reply.
    """
    cfg = config or AppConfig()
    orchestrator = build_orchestrator(cfg)
    return asyncio.run(
        _draft(email_file, mailbox, cfg, orchestrator, provider_id, tone, length, stream)
    )


def providers(config: AppConfig | None = None) -> dict[str, bool]:
    """Validate every enabled provider and print its status."""
    cfg = config or AppConfig()
    orchestrator = build_orchestrator(cfg)
    results = asyncio.run(orchestrator.validate_all())
    active = orchestrator.get_configuration().active_provider_id

    if not results:
        print("No AI providers enabled")
        return {}

    print()
    status = {}
    for provider in orchestrator.get_registered_providers():
        result = results.get(provider.id)
        registration = orchestrator.get_registration(provider.id)
        valid = result is True
        status[provider.id] = valid
        marker = "✅" if valid else "❌"
        detail = f" ({result.reason})" if isinstance(result, InvalidConfigurationError) else ""
        star = " *" if provider.id == active else ""
        priority = registration.priority if registration else 0
        print(f"{marker} {provider.id}{star} [{provider.name}, priority {priority}]{detail}")
    return status


def main() -> None:
    """CLI entry point — parse arguments and dispatch to a command."""
    parser = argparse.ArgumentParser(
        description="Mail Assistant — drafts replies grounded in your past mail",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # index
    index_p = subparsers.add_parser("index", help="Index a mailbox of .eml files")
    index_p.add_argument(
        "--mailbox", type=str, default=None, help="Mailbox folder path"
    )

    # draft
    draft_p = subparsers.add_parser("draft", help="Draft a reply to a message")
    draft_p.add_argument("--email", type=str, required=True, help=".eml file to answer")
    draft_p.add_argument(
        "--mailbox", type=str, default=None, help="Mailbox folder path"
    )
    draft_p.add_argument("--provider", type=str, default=None, help="Provider id")
    draft_p.add_argument(
        "--tone",
        choices=[t.value for t in ResponseTone],
        default=ResponseTone.AUTO.value,
    )
    draft_p.add_argument(
        "--length",
        choices=[length.value for length in ResponseLength],
        default=ResponseLength.MEDIUM.value,
    )
    draft_p.add_argument("--stream", action="store_true", help="Stream the reply")

    # providers
    subparsers.add_parser("providers", help="Validate configured AI providers")

    # serve
    subparsers.add_parser("serve", help="Run the HTTP API")

    args = parser.parse_args()
    _setup_logging(args.verbose)

    try:
        if args.command == "index":
            cfg = AppConfig()
            index(args.mailbox or cfg.mailbox_dir, cfg)
        elif args.command == "draft":
            cfg = AppConfig()
            draft(
                args.email,
                args.mailbox or cfg.mailbox_dir,
                provider_id=args.provider,
                tone=ResponseTone(args.tone),
                length=ResponseLength(args.length),
                stream=args.stream,
                config=cfg,
            )
        elif args.command == "providers":
            providers()
        elif args.command == "serve":
            from mail_assistant.web import serve

            serve()
        else:
            parser.print_help()
            sys.exit(1)
    except (AIProviderError, RetrievalError, OSError) as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
