"""Allow ``python -m mail_assistant``."""

from mail_assistant.cli import main

main()
