"""Prompt assembly for drafting replies and summaries.

Prompts are plain text, built in a fixed section order so that models
see the same layout regardless of which optional sections are present.
"""

import logging
from datetime import datetime

from mail_assistant.models import (
    Contact,
    Email,
    PromptContext,
    RAGExample,
    ResponseLength,
    ResponsePurpose,
    ResponseTone,
    WritingStyle,
    strip_html,
)

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
NO_CONTENT = "(no content)"

EXAMPLE_PREVIEW_CHARS = 500
THREAD_PREVIEW_CHARS = 300
SUMMARY_BODY_CHARS = 2000

BASE_SYSTEM_PROMPT = (
    "You are an intelligent email writing assistant. Your task is to help "
    "compose email responses that are natural, contextually appropriate, and "
    "match the user's personal writing style.\n"
    "\n"
    "Guidelines:\n"
    "- Write responses that sound authentic and human\n"
    "- Match the tone and formality of the incoming email\n"
    "- Be concise but thorough\n"
    "- Never invent information not provided in context\n"
    "- Use proper email etiquette (greetings, closings)"
)

_TONE_INSTRUCTIONS = {
    ResponseTone.AUTO: ("Match the tone of the incoming email",),
    ResponseTone.FORMAL: (
        "Use formal language and professional etiquette",
        "Avoid contractions and colloquialisms",
        "Use complete sentences and proper grammar",
    ),
    ResponseTone.CASUAL: (
        "Use casual, conversational language",
        "Contractions are acceptable",
        "Keep it friendly and approachable",
    ),
    ResponseTone.FRIENDLY: (
        "Warm and personable tone",
        "Show genuine interest and engagement",
        "Use positive, encouraging language",
    ),
    ResponseTone.PROFESSIONAL: (
        "Professional but not overly formal",
        "Clear and direct communication",
        "Balance friendliness with professionalism",
    ),
    ResponseTone.ASSERTIVE: (
        "Clear, direct, and confident tone",
        "State positions firmly but respectfully",
        "Avoid hedging or overly apologetic language",
    ),
    ResponseTone.DIPLOMATIC: (
        "Tactful and considerate tone",
        "Soften difficult messages appropriately",
        "Show empathy and understanding",
    ),
}

_LENGTH_INSTRUCTIONS = {
    ResponseLength.SHORT: (
        "Keep the response brief and to the point",
        "Prioritize essential information only",
    ),
    ResponseLength.MEDIUM: (
        "Provide a balanced, standard-length response",
        "Include necessary details without being verbose",
    ),
    ResponseLength.LONG: (
        "Provide a detailed, comprehensive response",
        "Include all relevant details and context",
    ),
}

_PURPOSE_INSTRUCTIONS = {
    ResponsePurpose.REPLY: (
        "Address all points raised in the incoming email",
        "Answer any questions asked",
    ),
    ResponsePurpose.FOLLOW_UP: (
        "Reference previous communication",
        "Provide requested updates or information",
    ),
    ResponsePurpose.INTRODUCTION: (
        "Briefly introduce yourself and context",
        "Establish relevance and connection",
    ),
    ResponsePurpose.DECLINE: (
        "Decline politely and clearly",
        "Provide a brief reason if appropriate",
        "Leave the door open for future opportunities",
    ),
    ResponsePurpose.ACCEPT: (
        "Express enthusiasm and gratitude",
        "Confirm details and next steps",
    ),
    ResponsePurpose.REQUEST: (
        "Clearly state what you're asking for",
        "Provide context and justification",
        "Make it easy to say yes",
    ),
    ResponsePurpose.APOLOGY: (
        "Acknowledge the issue sincerely",
        "Take responsibility appropriately",
        "Offer resolution or amends",
    ),
    ResponsePurpose.REMINDER: (
        "Reference the original commitment",
        "Be polite but clear about urgency",
    ),
}

# Checked in order; the first matching group wins.
_PURPOSE_KEYWORDS = (
    (ResponsePurpose.FOLLOW_UP, ("follow up", "following up")),
    (ResponsePurpose.INTRODUCTION, ("introduce", "introduction")),
    (ResponsePurpose.ACCEPT, ("thank", "appreciate")),
    (ResponsePurpose.APOLOGY, ("sorry", "apologize", "apologies")),
    (ResponsePurpose.REMINDER, ("reminder",)),
    (ResponsePurpose.REQUEST, ("request", "could you", "would you")),
    (ResponsePurpose.DECLINE, ("unfortunately", "unable", "cannot")),
)


def _format_score(score: float) -> str:
    percent = int(score * 100)
    if score >= 0.8:
        return f"Very High ({percent}%)"
    if score >= 0.6:
        return f"High ({percent}%)"
    if score >= 0.4:
        return f"Moderate ({percent}%)"
    if score >= 0.2:
        return f"Low ({percent}%)"
    return f"Very Low ({percent}%)"


def _format_date(value: datetime) -> str:
    return value.strftime("%b %d, %Y at %H:%M")


def _bullets(lines: tuple[str, ...]) -> str:
    return "".join(f"- {line}\n" for line in lines)


def build_system_prompt(style: WritingStyle | None = None) -> str:
    """Return the system prompt, extended with the user's style profile."""
    if style is None:
        return BASE_SYSTEM_PROMPT

    parts = [
        BASE_SYSTEM_PROMPT,
        "\n\n=== USER WRITING STYLE PROFILE ===\n",
        f"Formality Level: {_format_score(style.formality_score)}\n",
        f"Friendliness: {_format_score(style.friendliness_score)}\n",
        f"Brevity Preference: {_format_score(style.brevity_score)}\n",
        f"Enthusiasm: {_format_score(style.enthusiasm_score)}\n",
    ]
    if style.avg_sentence_length is not None:
        parts.append(f"Average Sentence Length: {int(style.avg_sentence_length)} words\n")
    if style.common_phrases:
        parts.append("\nCommon Phrases Used:\n")
        parts.extend(f'- "{phrase}"\n' for phrase in style.common_phrases[:5])
    if style.greeting_patterns:
        parts.append("\nTypical Greetings:\n")
        parts.append(_bullets(style.greeting_patterns[:3]))
    if style.closing_patterns:
        parts.append("\nTypical Closings:\n")
        parts.append(_bullets(style.closing_patterns[:3]))
    parts.append(
        "\nPlease adapt your response to match this writing style as closely as possible."
    )
    return "".join(parts)


def task_instructions(
    tone: ResponseTone = ResponseTone.AUTO,
    length: ResponseLength = ResponseLength.MEDIUM,
    purpose: ResponsePurpose = ResponsePurpose.REPLY,
) -> str:
    """Return the response-requirements section for a tone, length and purpose."""
    low, high = length.word_range
    length_lines = _LENGTH_INSTRUCTIONS[length]
    return (
        "\n=== RESPONSE REQUIREMENTS ===\n"
        + _bullets(_TONE_INSTRUCTIONS[tone])
        + "\n"
        + _bullets((length_lines[0], f"Aim for {low}-{high} words", *length_lines[1:]))
        + "\n"
        + _bullets(_PURPOSE_INSTRUCTIONS[purpose])
    )


def _examples_section(examples: tuple[RAGExample, ...]) -> str:
    parts = [
        "=== SIMILAR PAST EMAILS FOR REFERENCE ===\n",
        "The following are examples of how you've responded to similar emails "
        "in the past. Use these as inspiration for style and tone, but don't "
        "copy them directly.\n\n",
    ]
    for index, example in enumerate(examples, start=1):
        parts.append(
            f"--- Example {index} (Similarity: {int(example.similarity * 100)}%) ---\n"
        )
        parts.append(
            f"Incoming Email:\n{example.incoming_email[:EXAMPLE_PREVIEW_CHARS]}\n\n"
        )
        parts.append(f"Your Response:\n{example.user_response}\n\n")
    return "".join(parts)


def _thread_section(emails: tuple[Email, ...]) -> str:
    parts = [
        "=== EMAIL THREAD CONTEXT ===\n",
        "This email is part of an ongoing conversation. "
        "Here are the previous messages:\n\n",
    ]
    ordered = sorted(emails, key=lambda e: (e.sent_date is not None, e.sent_date or 0))
    for index, email in enumerate(ordered, start=1):
        parts.append(f"--- Message {index} ---\n")
        parts.append(f"From: {email.sender_display}\n")
        parts.append(f"Subject: {email.subject or NO_SUBJECT}\n")
        if email.sent_date is not None:
            parts.append(f"Date: {_format_date(email.sent_date)}\n")
        body = email.body_plain[:THREAD_PREVIEW_CHARS] if email.body_plain else NO_CONTENT
        parts.append(f"\n{body}\n\n")
    return "".join(parts)


def _contact_section(contact: Contact) -> str:
    parts = [
        "=== SENDER INFORMATION ===\n",
        f"Name: {contact.name or contact.email}\n",
    ]
    if contact.company:
        parts.append(f"Company: {contact.company}\n")
    if contact.role:
        parts.append(f"Role: {contact.role}\n")
    parts.append(f"Total emails received: {contact.email_count_received}\n")
    parts.append(f"Total emails sent: {contact.email_count_sent}\n")
    if contact.last_contacted is not None:
        parts.append(f"Last contacted: {_format_date(contact.last_contacted)}\n")
    if contact.relationship_score is not None:
        score = contact.relationship_score
        strength = "strong" if score > 0.7 else "moderate" if score > 0.4 else "new"
        parts.append(f"Relationship strength: {strength}\n")
    return "".join(parts)


def _email_section(email: Email) -> str:
    parts = [
        "=== EMAIL TO RESPOND TO ===\n",
        f"From: {email.sender_display}\n",
        f"Subject: {email.subject or NO_SUBJECT}\n",
    ]
    if email.sent_date is not None:
        parts.append(f"Date: {_format_date(email.sent_date)}\n")
    if email.recipients:
        parts.append(f"To: {', '.join(email.recipients)}\n")
    parts.append("\n--- Email Body ---\n")
    parts.append(email.body_text or NO_CONTENT)
    return "".join(parts)


def build_response_prompt(context: PromptContext) -> str:
    """Assemble the full reply-drafting prompt.

    Sections, in order: system context, similar past emails, thread
    context, sender information, the email itself, response requirements
    and a closing instruction. Empty optional sections are omitted.

    Args:
        context: Email plus grounding material and response settings.

    Returns:
        The prompt text.
    """
    sections = [build_system_prompt(context.user_writing_style)]
    if context.rag_examples:
        sections.append(_examples_section(context.rag_examples))
    if context.thread_context:
        sections.append(_thread_section(context.thread_context))
    if context.sender_contact is not None:
        sections.append(_contact_section(context.sender_contact))
    sections.append(_email_section(context.email))

    prompt = (
        "\n\n".join(sections)
        + "\n\n"
        + task_instructions(context.tone, context.length, context.purpose)
        + "\n\nPlease compose a response to the email above."
    )
    logger.debug("Built prompt with %d characters", len(prompt))
    return prompt


def build_summarization_prompt(email: Email, max_length: int = 100) -> str:
    body = email.body_plain[:SUMMARY_BODY_CHARS] if email.body_plain else NO_CONTENT
    return (
        f"Summarize the following email in {max_length} characters or less.\n"
        "Capture the key points and any action items.\n"
        "\n"
        f"Subject: {email.subject or NO_SUBJECT}\n"
        f"From: {email.sender_display}\n"
        "\n"
        f"{body}"
    )


def detect_purpose(email: Email) -> ResponsePurpose:
    """Guess what a reply to *email* should do from keywords in it."""
    content = f"{email.subject or ''} {email.body_plain or ''}".lower()
    for purpose, keywords in _PURPOSE_KEYWORDS:
        if any(keyword in content for keyword in keywords):
            return purpose
    return ResponsePurpose.REPLY


__all__ = [
    "BASE_SYSTEM_PROMPT",
    "build_response_prompt",
    "build_summarization_prompt",
    "build_system_prompt",
    "detect_purpose",
    "strip_html",
    "task_instructions",
]
