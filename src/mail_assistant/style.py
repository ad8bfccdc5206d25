"""Writing-style learning from the user's sent mail.

Each sent message is reduced to a few surface features (sentence and
word lengths, contractions, exclamations, its greeting and closing
lines) and the features of all messages are folded into a
:class:`WritingStyle` that the system prompt describes to the model.
"""

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from mail_assistant.config import StyleConfig
from mail_assistant.models import Email, WritingStyle

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z']+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_BULLET_RE = re.compile(r"^\s*(?:[•*-]|\d+[.)])\s+", re.MULTILINE)
_SPACES_RE = re.compile(r"[ \t]+")

# Matched against the lowercased first line; a name may be one or two words.
_GREETING_RE = re.compile(
    r"^(?P<word>dear|hi|hello|hey|greetings|good\s+(?:morning|afternoon|evening)"
    r"|to\s+whom\s+it\s+may\s+concern)\b"
    r"(?:\s+(?P<name>[a-z][\w'.-]*(?:\s+[a-z][\w'.-]*)?))?"
    r"\s*(?:[,!.:]|$)"
)

# Matched against each of the last lines; the closing must fill the line.
_CLOSING_RE = re.compile(
    r"^(?P<closing>(?:(?:best|warm|kind)\s+)?regards|best(?:\s+wishes)?|all\s+the\s+best"
    r"|sincerely|yours\s+truly|(?:many\s+)?thanks|thank\s+you|cheers|take\s+care"
    r"|have\s+a\s+(?:great|good|wonderful|nice)\s+(?:day|week|weekend)"
    r"|talk\s+(?:to\s+you\s+)?(?:soon|later)|looking\s+forward\s+to[a-z' ]*?)"
    r"\s*[,!.]*$"
)

_CLOSING_WINDOW = 5

# Addressees kept verbatim in a greeting pattern; anything else is a name.
_GROUP_ADDRESSES = frozenset({"there", "all", "everyone", "team", "folks"})

# Emoticons, pictographs, transport, misc symbols, dingbats, supplemental symbols.
_EMOJI_RANGES = (
    (0x1F600, 0x1F64F),
    (0x1F300, 0x1F5FF),
    (0x1F680, 0x1F6FF),
    (0x2600, 0x26FF),
    (0x2700, 0x27BF),
    (0x1F900, 0x1F9FF),
)

_NGRAM_SIZE = 3
_MAX_PHRASES = 10


@dataclass(frozen=True)
class StyleFeatures:
    """Surface features of one message body."""

    avg_sentence_length: float
    avg_word_length: float
    avg_paragraph_length: float
    contraction_ratio: float
    exclamation_ratio: float
    uses_bullets: bool
    uses_emoji: bool
    greeting: str | None
    closing: str | None
    phrases: frozenset[str]


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def _normalize(text: str) -> str:
    """Unify line endings, squeeze runs of spaces and drop quoted lines."""
    lines = [
        _SPACES_RE.sub(" ", line).strip()
        for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        if not line.lstrip().startswith(">")
    ]
    return "\n".join(lines).strip()


def _words(text: str) -> list[str]:
    return [w for w in (m.strip("'") for m in _WORD_RE.findall(text.lower())) if w]


def _sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def _is_emoji(char: str) -> bool:
    code = ord(char)
    return any(low <= code <= high for low, high in _EMOJI_RANGES)


def _greeting(first_line: str) -> str | None:
    match = _GREETING_RE.match(first_line.lower())
    if match is None:
        return None
    word = " ".join(match.group("word").split()).capitalize()
    name = match.group("name")
    if name is None:
        return f"{word},"
    if name in _GROUP_ADDRESSES:
        return f"{word} {name},"
    return f"{word} <name>,"


def _closing(lines: list[str]) -> str | None:
    for line in lines[-_CLOSING_WINDOW:]:
        match = _CLOSING_RE.match(line.lower())
        if match:
            return " ".join(match.group("closing").split()).capitalize() + ","
    return None


def extract_features(text: str) -> StyleFeatures | None:
    """Reduce one message body to its style features.

    Lines quoted from earlier messages (starting with ``>``) are ignored.

    Returns:
        The features, or None when the body has no words of its own.
    """
    normalized = _normalize(text)
    words = _words(normalized)
    if not words:
        return None

    sentences = _sentences(normalized)
    paragraphs = [p for p in _PARAGRAPH_SPLIT_RE.split(normalized) if p.strip()]
    lines = [line for line in normalized.split("\n") if line]

    phrases = set()
    for sentence in sentences:
        tokens = _words(sentence)
        for i in range(len(tokens) - _NGRAM_SIZE + 1):
            phrases.add(" ".join(tokens[i : i + _NGRAM_SIZE]))

    return StyleFeatures(
        avg_sentence_length=_mean(len(_words(s)) for s in sentences),
        avg_word_length=_mean(len(w) for w in words),
        avg_paragraph_length=_mean(len(_sentences(p)) for p in paragraphs),
        contraction_ratio=sum("'" in w for w in words) / len(words),
        exclamation_ratio=normalized.count("!") / len(sentences) if sentences else 0.0,
        uses_bullets=bool(_BULLET_RE.search(normalized)),
        uses_emoji=any(_is_emoji(c) for c in normalized),
        greeting=_greeting(lines[0]),
        closing=_closing(lines),
        phrases=frozenset(phrases),
    )


def _share(patterns: Counter, markers: tuple[str, ...]) -> float:
    """Fraction of pattern occurrences that contain any of *markers*."""
    total = sum(patterns.values())
    if not total:
        return 0.0
    hits = sum(n for pattern, n in patterns.items() if any(m in pattern.lower() for m in markers))
    return hits / total


def _brevity_score(
    avg_sentence: float, avg_word: float, avg_paragraph: float, bullet_rate: float
) -> float:
    score = 0.5
    if avg_sentence < 10:
        score += 0.3
    elif avg_sentence > 20:
        score -= 0.3
    else:
        score += (15 - avg_sentence) / 15 * 0.3

    if avg_word < 4.5:
        score += 0.15
    elif avg_word > 5.5:
        score -= 0.15

    if avg_paragraph < 2:
        score += 0.2
    elif avg_paragraph > 5:
        score -= 0.2

    score += bullet_rate * 0.15
    return _clamp(score)


def analyze_style(
    emails: Iterable[Email], config: StyleConfig | None = None
) -> WritingStyle | None:
    """Learn the user's writing style from their sent messages.

    Only messages with ``is_sent`` set are used. Every score starts at a
    neutral 0.5, is nudged up or down by the aggregated features and is
    clamped to [0, 1].

    Args:
        emails: Messages to learn from; received mail is skipped.
        config: Style settings. Uses defaults if not provided.

    Returns:
        The learned style, or None when learning is disabled or fewer
        than ``min_emails`` sent messages have text to analyze.
    """
    cfg = config or StyleConfig()
    if not cfg.enabled:
        return None

    features = [
        f for e in emails if e.is_sent and (f := extract_features(e.body_text)) is not None
    ]
    if len(features) < cfg.min_emails:
        logger.debug(
            "Not learning a writing style: %d sent message(s), need %d",
            len(features),
            cfg.min_emails,
        )
        return None

    count = len(features)
    avg_sentence = _mean(f.avg_sentence_length for f in features)
    avg_word = _mean(f.avg_word_length for f in features)
    avg_paragraph = _mean(f.avg_paragraph_length for f in features)
    contractions = _mean(f.contraction_ratio for f in features)
    exclamations = _mean(f.exclamation_ratio for f in features)
    greeting_rate = sum(f.greeting is not None for f in features) / count
    closing_rate = sum(f.closing is not None for f in features) / count
    bullet_rate = sum(f.uses_bullets for f in features) / count
    emoji_rate = sum(f.uses_emoji for f in features) / count

    greetings = Counter(f.greeting for f in features if f.greeting)
    closings = Counter(f.closing for f in features if f.closing)
    phrases = Counter(p for f in features for p in f.phrases)

    formality = (
        0.5
        - contractions * 0.3
        + _share(greetings, ("dear", "to whom")) * 0.2
        + _share(closings, ("regards", "sincerely")) * 0.2
        - emoji_rate * 0.3
        + min(avg_word / 6.0, 1.0) * 0.1
    )
    friendliness = (
        0.5
        + contractions * 0.25
        + min(exclamations * 2, 0.2)
        + greeting_rate * 0.15
        + closing_rate * 0.1
        + emoji_rate * 0.2
        + _share(greetings, ("hey", "hi")) * 0.1
    )
    enthusiasm = (
        0.5
        + min(exclamations * 3, 0.4)
        + emoji_rate * 0.3
        + contractions * 0.1
        + _share(closings, ("cheers", "looking forward")) * 0.2
    )

    style = WritingStyle(
        formality_score=_clamp(formality),
        friendliness_score=_clamp(friendliness),
        brevity_score=_brevity_score(avg_sentence, avg_word, avg_paragraph, bullet_rate),
        enthusiasm_score=_clamp(enthusiasm),
        avg_sentence_length=round(avg_sentence, 1),
        common_phrases=tuple(
            p for p, n in phrases.most_common(_MAX_PHRASES) if n >= cfg.phrase_threshold
        ),
        greeting_patterns=tuple(g for g, _ in greetings.most_common(cfg.max_patterns)),
        closing_patterns=tuple(c for c, _ in closings.most_common(cfg.max_patterns)),
    )
    logger.info("Learned writing style from %d sent message(s)", count)
    return style
