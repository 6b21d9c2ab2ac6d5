"""
Intent classification for transcribed utterances.

Pure functions over transcript text. Speech-to-text output is noisy, so the
matchers accept common homophones ("cue" for queue, "weight" for wait,
"reed" for read) and ignore filler words, but refuse to guess when an answer
names two different options.
"""

import re
from dataclasses import dataclass
from typing import Optional

# Tags
WAKE = "wake"
CANCEL = "cancel"
QUEUE_CHOICE = "queue-choice"
SWITCH_CHOICE = "switch-choice"
COMMAND = "command"
NONE = "none"

# Bare commands
INBOX_NEXT = "inbox-next"
INBOX_CHECK = "inbox-check"
REPLAY = "replay"


@dataclass(frozen=True)
class Intent:
    tag: str
    value: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.tag}:{self.value}" if self.value else self.tag


_NON_LEXICAL_MARKER = re.compile(r"\[[^\]]*\]|\([^)]*\)|\*[^*]*\*")
_APOSTROPHE = re.compile(r"['’]")
_NON_WORD = re.compile(r"[^a-z0-9]+")


def normalize_transcript(text: str) -> str:
    """Lowercase, drop apostrophes and punctuation, collapse whitespace."""
    text = _APOSTROPHE.sub("", text.lower())
    return _NON_WORD.sub(" ", text).strip()


def is_non_lexical_transcript(text: str) -> bool:
    """
    True for transcripts made only of non-speech markers.

    Whisper-style engines annotate noise as ``[BLANK_AUDIO]``, ``[MUSIC]``,
    ``(coughs)`` and similar. Plain empty text is not counted here.
    """
    if not _NON_LEXICAL_MARKER.search(text):
        return False
    remainder = _NON_LEXICAL_MARKER.sub(" ", text)
    return not re.search(r"[A-Za-z0-9]", remainder)


def _dedupe_repeats(words: list[str]) -> list[str]:
    out: list[str] = []
    for word in words:
        if not out or out[-1] != word:
            out.append(word)
    return out


_CANCEL_PATTERN = re.compile(
    r"^(?:(?:ok|okay|oh|um|uh|just|please|no)\s+)*"
    r"(?:cancel|stop|abort|nevermind|never mind|forget (?:it|that|about it))"
    r"(?:\s+(?:this|that|it|please|now|everything|the request|request))*$"
)


def is_cancel_intent(text: str) -> bool:
    """Explicit request to drop whatever is in progress."""
    words = _dedupe_repeats(normalize_transcript(text).split())
    if not words:
        return False
    return bool(_CANCEL_PATTERN.match(" ".join(words)))


# Answers to "never mind" style replies while a question is open
_CHOICE_CANCEL_PHRASES = {
    "never mind", "nevermind", "ignore that", "ignore it", "forget it",
    "nothing", "no thanks", "neither",
}

_CHOICE_FILLERS = {
    "please", "um", "uh", "just", "ok", "okay", "it", "the", "a", "to", "me",
    "back", "here", "send", "put", "that", "for", "go", "ill", "i", "my",
    "message", "one", "thanks",
}

_QUEUE_WORDS = {
    "inbox": "queue", "queue": "queue", "cue": "queue", "q": "queue",
    "yes": "queue", "yeah": "queue", "yep": "queue", "later": "queue",
    "wait": "wait", "weight": "wait", "wheat": "wait", "way": "wait",
    "weigh": "wait", "hold": "wait", "no": "wait", "nope": "wait",
    "silent": "silent", "silently": "silent", "quiet": "silent",
    "quietly": "silent",
}

_SWITCH_WORDS = {
    "read": "read", "reed": "read", "red": "read", "last": "read",
    "yes": "read", "yeah": "read", "replay": "read", "hear": "read",
    "prompt": "prompt", "frompt": "prompt", "romped": "prompt",
    "romp": "prompt", "new": "prompt", "skip": "prompt",
}


def _match_choice(text: str, vocabulary: dict[str, str]) -> Optional[str]:
    normalized = normalize_transcript(text)
    if not normalized:
        return None
    if is_cancel_intent(normalized) or normalized in _CHOICE_CANCEL_PHRASES:
        return "cancel"

    normalized = normalized.replace("in box", "inbox")
    words = [w for w in normalized.split() if w not in _CHOICE_FILLERS]
    if not words:
        return None

    picked = set()
    for word in words:
        option = vocabulary.get(word)
        if option is None:
            return None
        picked.add(option)

    # "silent wait" is a silent wait, not an ambiguous answer
    if "silent" in picked and picked <= {"silent", "wait"}:
        return "silent"
    if len(picked) == 1:
        return picked.pop()
    return None


def match_queue_choice(text: str) -> Optional[str]:
    """Answer to "Inbox, or wait?": queue, wait, silent, cancel or None."""
    return _match_choice(text, _QUEUE_WORDS)


def match_switch_choice(text: str) -> Optional[str]:
    """Answer to "Read the last message, or new prompt?": read, prompt, cancel or None."""
    return _match_choice(text, _SWITCH_WORDS)


_WAKE_GREETINGS = r"(?:hey|hi|hello|ok|okay|yo)"
_MISHEARD_GREETINGS = r"(?:or|a|hay|hate|eh|oh|and|play|say|pay|they|bay)"


def _wake_pattern(bot_name: str) -> re.Pattern:
    name = re.escape(normalize_transcript(bot_name))
    return re.compile(rf"^(?:{_WAKE_GREETINGS}\s+)?{name}(?:\s+|$)")


def match_wake_phrase(text: str, bot_name: str) -> bool:
    """True when the transcript opens with the wake phrase ("hey Watson ...")."""
    return bool(_wake_pattern(bot_name).match(normalize_transcript(text)))


def strip_wake_phrase(text: str, bot_name: str) -> str:
    """Normalized request text with any leading wake phrase removed."""
    normalized = normalize_transcript(text)
    return _wake_pattern(bot_name).sub("", normalized, count=1).strip()


def extract_request(text: str, bot_name: str) -> str:
    """Request text as spoken, minus any leading wake phrase."""
    name = re.escape(bot_name.strip())
    pattern = re.compile(
        rf"^\s*(?:{_WAKE_GREETINGS}[\s,.!]+)?{name}\b[\s,.!?:;]*",
        re.IGNORECASE,
    )
    return pattern.sub("", text, count=1).strip()


def should_cue_failed_wake(text: str, bot_name: str) -> bool:
    """
    True when a rejected transcript looks like a mis-heard wake phrase.

    Catches "or Watson ..." (a clipped "hey") and wake-check phrasing
    spoken without the name, but not the name used mid-sentence.
    """
    normalized = normalize_transcript(text)
    if not normalized or match_wake_phrase(normalized, bot_name):
        return False
    name = re.escape(normalize_transcript(bot_name))
    if re.match(rf"^{_MISHEARD_GREETINGS}\s+{name}(?:\s|$)", normalized):
        return True
    return bool(re.match(r"^(?:wake|weak|woke)\s+(?:check|test)\b", normalized))


_COMMANDS = [
    (re.compile(r"^(?:next|inbox next|next (?:one|message|item|response)|read (?:the )?next(?: one)?)$"), INBOX_NEXT),
    (re.compile(r"^(?:inbox|check (?:my |the )?inbox|inbox (?:check|list|status)|whats in (?:my|the) inbox)$"), INBOX_CHECK),
    (re.compile(r"^(?:replay|repeat(?: that)?|say (?:that|it) again|what did you say)$"), REPLAY),
]

_MODE_COMMAND = re.compile(r"^(?:(?:switch to|use|go to|set)\s+)?(wait|queue|inbox|ask)\s+mode$")


def match_bare_command(text: str) -> Optional[str]:
    """Inbox navigation, replay and mode switch commands."""
    normalized = normalize_transcript(text)
    for pattern, command in _COMMANDS:
        if pattern.match(normalized):
            return command
    m = _MODE_COMMAND.match(normalized)
    if m:
        mode = "queue" if m.group(1) == "inbox" else m.group(1)
        return f"mode:{mode}"
    return None


def classify(text: str, bot_name: str, expecting: Optional[str] = None) -> Intent:
    """
    Map a transcript to an intent tag.

    ``expecting`` names an open question ("queue" or "switch"); answers to
    it take precedence over everything else.
    """
    if not text or not text.strip() or is_non_lexical_transcript(text):
        return Intent(NONE)

    if expecting == "queue":
        choice = match_queue_choice(text)
        if choice:
            return Intent(QUEUE_CHOICE, choice)
    elif expecting == "switch":
        choice = match_switch_choice(text)
        if choice:
            return Intent(SWITCH_CHOICE, choice)

    request = strip_wake_phrase(text, bot_name) if match_wake_phrase(text, bot_name) else normalize_transcript(text)
    if is_cancel_intent(request):
        return Intent(CANCEL)
    if not request:
        return Intent(WAKE)

    command = match_bare_command(request)
    if command:
        return Intent(COMMAND, command)
    return Intent(NONE)
