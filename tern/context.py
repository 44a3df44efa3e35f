"""Context window management: token budgeting, importance pinning, and
rolling summaries of trimmed conversation history.

Everything here is pure in-memory state. The agent appends messages as the
conversation progresses; after every append the window checks its budget and,
when over, folds the oldest unimportant messages into an accumulating text
summary. What the model sees on each turn is ``get_contextual_messages()``.
"""

import copy
import itertools
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable

ROLES = ("system", "user", "assistant")

DEFAULT_RESERVED_TOKENS = 2000
DEFAULT_SUMMARY_TOKENS = 500
DEFAULT_RECENT_MESSAGES = 10
DEFAULT_CHARS_PER_TOKEN = 4

SUMMARY_LINE_CHARS = 100

IMPORTANT_KEYWORDS = (
    "error",
    "failed",
    "success",
    "completed",
    "implement",
    "create",
    "build",
    "deploy",
    "task:",
    "goal:",
    "objective:",
    "important:",
    "note:",
    "warning:",
)

TASK_KEYWORDS = ("task", "implement", "create")
CODE_KEYWORDS = ("file", "code", "function")

SUMMARY_SECTIONS = (
    ("task", "Tasks/Implementation:"),
    ("code", "Code/File Operations:"),
    ("other", "Other Discussion:"),
)

_SECTION_BREAK_RE = re.compile(r"\n\n(?==== Conversation Summary \()")


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------

TokenEstimator = Callable[[str], int]


class CharRatioEstimator:
    """Approximate tokens as a fixed number of characters per token."""

    def __init__(self, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be at least 1")
        self.chars_per_token = chars_per_token

    def __call__(self, text: str) -> int:
        return len(text) // self.chars_per_token


class TiktokenEstimator:
    """Count tokens with a tiktoken encoding."""

    def __init__(self, encoding: str = "cl100k_base"):
        import tiktoken

        self._encoder = tiktoken.get_encoding(encoding)

    def __call__(self, text: str) -> int:
        return len(self._encoder.encode(text))


def make_estimator(
    name: str = "chars", chars_per_token: int = DEFAULT_CHARS_PER_TOKEN
) -> TokenEstimator:
    """Build a token estimator from its config name ("chars" or "tiktoken")."""
    if name == "chars":
        return CharRatioEstimator(chars_per_token)
    if name == "tiktoken":
        return TiktokenEstimator()
    raise ValueError(f"unknown token estimator {name!r}")


estimate_tokens = CharRatioEstimator()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

_id_counter = itertools.count(1)


def _new_message_id() -> str:
    return f"msg_{time.time_ns()}_{next(_id_counter)}"


@dataclass
class Message:
    role: str
    content: str
    tokens: int
    created_at: float = field(default_factory=time.time)
    important: bool = False
    id: str = field(default_factory=_new_message_id)

    def as_dict(self) -> dict:
        """Shape expected by chat-completion APIs."""
        return {"role": self.role, "content": self.content}


def is_important(role: str, content: str) -> bool:
    """Return True if a message must never be summarized away."""
    if role == "system":
        return True
    lower = content.lower()
    return any(keyword in lower for keyword in IMPORTANT_KEYWORDS)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def truncate_content(content: str, max_len: int = SUMMARY_LINE_CHARS) -> str:
    if len(content) <= max_len:
        return content
    return content[:max_len] + "..."


def categorize(content: str) -> str:
    """Sort a message into the "task", "code" or "other" summary bucket."""
    lower = content.lower()
    if any(keyword in lower for keyword in TASK_KEYWORDS):
        return "task"
    if any(keyword in lower for keyword in CODE_KEYWORDS):
        return "code"
    return "other"


def summarize_messages(messages: list[Message]) -> str:
    """Render a list of messages as one bulleted summary section.

    Returns "" for an empty list. Buckets appear in task, code, other order;
    empty buckets are omitted.
    """
    if not messages:
        return ""

    buckets: dict[str, list[str]] = {key: [] for key, _ in SUMMARY_SECTIONS}
    for msg in messages:
        line = f"- {msg.role}: {truncate_content(msg.content)}"
        buckets[categorize(msg.content)].append(line)

    header = f"=== Conversation Summary ({len(messages)} messages) ==="
    sections = [
        title + "\n" + "\n".join(buckets[key])
        for key, title in SUMMARY_SECTIONS
        if buckets[key]
    ]
    return header + "\n" + "\n\n".join(sections)


def fold_summary(existing: str, section: str) -> str:
    """Append a new summary section to the accumulated summary text."""
    if not section:
        return existing
    if not existing:
        return section
    return f"{existing}\n\n{section}"


# ---------------------------------------------------------------------------
# Context window
# ---------------------------------------------------------------------------


@dataclass
class WindowSnapshot:
    messages: list[Message]
    important_messages: list[Message]
    summary: str


class ContextWindow:
    """Keeps the outbound conversation inside a token budget.

    The budget for live messages plus summary is
    ``max_tokens - reserved_tokens - summary_tokens``. When an append pushes
    usage past it, every message that is neither flagged important nor among
    the ``recent_messages`` most recent is folded into the summary and dropped.
    A single oversized message is kept as-is; trimming never loops.
    """

    def __init__(
        self,
        max_tokens: int,
        *,
        reserved_tokens: int = DEFAULT_RESERVED_TOKENS,
        summary_tokens: int = DEFAULT_SUMMARY_TOKENS,
        recent_messages: int = DEFAULT_RECENT_MESSAGES,
        estimator: TokenEstimator | None = None,
    ):
        self.max_tokens = max_tokens
        self.reserved_tokens = reserved_tokens
        self.summary_tokens = summary_tokens
        self.recent_messages = recent_messages
        self.estimator: TokenEstimator = estimator or estimate_tokens
        self.messages: list[Message] = []
        self.important_messages: list[Message] = []
        self.summary = ""

    # -- Mutation ------------------------------------------------------------

    def add_message(self, role: str, content: str, important: bool = False) -> Message:
        message = Message(
            role=role,
            content=content,
            tokens=self.estimator(content),
            important=important,
        )
        if important:
            self.important_messages.append(replace(message))
        self.messages.append(message)
        self.trim_if_needed()
        return message

    def mark_important(self, message_id: str) -> bool:
        """Flag a live message important. Returns False if no message matched."""
        for msg in self.messages:
            if msg.id == message_id:
                if not msg.important:
                    msg.important = True
                    self.important_messages.append(replace(msg))
                return True
        return False

    def trim_if_needed(self) -> None:
        available = self.max_tokens - self.reserved_tokens - self.summary_tokens
        if self.current_tokens() <= available:
            return

        keep: list[Message] = []
        summarize: list[Message] = []
        recent_start = len(self.messages) - self.recent_messages
        for i, msg in enumerate(self.messages):
            if msg.important or i >= recent_start:
                keep.append(msg)
            else:
                summarize.append(msg)

        if summarize:
            self.summary = fold_summary(self.summary, summarize_messages(summarize))
        self.messages = keep
        self._fit_summary(available)

    def _fit_summary(self, available: int) -> None:
        """Shrink the summary into the room the live messages leave.

        Oldest sections go first, then the remaining text is cut. When the
        live messages alone fill the budget the summary is left as it is.
        """
        room = available - sum(m.tokens for m in self.messages)
        if room <= 0 or not self.summary or self.estimator(self.summary) <= room:
            return
        sections = _SECTION_BREAK_RE.split(self.summary)
        while len(sections) > 1 and self.estimator("\n\n".join(sections)) > room:
            sections.pop(0)
        text = "\n\n".join(sections)
        while text and self.estimator(text) > room:
            text = text[: len(text) * room // self.estimator(text)]
        self.summary = text

    def clear_conversation(self) -> None:
        """Drop everything except important messages, and forget the summary."""
        self.messages = [replace(m) for m in self.important_messages]
        self.summary = ""

    def snapshot(self) -> WindowSnapshot:
        return WindowSnapshot(
            messages=copy.deepcopy(self.messages),
            important_messages=copy.deepcopy(self.important_messages),
            summary=self.summary,
        )

    def restore(self, snap: WindowSnapshot) -> None:
        self.messages = copy.deepcopy(snap.messages)
        self.important_messages = copy.deepcopy(snap.important_messages)
        self.summary = snap.summary

    # -- Queries -------------------------------------------------------------

    def get_contextual_messages(self) -> list[Message]:
        """Return the exact sequence to send to the model."""
        result: list[Message] = []
        if self.summary:
            result.append(
                Message(
                    role="system",
                    content=self.summary,
                    tokens=self.estimator(self.summary),
                    id="summary",
                )
            )
        result.extend(self.messages)
        return result

    def current_tokens(self) -> int:
        total = sum(m.tokens for m in self.messages)
        if self.summary:
            total += self.estimator(self.summary)
        return total

    def available_tokens(self) -> int:
        return self.max_tokens - self.reserved_tokens

    def get_usage_percentage(self) -> float:
        available = self.available_tokens()
        if available <= 0:
            return 100.0
        return self.current_tokens() / available * 100

    def get_context_stats(self) -> str:
        return (
            "Context Window Stats:\n"
            f"- Current tokens: {self.current_tokens()}\n"
            f"- Available tokens: {self.available_tokens()}\n"
            f"- Max tokens: {self.max_tokens}\n"
            f"- Reserved tokens: {self.reserved_tokens}\n"
            f"- Messages: {len(self.messages)}\n"
            f"- Important messages: {len(self.important_messages)}\n"
            f"- Has summary: {'yes' if self.summary else 'no'}\n"
            f"- Usage: {self.get_usage_percentage():.1f}%"
        )
