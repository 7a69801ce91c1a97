import os
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

TOOL_SELECTION_ENABLED = os.getenv("TOOL_SELECTION_ENABLED", "true").strip().lower() not in {"0", "false", "no", "off"}


class Intent(str, Enum):
    food = "food"
    weight = "weight"
    progress = "progress"
    photo = "photo"
    greeting = "greeting"
    confirmation = "confirmation"
    search = "search"
    query = "query"


# Information requests about already-logged data. These win over food keywords.
QUERY_PATTERNS = [
    re.compile(r"\bwhat (did|have) i (eat|eaten|ate|had|have|log|logged)\b"),
    re.compile(r"\bwhat (else )?(can|should) i (eat|have)\b"),
    re.compile(r"\bshow (me )?(my )?(today|todays|today's|progress|stats|summary|log|diary|meals?|food)\b"),
    re.compile(r"\bhow (many|much) (calories|protein|carbs|fat)( do i| have i| are| is)?\b.*\b(left|today|eaten|had|remaining)\b"),
    re.compile(r"\bhow am i doing\b"),
    re.compile(r"\bdid i (log|eat|have)\b"),
    re.compile(r"\bwhat'?s (left|remaining|my progress)\b"),
]

INTENT_PATTERNS: dict[Intent, re.Pattern] = {
    Intent.food: re.compile(r"\b(ate|had|eat|eating|food|meal|breakfast|lunch|dinner|snack|log|for me)\b"),
    Intent.weight: re.compile(r"\b(weight|weigh|weighed|scale|kg|lbs|pounds|kilos)\b"),
    Intent.progress: re.compile(r"\b(progress|today|left|remaining|how|calories|status)\b"),
    Intent.photo: re.compile(r"\b(photo|image|picture|upload|pic)\b"),
    Intent.greeting: re.compile(r"^(hi|hello|hey|good morning|morning|good evening|evening)\b"),
    Intent.search: re.compile(r"\b(similar|before|past|history|had before|eaten before|last time)\b"),
}

CONFIRMATION_WORDS = (
    "yes",
    "yep",
    "yeah",
    "yup",
    "sure",
    "ok",
    "okay",
    "correct",
    "confirm",
    "confirmed",
    "right",
    "perfect",
    "exactly",
    "absolutely",
)

CONFIRMATION_PHRASES = (
    "that's right",
    "thats right",
    "that is right",
    "that's correct",
    "looks good",
    "sounds good",
    "go ahead",
    "do it",
    "log it",
    "log that",
    "please log",
    "you didn't log",
    "you did not log",
    "forgot to log",
)

_CONFIRMATION_WORD_PATTERN = re.compile(r"^(" + "|".join(CONFIRMATION_WORDS) + r")\b")
_DENIAL_PATTERN = re.compile(r"^(no|nope|nah|not quite|not really|cancel|wrong|incorrect)\b")
_DENIAL_PHRASES = ("don't log", "dont log", "do not log", "that's wrong", "thats wrong", "not right")


def normalize_message(message: str) -> str:
    return " ".join((message or "").strip().lower().replace("’", "'").split())


def is_confirmation(message: str) -> bool:
    text = normalize_message(message)
    if not text or any(phrase in text for phrase in _DENIAL_PHRASES):
        return False
    if _CONFIRMATION_WORD_PATTERN.match(text):
        return True
    return any(phrase in text for phrase in CONFIRMATION_PHRASES)


def is_denial(message: str) -> bool:
    text = normalize_message(message)
    if not text or is_confirmation(text):
        return False
    if _DENIAL_PATTERN.match(text):
        return True
    return any(phrase in text for phrase in _DENIAL_PHRASES)


def is_query(message: str) -> bool:
    text = normalize_message(message)
    return any(pattern.search(text) for pattern in QUERY_PATTERNS)


class Classifier(Protocol):
    def detect(self, message: str) -> set[Intent]:
        ...


class RegexIntentClassifier:
    def detect(self, message: str) -> set[Intent]:
        text = normalize_message(message)
        if not text:
            return set()
        intents = {intent for intent, pattern in INTENT_PATTERNS.items() if pattern.search(text)}
        if is_confirmation(text):
            intents.add(Intent.confirmation)
        if is_query(text):
            intents.discard(Intent.food)
            intents.update({Intent.query, Intent.progress})
        return intents


_DEFAULT_CLASSIFIER = RegexIntentClassifier()


def get_classifier() -> Classifier:
    return _DEFAULT_CLASSIFIER


def detect_intents(message: str, classifier: Optional[Classifier] = None) -> set[Intent]:
    return (classifier or _DEFAULT_CLASSIFIER).detect(message)


@dataclass(frozen=True)
class ToolSelection:
    needs_food_tools: bool = False
    needs_weight_tool: bool = False
    needs_progress_tool: bool = False
    needs_search_tool: bool = False
    needs_onboarding_tool: bool = False

    @classmethod
    def full(cls, onboarding_complete: bool = True) -> "ToolSelection":
        return cls(
            needs_food_tools=True,
            needs_weight_tool=True,
            needs_progress_tool=True,
            needs_search_tool=True,
            needs_onboarding_tool=not onboarding_complete,
        )

    def enabled(self) -> list[str]:
        return [name for name, value in asdict(self).items() if value]


def select_tools(
    intents: Iterable[Intent],
    has_pending_confirmation: bool,
    *,
    onboarding_complete: bool = True,
    enabled: Optional[bool] = None,
) -> ToolSelection:
    intents = set(intents)
    active = TOOL_SELECTION_ENABLED if enabled is None else enabled
    if not active or not intents:
        return ToolSelection.full(onboarding_complete)

    confirming = Intent.confirmation in intents and has_pending_confirmation
    return ToolSelection(
        needs_food_tools=confirming or bool(intents & {Intent.food, Intent.photo}),
        needs_weight_tool=Intent.weight in intents,
        needs_progress_tool=bool(intents & {Intent.progress, Intent.query, Intent.greeting}),
        needs_search_tool=Intent.search in intents,
        needs_onboarding_tool=not onboarding_complete,
    )
