"""Question parsing and template answer synthesis."""

from __future__ import annotations

import re
from enum import Enum

from mneme.types import EntityType, RelationshipType, SearchResult

NO_INFORMATION = "I don't have any information about that in my memory."


class QuestionType(str, Enum):
    WHO = "who"
    WHERE = "where"
    WHEN = "when"
    WHAT = "what"
    GENERAL = "general"


_CLASSIFIERS: list[tuple[frozenset[str], QuestionType]] = [
    (frozenset({"who", "whom", "whose"}), QuestionType.WHO),
    (frozenset({"where"}), QuestionType.WHERE),
    (frozenset({"when"}), QuestionType.WHEN),
    (frozenset({"what", "which"}), QuestionType.WHAT),
]

_QUESTION_STARTERS = {
    "who", "what", "where", "when", "why", "how", "which",
    "did", "do", "does", "is", "are", "was", "were",
}

_WORD_RE = re.compile(r"[a-z0-9']+")
_PUNCT = "?.,;:!\"()"

# Sentence-initial words that are capitalised but never names.
_LEADING_VERBS = {
    "tell", "show", "remind", "list", "give", "find", "can", "could", "please",
    "do", "does", "did", "is", "are", "was", "were", "have", "has", "had",
    "who", "what", "where", "when", "why", "how", "which", "i",
}

_KEYWORD_STOPWORDS = {
    "who", "whom", "whose", "what", "where", "when", "why", "how", "which",
    "did", "do", "does", "is", "are", "was", "were", "am", "be", "been",
    "the", "a", "an", "and", "or", "of", "to", "in", "on", "at", "for", "with",
    "about", "i", "me", "my", "you", "your", "we", "our", "it", "that", "this",
    "know", "tell", "remember", "any", "anything", "there", "have", "has", "had",
    "last", "next", "week", "month", "year", "today", "yesterday", "tomorrow",
    "recently", "lately", "ago",
}

# Past forms so "who did I meet" finds "I met ...".
_IRREGULAR_FORMS = {
    "meet": "met", "see": "saw", "go": "went", "buy": "bought",
    "eat": "ate", "speak": "spoke",
}


def parse_question(question: str) -> QuestionType:
    words = set(_WORD_RE.findall((question or "").lower()))
    for triggers, qtype in _CLASSIFIERS:
        if words & triggers:
            return qtype
    return QuestionType.GENERAL


def is_question(text: str) -> bool:
    stripped = (text or "").strip()
    if "?" in stripped:
        return True
    words = _WORD_RE.findall(stripped.lower())
    return bool(words) and words[0] in _QUESTION_STARTERS


def extract_entity_candidates(question: str) -> list[str]:
    """Capitalised tokens, with consecutive ones joined ("San Francisco")."""
    names: list[str] = []
    run: list[str] = []

    def flush() -> None:
        if run:
            name = " ".join(run)
            if name not in names:
                names.append(name)
            run.clear()

    for i, raw in enumerate((question or "").split()):
        word = raw.strip(_PUNCT)
        if word.endswith("'s"):
            word = word[:-2]
        capital = len(word) > 1 and word[0].isupper()
        if capital and i == 0 and word.lower() in _LEADING_VERBS:
            capital = False
        if capital and word.lower() in _KEYWORD_STOPWORDS:
            capital = False
        if capital:
            run.append(word)
        if not capital or raw[-1:] in _PUNCT:
            flush()
    flush()
    return names


def question_keywords(question: str) -> list[str]:
    """Content words for substring search when no entity name resolves."""
    out: list[str] = []
    for word in _WORD_RE.findall((question or "").lower()):
        word = word.strip("'")
        if len(word) < 3 or word in _KEYWORD_STOPWORDS:
            continue
        for form in (word, _IRREGULAR_FORMS.get(word)):
            if form and form not in out:
                out.append(form)
    return out


def synthesize_answer(qtype: QuestionType, result: SearchResult) -> str:
    if result.empty:
        return NO_INFORMATION
    if qtype == QuestionType.WHO:
        return _answer_who(result)
    if qtype == QuestionType.WHERE:
        return _answer_where(result)
    if qtype == QuestionType.WHEN:
        return _answer_when(result)
    if qtype == QuestionType.WHAT:
        return _answer_what(result)
    return _answer_general(result)


def _names_of_type(result: SearchResult, etype: EntityType) -> list[str]:
    return [s.entity.name for s in result.entities if s.entity.type == etype]


def _answer_who(result: SearchResult) -> str:
    people = _names_of_type(result, EntityType.PERSON)
    if len(people) == 1:
        return f"That would be {people[0]}."
    if people:
        return f"I found these people: {', '.join(people)}."
    for scored in result.memories:
        if re.search(r"\b(met|saw)\b", scored.memory.content.lower()):
            return scored.memory.content
    return "I'm not sure who you're referring to."


def _answer_where(result: SearchResult) -> str:
    places = _names_of_type(result, EntityType.PLACE)
    if len(places) == 1:
        return f"That would be at {places[0]}."
    if places:
        return f"I found these places: {', '.join(places)}."
    for scored in result.relationships:
        rel = scored.relationship
        if rel.type in (RelationshipType.LOCATED_IN, RelationshipType.LIVES_IN) and rel.source and rel.target:
            return f"{rel.source.name} is at {rel.target.name}."
    return "I'm not sure about the location."


def _answer_when(result: SearchResult) -> str:
    times = _names_of_type(result, EntityType.TIME)
    if times:
        return f"That was {times[0]}."
    for scored in result.memories:
        ts = scored.memory.timestamp
        if ts is not None:
            return f"That was on {ts.strftime('%B')} {ts.day}, {ts.year}."
    for scored in result.memories:
        if scored.memory.date_text:
            return f"That was {scored.memory.date_text}."
    return "I'm not sure about the exact time."


def _answer_what(result: SearchResult) -> str:
    if result.memories:
        return result.memories[0].memory.content
    for scored in result.entities:
        if scored.entity.description:
            return f"{scored.entity.name} is {scored.entity.description}."
    if result.entities:
        entity = result.entities[0].entity
        return f"I know about {entity.name} ({entity.type.value})."
    return "I'm not sure about that."


def _answer_general(result: SearchResult) -> str:
    parts: list[str] = []
    if result.entities:
        names = [s.entity.name for s in result.entities[:5]]
        parts.append(f"I found information about: {', '.join(names)}.")
    if result.memories:
        parts.append(result.memories[0].memory.content)
    return " ".join(parts)
