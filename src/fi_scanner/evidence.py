"""
Evidence Vocabulary and Validation
==================================

Deterministic, side-effect free text logic used by the classification
cascade:

- the category term tables and request-verb table
- the response/decision deny-list
- structural markers of consultant reports
- sentence splitting, evidence quote extraction and the final evidence gate

Everything here is pure so the structural stage and the evidence gate give
identical answers on repeated runs for the same input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Pattern

CATEGORY_TERMS: dict[str, tuple[str, ...]] = {
    "acoustic": (
        "acoustic", "acoustics", "noise", "sound", "sound level", "decibel",
        "decibels", "db(a)", "vibration",
    ),
    "transport": (
        "transport", "traffic", "parking", "highway", "highways", "road safety",
        "travel plan", "car park", "mobility", "junction",
    ),
    "ecological": (
        "ecology", "ecological", "biodiversity", "habitat", "habitats",
        "wildlife", "species", "bat survey", "natura",
    ),
    "flood": (
        "flood", "flooding", "flood risk", "drainage", "suds", "hydrology",
        "surface water", "attenuation", "stormwater", "storm water",
    ),
    "heritage": (
        "heritage", "archaeological", "archaeology", "historic", "conservation",
        "protected structure", "listed building",
    ),
    "arboricultural": (
        "arboricultural", "arborist", "tree", "trees", "tree survey", "hedgerow",
        "hedgerows", "woodland",
    ),
    "waste": (
        "waste", "refuse", "recycling", "bin storage", "waste management",
    ),
    "lighting": (
        "lighting", "light spill", "illumination", "luminaire", "lux",
        "light pollution",
    ),
    "contamination": (
        "contamination", "contaminated", "contaminant", "site investigation",
        "ground investigation", "remediation",
    ),
}

CATEGORY_ALIASES = {
    "ecology": "ecological",
    "noise": "acoustic",
    "arboriculture": "arboricultural",
    "trees": "arboricultural",
    "drainage": "flood",
}

REQUEST_VERBS: tuple[str, ...] = (
    "submit", "submits", "submission of", "provide", "provides", "prepare",
    "carry out", "undertake", "produce", "supply",
    "is required", "are required", "is requested", "are requested",
    "requested to", "required to", "requires", "request that",
    "is invited to", "should be submitted", "must be submitted",
    "must be provided", "shall be submitted", "needs to be", "is to be",
    "please submit", "please provide", "recommend the applicant",
)

# Phrases exclusive to responses, decisions, or consultant reports. Matched
# against the whole document, their presence overrides an affirmative
# classifier answer, so none of them may occur in a genuine request letter.
RESPONSE_DENY_LIST: tuple[str, ...] = (
    "response to further information",
    "response to clarification of further information",
    "in response to your request for further information",
    "following your request for further information",
    "the further information received",
    "further information has been received",
    "fi received",
    "f.i. received",
    "we have submitted the following",
    "enclosed please find the requested",
    "attached herewith the further information",
    "permission is hereby granted",
    "it is proposed to grant permission",
    "decision to grant permission",
    "it is proposed to refuse permission",
    "decision to refuse permission",
    "were engaged to undertake",
    "were engaged by",
    "commissioned to undertake",
    "this report has been prepared by",
)

# Recaps of an earlier submission. Request letters often open with one, so a
# recap only denies a document when no other sentence asks for anything.
SUBMISSION_RECAP_PHRASES: tuple[str, ...] = (
    "we have submitted",
    "we have provided",
    "the applicant has submitted",
)

# Sentences carrying these are describing an existing report or submission,
# not asking for one.
QUOTE_RESPONSE_INDICATORS: tuple[str, ...] = SUBMISSION_RECAP_PHRASES + (
    "this report",
    "this assessment",
    "executive summary",
    "table of contents",
    "prepared by",
    "report prepared",
    "conclusions and recommendations",
    "survey results",
    "please refer to",
    "as outlined in",
    "as detailed in",
    "in response to",
    "following receipt",
    "a condition is attached",
    "condition be attached",
    "in the event of a grant",
    "subject to conditions",
)

RESPONSE_FILENAME_INDICATORS: tuple[str, ...] = (
    "fi_received",
    "f.i._received",
    "fi received",
    "fi-received",
    "response to fi",
    "response_to_fi",
    "fi response",
    "fi_response",
    "submitted",
    "final grant",
    "decision notification",
    "grant permission",
)

REPORT_STRUCTURE_MARKERS: tuple[Pattern[str], ...] = (
    re.compile(r"table of contents", re.IGNORECASE),
    re.compile(r"executive summary", re.IGNORECASE),
    re.compile(r"\d+\.\d+\s+(introduction|background|methodology)", re.IGNORECASE),
    re.compile(r"this report (?:was|has been) prepared by", re.IGNORECASE),
    re.compile(r"prepared (?:on behalf of|by)\s*:", re.IGNORECASE),
    re.compile(r"prepared on behalf of", re.IGNORECASE),
)

PLACEHOLDER_QUOTES = {
    "",
    "n/a",
    "none",
    "no quote captured",
    "no specific quote extracted",
    "match confirmed by ai but no specific quote extracted",
}

SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?;:])\s+")
WHITESPACE_RE = re.compile(r"\s+")
MAX_QUOTE_CHARS = 300
DEFAULT_WINDOW_CHARS = 200


def _phrase_pattern(phrases: Iterable[str]) -> Pattern[str]:
    alternatives = sorted({re.escape(p) for p in phrases}, key=len, reverse=True)
    # Trailing boundary only when the phrase ends in a word character.
    return re.compile(
        r"(?<![a-z0-9])(?:" + "|".join(alternatives) + r")(?![a-z0-9])",
        re.IGNORECASE,
    )


VERB_RE = _phrase_pattern(REQUEST_VERBS)


def normalize_category(category: str) -> str:
    key = " ".join(category.lower().split())
    return CATEGORY_ALIASES.get(key, key)


def category_terms(category: str) -> tuple[str, ...]:
    """Return the term table for a category, falling back to the word itself."""
    key = normalize_category(category)
    return CATEGORY_TERMS.get(key, (key,))


_TERM_PATTERNS: dict[str, Pattern[str]] = {}


def category_pattern(category: str) -> Pattern[str]:
    key = normalize_category(category)
    pattern = _TERM_PATTERNS.get(key)
    if pattern is None:
        pattern = _phrase_pattern(category_terms(key))
        _TERM_PATTERNS[key] = pattern
    return pattern


def split_sentences(text: str) -> list[str]:
    """Split prose into sentences on terminal punctuation, collapsing newlines."""
    flattened = WHITESPACE_RE.sub(" ", text).strip()
    if not flattened:
        return []
    return [s.strip() for s in SENTENCE_SPLIT_RE.split(flattened) if s.strip()]


def find_deny_phrase(text: str) -> str | None:
    """Return the first response/decision phrase present in the text, if any."""
    lowered = WHITESPACE_RE.sub(" ", text.lower())
    for phrase in RESPONSE_DENY_LIST:
        if phrase in lowered:
            return phrase
    return None


def find_response_language(text: str) -> str | None:
    """
    Document-level deny check.

    Returns an exclusive response/decision phrase found anywhere in the text,
    or a submission recap when no sentence outside the recaps carries a
    request verb. None means the document may still be a request.
    """
    phrase = find_deny_phrase(text)
    if phrase:
        return phrase

    recap = None
    for sentence in split_sentences(text):
        lowered = sentence.lower()
        hit = next((p for p in SUBMISSION_RECAP_PHRASES if p in lowered), None)
        if hit:
            recap = recap or hit
        elif VERB_RE.search(sentence):
            return None
    return recap


def response_filename_indicator(file_name: str) -> str | None:
    lowered = file_name.lower()
    for indicator in RESPONSE_FILENAME_INDICATORS:
        if indicator in lowered:
            return indicator
    return None


def report_structure_marker(text: str) -> str | None:
    for pattern in REPORT_STRUCTURE_MARKERS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def estimate_pages(text_length: int, chars_per_page: int) -> int:
    if text_length <= 0:
        return 0
    return -(-text_length // max(1, chars_per_page))


def _closest_pair(verbs: list[re.Match], terms: list[re.Match]) -> tuple[int, int, int] | None:
    """Return (distance, start, end) for the closest verb/term occurrence pair."""
    best = None
    for v in verbs:
        for t in terms:
            if v.end() <= t.start():
                distance = t.start() - v.end()
            elif t.end() <= v.start():
                distance = v.start() - t.end()
            else:
                distance = 0
            if best is None or distance < best[0]:
                best = (distance, min(v.start(), t.start()), max(v.end(), t.end()))
    return best


@dataclass(frozen=True)
class EvidenceCheck:
    valid: bool
    reason: str


def validate_evidence(quote: str | None, category: str, window_chars: int) -> EvidenceCheck:
    """
    Final evidence gate.

    A quote is only valid when it is not a placeholder, does not describe an
    existing report or a condition, and carries at least one request verb and
    one category term no more than ``window_chars`` apart.
    """
    text = WHITESPACE_RE.sub(" ", (quote or "")).strip()
    normalized = text.lower().strip(" .…")
    if normalized in PLACEHOLDER_QUOTES or normalized.startswith("rejected:"):
        return EvidenceCheck(False, "placeholder quote")

    for indicator in QUOTE_RESPONSE_INDICATORS:
        if indicator in normalized:
            return EvidenceCheck(False, f"quote contains response language: {indicator!r}")
    deny = find_deny_phrase(normalized)
    if deny:
        return EvidenceCheck(False, f"quote contains response language: {deny!r}")

    verbs = list(VERB_RE.finditer(text))
    terms = list(category_pattern(category).finditer(text))
    if not verbs and not terms:
        return EvidenceCheck(False, "quote has neither a request verb nor a category term")
    if not verbs:
        return EvidenceCheck(False, "quote has a category term but no request verb")
    if not terms:
        return EvidenceCheck(False, "quote has a request verb but no category term")

    distance, _, _ = _closest_pair(verbs, terms)
    if distance > window_chars:
        return EvidenceCheck(
            False,
            f"request verb and category term are {distance} chars apart (limit {window_chars})",
        )
    return EvidenceCheck(True, "request verb and category term found together")


def _trim_quote(segment: str, verbs: list[re.Match], terms: list[re.Match]) -> str:
    if len(segment) <= MAX_QUOTE_CHARS:
        return segment
    _, start, end = _closest_pair(verbs, terms)
    slack = max(0, MAX_QUOTE_CHARS - (end - start)) // 2
    lo = max(0, start - slack)
    hi = min(len(segment), end + slack)
    quote = segment[lo:hi].strip()
    return ("..." if lo > 0 else "") + quote + ("..." if hi < len(segment) else "")


def extract_evidence_quote(
    text: str, category: str, window_chars: int = DEFAULT_WINDOW_CHARS
) -> str | None:
    """
    Find a verbatim quote in the raw text that contains a request verb and a
    category term no more than ``window_chars`` apart, within the same sentence
    or failing that within a pair of adjacent sentences. Sentences that
    describe an existing report are skipped, as are candidates whose verb and
    term sit too far apart, so a later sentence still gets its chance.
    """
    sentences = split_sentences(text)
    term_re = category_pattern(category)

    def candidate(segment: str) -> str | None:
        lowered = segment.lower()
        if any(indicator in lowered for indicator in QUOTE_RESPONSE_INDICATORS):
            return None
        if find_deny_phrase(lowered):
            return None
        verbs = list(VERB_RE.finditer(segment))
        if not verbs:
            return None
        terms = list(term_re.finditer(segment))
        if not terms:
            return None
        distance, _, _ = _closest_pair(verbs, terms)
        if distance > window_chars:
            return None
        return _trim_quote(segment, verbs, terms)

    for sentence in sentences:
        quote = candidate(sentence)
        if quote:
            return quote
    for first, second in zip(sentences, sentences[1:]):
        quote = candidate(f"{first} {second}")
        if quote:
            return quote
    return None
