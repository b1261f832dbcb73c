"""
Contradiction heuristics - negation polarity and mutually exclusive wording.
An empirical signal counter, not semantic NLP; every constant is tunable.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .config import VAULT_CONTRADICTION_WEIGHT, VAULT_NEGATION_SIMILARITY

DEFAULT_NEGATION_PATTERNS: Tuple[str, ...] = (
    r"\bnot\b",
    r"\bnever\b",
    r"\bdon't\b",
    r"\bdoesn't\b",
    r"\bwon't\b",
    r"\bcan't\b",
    r"\bshouldn't\b",
    r"\binstead of\b",
    r"\brather than\b",
)

DEFAULT_EXCLUSIVE_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("increase", "decrease"),
    ("before", "after"),
    ("yes", "no"),
    ("accept", "reject"),
    ("approve", "deny"),
    ("start", "stop"),
    ("begin", "end"),
    ("more", "less"),
)


# Function words that never take a verb suffix
UNINFLECTED_TERMS = frozenset({"yes", "no", "more", "less", "before", "after"})

VOWELS = set("aeiou")


@dataclass
class ContradictionRules:
    """Tunable parameters of the contradiction test."""
    negation_patterns: Tuple[str, ...] = DEFAULT_NEGATION_PATTERNS
    exclusive_pairs: Tuple[Tuple[str, str], ...] = DEFAULT_EXCLUSIVE_PAIRS
    negation_similarity: float = VAULT_NEGATION_SIMILARITY  # negation only counts above this
    signal_weight: float = VAULT_CONTRADICTION_WEIGHT       # confidence per signal
    _compiled: List[re.Pattern] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.negation_patterns]

    def has_negation(self, text: str) -> bool:
        return any(p.search(text) for p in self._compiled)


@dataclass
class ContradictionCheck:
    """Outcome of comparing two texts."""
    is_contradiction: bool
    confidence: float
    signals: List[str]


def word_forms(term: str) -> List[str]:
    """
    The term plus its regular verb inflections.

    increase -> increases, increased, increasing
    deny     -> denies, denied, denying
    stop     -> stops, stopped, stopping (and the undoubled forms)
    """
    term = term.lower()
    if term in UNINFLECTED_TERMS or len(term) < 2:
        return [term]

    if term.endswith("e"):
        return [term, term + "s", term + "d", term[:-1] + "ing"]

    if term.endswith("y") and term[-2] not in VOWELS:
        return [term, term[:-1] + "ies", term[:-1] + "ied", term + "ing"]

    forms = [term, term + "s", term + "ed", term + "ing"]
    if (len(term) >= 3 and term[-1] not in VOWELS and term[-1] not in "wxy"
            and term[-2] in VOWELS and term[-3] not in VOWELS):
        forms += [term + term[-1] + "ed", term + term[-1] + "ing"]
    return forms


def contains_term(text: str, term: str) -> bool:
    """Whole-word match of the term or one of its inflections."""
    alternatives = "|".join(re.escape(form) for form in word_forms(term))
    return re.search(rf"\b(?:{alternatives})\b", text, re.IGNORECASE) is not None


def check_contradiction(text_a: str, text_b: str, similarity: float,
                        rules: Optional[ContradictionRules] = None) -> ContradictionCheck:
    """
    Count contradiction signals between two texts.

    One signal when exactly one side is negated and the embeddings are similar
    enough to be about the same subject, plus one per exclusive word pair split
    across the two texts. Confidence is ``min(1, signals * weight)``.
    """
    rules = rules or ContradictionRules()
    signals: List[str] = []

    if rules.has_negation(text_a) != rules.has_negation(text_b) and similarity > rules.negation_similarity:
        signals.append("negation")

    for term_a, term_b in rules.exclusive_pairs:
        if ((contains_term(text_a, term_a) and contains_term(text_b, term_b))
                or (contains_term(text_a, term_b) and contains_term(text_b, term_a))):
            signals.append(f"{term_a}/{term_b}")

    return ContradictionCheck(
        is_contradiction=len(signals) > 0,
        confidence=min(1.0, len(signals) * rules.signal_weight),
        signals=signals,
    )


def extract_claim(content: str, max_length: int = 100) -> str:
    """First sentence of the content, truncated to ``max_length`` characters."""
    first_sentence = re.split(r"[.!?]", content, maxsplit=1)[0].strip()
    if len(first_sentence) > max_length:
        return first_sentence[:max_length] + "..."
    return first_sentence
