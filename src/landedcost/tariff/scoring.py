"""Token-overlap scoring and the acceptance rule for tariff candidates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence, Tuple

from landedcost.models import TariffCandidate
from landedcost.tariff.codes import fold_text

STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "de", "del", "la", "las", "el", "los", "y", "o", "para", "con", "sin", "por",
        "un", "una", "unos", "unas", "en", "al", "a",
    }
)

# Single words too vague to accept a code on their own.
GENERIC_TOKENS: FrozenSet[str] = frozenset({"elevador", "montacargas", "maquina", "equipo", "producto"})


@dataclass(frozen=True)
class AcceptancePolicy:
    """Thresholds deciding when the top-ranked candidate may be accepted.

    The minimum score depends on how many query tokens there are; the best
    candidate must also beat the runner-up by ``margin`` whenever both clear
    the minimum.
    """

    min_token_length: int = 4
    max_tokens: int = 12
    single_token_threshold: float = 1.0
    two_token_threshold: float = 0.5
    many_token_threshold: float = 0.34
    margin: float = 0.2
    generic_tokens: FrozenSet[str] = field(default_factory=lambda: GENERIC_TOKENS)

    def min_score(self, tokens: Sequence[str]) -> float:
        if len(tokens) == 1 and tokens[0] in self.generic_tokens:
            return math.inf
        if len(tokens) <= 1:
            return self.single_token_threshold
        if len(tokens) == 2:
            return self.two_token_threshold
        return self.many_token_threshold


DEFAULT_POLICY = AcceptancePolicy()
_EPSILON = 1e-9


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: TariffCandidate
    score: float


@dataclass(frozen=True)
class AcceptanceDecision:
    ranked: Tuple[ScoredCandidate, ...]
    tokens: Tuple[str, ...]
    min_score: float
    accepted: bool

    @property
    def best(self) -> Optional[ScoredCandidate]:
        return self.ranked[0] if self.ranked else None

    @property
    def runner_up(self) -> Optional[ScoredCandidate]:
        return self.ranked[1] if len(self.ranked) > 1 else None


def query_tokens(text: str, policy: AcceptancePolicy = DEFAULT_POLICY) -> List[str]:
    tokens: List[str] = []
    for word in fold_text(text).split():
        if len(word) < policy.min_token_length or word in STOP_WORDS or word in tokens:
            continue
        tokens.append(word)
        if len(tokens) >= policy.max_tokens:
            break
    return tokens


def _token_matches(token: str, words: Sequence[str]) -> bool:
    for word in words:
        if word == token or word.startswith(token):
            return True
        if len(word) >= 3 and token.startswith(word):
            return True
    return False


def score_label(tokens: Sequence[str], label: Optional[str]) -> float:
    """Fraction of query tokens found in the label."""

    if not tokens or not label:
        return 0.0
    words = [w for w in fold_text(label).split() if w not in STOP_WORDS]
    hits = sum(1 for token in tokens if _token_matches(token, words))
    return hits / len(tokens)


def decide(
    candidates: Sequence[TariffCandidate],
    query_text: str,
    policy: AcceptancePolicy = DEFAULT_POLICY,
) -> AcceptanceDecision:
    """Rank candidates and decide whether the best one is safe to accept."""

    tokens = query_tokens(query_text, policy)
    scored = [ScoredCandidate(candidate=c, score=score_label(tokens, c.label)) for c in candidates]
    ranked = tuple(sorted(scored, key=lambda item: item.score, reverse=True))
    min_score = policy.min_score(tokens) if tokens else math.inf

    accepted = False
    if ranked and ranked[0].score >= min_score:
        runner = ranked[1] if len(ranked) > 1 else None
        accepted = (
            runner is None
            or runner.score < min_score
            or ranked[0].score - runner.score >= policy.margin - _EPSILON
        )
    return AcceptanceDecision(ranked=ranked, tokens=tuple(tokens), min_score=min_score, accepted=accepted)
