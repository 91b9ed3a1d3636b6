"""Tariff classification pipeline.

Combines an optional semantic best guess with candidates from the local
index and the authoritative source, ranks them by token overlap, and either
accepts one code or reports the set as ambiguous with the questions that
would separate it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from landedcost.models import ClassificationState, TariffCandidate
from landedcost.tariff.authoritative import AuthoritativeTariffClient
from landedcost.tariff.codes import digits_only, extract_tariff_code, fold_text, normalize_heading
from landedcost.tariff.disambiguation import derive_questions, pick_default_for_title
from landedcost.tariff.local_index import LocalTariffIndex
from landedcost.tariff.scoring import DEFAULT_POLICY, AcceptancePolicy, decide
from landedcost.tariff.semantic import ClassifierUnavailable, SemanticClassification, SemanticClassifier

logger = logging.getLogger(__name__)

MAX_VARIANTS_PER_QUERY = 4
MAX_QUERIES = 6
MAX_CANDIDATES = 8
MAX_LABEL_ENRICHMENT = 6
MAX_QUESTIONS = 4

# (trigger, skip when present, extra queries)
SYNONYM_RULES: Tuple[Tuple[str, Optional[str], Tuple[str, ...]], ...] = (
    ("autoelevad", None, ("carretilla", "carretillas", "apilador")),
    ("montacarg", "ascensor", ("ascensor",)),
    ("elevador", "autoelevad", ("ascensor", "elevador vehiculos", "elevador de liquidos")),
    ("apilador", None, ("carretilla elevadora", "autoelevador")),
)


def expand_query(query: str) -> List[str]:
    """The query plus trade-vocabulary synonyms, capped per query."""

    variants = [query.strip()] if query and query.strip() else []
    folded = fold_text(query)
    for trigger, unless, extras in SYNONYM_RULES:
        if trigger not in folded or (unless and unless in folded):
            continue
        for extra in extras:
            if extra not in variants:
                variants.append(extra)
    return variants[:MAX_VARIANTS_PER_QUERY]


def build_search_queries(
    text: str,
    heading: Optional[str],
    kind: Optional[str],
    search_terms: Sequence[str],
) -> List[str]:
    base: List[str] = []
    if heading:
        base.append(heading)
        if kind:
            base.append(f"{heading} {kind}")
    base.extend(search_terms or [text])

    queries: List[str] = []
    for query in base:
        for variant in expand_query(query):
            if variant not in queries:
                queries.append(variant)
    return queries[:MAX_QUERIES]


def merge_candidates(groups: Sequence[Sequence[TariffCandidate]], limit: int = MAX_CANDIDATES) -> List[TariffCandidate]:
    """Dedupe by digits keeping first-seen order; a later label fills a missing one."""

    merged: List[TariffCandidate] = []
    positions: dict[str, int] = {}
    for group in groups:
        for candidate in group:
            key = digits_only(candidate.code)
            if key in positions:
                existing = merged[positions[key]]
                if not existing.label and candidate.label:
                    merged[positions[key]] = existing.model_copy(update={"label": candidate.label})
                continue
            if len(merged) >= limit:
                continue
            positions[key] = len(merged)
            merged.append(candidate)
    return merged


@dataclass(frozen=True)
class ClassificationResult:
    best_code: Optional[str]
    confidence: float
    candidates: Tuple[TariffCandidate, ...] = ()
    heading_hint: Optional[str] = None
    kind_hint: Optional[str] = None
    missing_info_questions: Tuple[str, ...] = ()
    ambiguous: bool = False
    source: Optional[str] = None
    semantic_code: Optional[str] = None
    adjusted_from: Optional[str] = None
    adjusted_to: Optional[str] = None
    search_queries: Tuple[str, ...] = field(default=(), compare=False)

    def to_state(self) -> ClassificationState:
        return ClassificationState(
            candidates=list(self.candidates),
            confidence=self.confidence,
            pending_questions=list(self.missing_info_questions) if self.ambiguous else [],
            ambiguous=self.ambiguous,
            heading_hint=self.heading_hint,
            kind_hint=self.kind_hint,
            source=self.source,
            semantic_code=self.semantic_code,
            adjusted_from=self.adjusted_from,
            adjusted_to=self.adjusted_to,
        )


class TariffClassifier:
    def __init__(
        self,
        index: LocalTariffIndex,
        authoritative: AuthoritativeTariffClient | None = None,
        semantic: SemanticClassifier | None = None,
        policy: AcceptancePolicy = DEFAULT_POLICY,
    ):
        self.index = index
        self.authoritative = authoritative
        self.semantic = semantic
        self.policy = policy

    def _semantic_guess(self, text: str) -> Optional[SemanticClassification]:
        if self.semantic is None:
            return None
        try:
            return self.semantic.classify(text)
        except ClassifierUnavailable as exc:
            logger.warning("Semantic classifier unavailable: %s", exc)
            return None

    def _explicit(self, code: str) -> ClassificationResult:
        known = self.index.get(code)
        candidate = TariffCandidate(code=code, label=known.label if known else None, source="explicit")
        return ClassificationResult(
            best_code=candidate.code,
            confidence=1.0,
            candidates=(candidate,),
            heading_hint=normalize_heading(code),
            source="explicit",
        )

    def _gather(self, text: str, heading: Optional[str], queries: Sequence[str], terms: Sequence[str]) -> List[TariffCandidate]:
        local_query = terms[0] if terms else text
        local = [
            TariffCandidate(code=entry.code, label=entry.label, source="local_index")
            for entry in self.index.search(local_query, heading_filter=heading)
        ]
        remote: List[TariffCandidate] = []
        if self.authoritative is not None and self.authoritative.enabled:
            for query in queries:
                remote.extend(self.authoritative.search_code(query))

        merged = merge_candidates([local, remote])
        if self.authoritative is not None and self.authoritative.enabled:
            for position, candidate in enumerate(merged[:MAX_LABEL_ENRICHMENT]):
                if candidate.label:
                    continue
                detail = self.authoritative.get_detail(candidate.code)
                if detail and detail.label:
                    merged[position] = candidate.model_copy(update={"label": detail.label})

        if heading:
            in_heading = [c for c in merged if digits_only(c.code).startswith(heading)]
            if in_heading:
                return in_heading
        return merged

    def classify(self, text: str, heading_hint: Optional[str] = None) -> ClassificationResult:
        explicit = extract_tariff_code(text)
        if explicit:
            return self._explicit(explicit)

        semantic = self._semantic_guess(text)
        heading = normalize_heading(heading_hint) or (semantic.heading if semantic else None)
        kind = semantic.kind if semantic else None
        terms = list(semantic.search_terms) if semantic else []
        semantic_code = semantic.code if semantic else None

        queries = build_search_queries(text, heading, kind, terms)
        candidates = self._gather(text, heading, queries, terms)

        if not candidates:
            return ClassificationResult(
                best_code=semantic_code,
                confidence=semantic.confidence if semantic else 0.0,
                heading_hint=heading,
                kind_hint=kind,
                source="semantic" if semantic_code else None,
                semantic_code=semantic_code,
                search_queries=tuple(queries),
            )

        decision = decide(candidates, text, self.policy)
        best = decision.best
        in_list = semantic_code is not None and any(
            digits_only(c.code) == digits_only(semantic_code) for c in candidates
        )
        adjusted_from = adjusted_to = None
        if in_list:
            best_code, source = semantic_code, "semantic"
        elif decision.accepted and best is not None:
            best_code, source = best.candidate.code, best.candidate.source
            if semantic_code:
                adjusted_from, adjusted_to = semantic_code, best_code
        else:
            best_code, source = None, None
            if semantic_code:
                adjusted_from = semantic_code

        ambiguous = not decision.accepted
        questions: List[str] = []
        if ambiguous and len(candidates) >= 2:
            default = pick_default_for_title(candidates, text)
            if default is not None:
                best_code, source, ambiguous = default.code, "title_default", False
            else:
                questions = derive_questions(candidates, heading, MAX_QUESTIONS)
                if not questions and semantic:
                    questions = list(semantic.missing_info_questions[:MAX_QUESTIONS])

        result = ClassificationResult(
            best_code=best_code,
            confidence=round(best.score, 4) if best else 0.0,
            candidates=tuple(c for c in (s.candidate for s in decision.ranked)),
            heading_hint=heading,
            kind_hint=kind,
            missing_info_questions=tuple(questions),
            ambiguous=ambiguous,
            source=source,
            semantic_code=semantic_code,
            adjusted_from=adjusted_from,
            adjusted_to=adjusted_to,
            search_queries=tuple(queries),
        )
        logger.info(
            "Classified %r -> %s (ambiguous=%s, %d candidates)",
            text[:80],
            result.best_code,
            result.ambiguous,
            len(result.candidates),
        )
        return result
