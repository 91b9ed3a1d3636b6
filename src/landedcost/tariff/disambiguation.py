"""Declarative disambiguation rules for ambiguous candidate sets.

Each rule describes one product attribute that separates tariff lines within
a heading: which candidate labels carry it, the question to ask, and how to
read the user's answer. A rule only asks when it actually splits the current
candidates, and only narrows the set when the answer talks about its own
attribute.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from landedcost.models import TariffCandidate
from landedcost.tariff.codes import fold_text, heading_of, strip_accents

MAX_QUESTIONS = 4


def _folded(text: Optional[str]) -> str:
    return fold_text(text or "")


def _plain(text: str) -> str:
    return re.sub(r"\s+", " ", strip_accents((text or "").lower())).strip()


class Rule(Protocol):
    key: str

    def splits(self, candidates: Sequence[TariffCandidate]) -> bool:
        ...

    def question(self, candidates: Sequence[TariffCandidate]) -> str:
        ...

    def narrow(self, candidates: Sequence[TariffCandidate], answer: str) -> Optional[List[TariffCandidate]]:
        """Return the candidates consistent with ``answer``, or ``None`` if it is off-topic."""


_NEGATIONS = ("no", "sin", "tampoco")


def _polarity(text: str, mention: str) -> Optional[bool]:
    """Yes/no stance of the clause that mentions the attribute, if any."""

    for match in re.finditer(r"\b" + mention, text):
        clause = re.split(r"[.;,]", text[max(0, match.start() - 30) : match.start()])[-1]
        words = re.findall(r"\b(no|sin|tampoco|si|con|tiene|es)\b", clause)
        if any(word in _NEGATIONS for word in words):
            return False
        if words:
            return True
        lead = re.match(r"\s*(si|no)\b", text)
        if lead:
            return lead.group(1) == "si"
    return None


# ---------------------------------------------------------------------------
# Binary features ("has a tipping bed", "is refrigerated")
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BinaryRule:
    key: str
    prompt: str
    label_feature: str
    answer_mention: str

    def _has_feature(self, candidate: TariffCandidate) -> bool:
        return re.search(self.label_feature, _folded(candidate.label)) is not None

    def splits(self, candidates: Sequence[TariffCandidate]) -> bool:
        flags = {self._has_feature(c) for c in candidates}
        return len(flags) == 2

    def question(self, candidates: Sequence[TariffCandidate]) -> str:
        return self.prompt

    def narrow(self, candidates: Sequence[TariffCandidate], answer: str) -> Optional[List[TariffCandidate]]:
        wanted = _polarity(_plain(answer), self.answer_mention)
        if wanted is None:
            return None
        return [c for c in candidates if self._has_feature(c) == wanted]


# ---------------------------------------------------------------------------
# Categorical features (ignition type, tractor use)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChoiceOption:
    answer_pattern: str
    label_pattern: str


@dataclass(frozen=True)
class ChoiceRule:
    key: str
    prompt: str
    options: Tuple[ChoiceOption, ...]

    def splits(self, candidates: Sequence[TariffCandidate]) -> bool:
        hit_options = 0
        for option in self.options:
            if any(re.search(option.label_pattern, _folded(c.label)) for c in candidates):
                hit_options += 1
        if hit_options >= 2:
            return True
        if hit_options == 1:
            pattern = next(
                o.label_pattern for o in self.options
                if any(re.search(o.label_pattern, _folded(c.label)) for c in candidates)
            )
            return not all(re.search(pattern, _folded(c.label)) for c in candidates)
        return False

    def question(self, candidates: Sequence[TariffCandidate]) -> str:
        return self.prompt

    def narrow(self, candidates: Sequence[TariffCandidate], answer: str) -> Optional[List[TariffCandidate]]:
        text = _plain(answer)
        chosen = [o for o in self.options if re.search(o.answer_pattern, text)]
        if len(chosen) != 1:
            return None
        pattern = chosen[0].label_pattern
        return [c for c in candidates if re.search(pattern, _folded(c.label))]


# ---------------------------------------------------------------------------
# Numeric ranges ("peso total ... superior a 5 t pero inferior o igual a 20 t")
# ---------------------------------------------------------------------------


_NUMBER = r"(\d+(?:[.,]\d+)*)"


def _parse_number(raw: str) -> float:
    raw = raw.strip()
    if "," in raw:
        return float(raw.replace(".", "").replace(",", "."))
    if re.fullmatch(r"\d{1,3}(?:\.\d{3})+", raw):
        return float(raw.replace(".", ""))
    return float(raw)


@dataclass(frozen=True)
class Interval:
    lower: float
    upper: float

    def contains(self, value: float) -> bool:
        return self.lower < value <= self.upper

    def within(self, other: "Interval") -> bool:
        return self.lower >= other.lower and self.upper <= other.upper


@dataclass(frozen=True)
class RangeRule:
    key: str
    subject: str
    context: str
    label_unit: str
    answer_unit: str
    unit_display: str
    alt_unit: Optional[str] = None
    alt_factor: float = 1.0

    def label_interval(self, candidate: TariffCandidate) -> Optional[Interval]:
        label = _plain(candidate.label or "")
        if not re.search(self.context, label):
            return None
        lower_match = re.search(r"superior a " + _NUMBER + r" " + self.label_unit, label)
        upper_match = re.search(r"inferior o igual a " + _NUMBER + r" " + self.label_unit, label)
        if not lower_match and not upper_match:
            return None
        lower = _parse_number(lower_match.group(1)) if lower_match else 0.0
        upper = _parse_number(upper_match.group(1)) if upper_match else math.inf
        return Interval(lower, upper)

    def _intervals(self, candidates: Sequence[TariffCandidate]) -> List[Interval]:
        found: List[Interval] = []
        for candidate in candidates:
            interval = self.label_interval(candidate)
            if interval and interval not in found:
                found.append(interval)
        return found

    def splits(self, candidates: Sequence[TariffCandidate]) -> bool:
        return len(self._intervals(candidates)) >= 2

    def _separating_bound(self, intervals: Sequence[Interval]) -> Optional[float]:
        if len(intervals) != 2:
            return None
        bounds = sorted({b for i in intervals for b in (i.lower, i.upper) if 0 < b < math.inf})
        for bound in bounds:
            below = [i for i in intervals if i.within(Interval(0.0, bound))]
            above = [i for i in intervals if i.within(Interval(bound, math.inf))]
            if len(below) == 1 and len(above) == 1:
                return bound
        return None

    def question(self, candidates: Sequence[TariffCandidate]) -> str:
        separating = self._separating_bound(self._intervals(candidates))
        if separating is not None:
            bound = f"{separating:g}"
            return (
                f"¿El {self.subject} es **≤ {bound} {self.unit_display}** "
                f"o **> {bound} {self.unit_display}**?"
            )
        return f"¿Cuál es el **{self.subject}** (en {self.unit_display})?"

    def _read_answer(self, answer: str) -> Optional[Tuple[str, float]]:
        text = _plain(answer)
        units = [(self.answer_unit, 1.0)]
        if self.alt_unit:
            units.append((self.alt_unit, self.alt_factor))
        for unit, factor in units:
            value = _NUMBER + r"\s*(?:" + unit + r")\b"
            le = re.search(
                r"(<=|=<|≤|<|hasta|menor o igual a|menos de|no supera|no mas de|maximo|como mucho)\s*" + value,
                text,
            ) or re.search(value + r"\s*o menos", text)
            if le:
                return "le", _parse_number(le.group(le.lastindex)) * factor
            gt = re.search(
                r"(>=|=>|≥|>|mas de|mayor a|mayor que|superior a|supera|arriba de|por encima de)\s*" + value,
                text,
            ) or re.search(value + r"\s*o mas", text)
            if gt:
                return "gt", _parse_number(gt.group(gt.lastindex)) * factor
            plain = re.search(value, text)
            if plain:
                return "eq", _parse_number(plain.group(1)) * factor
        return None

    def narrow(self, candidates: Sequence[TariffCandidate], answer: str) -> Optional[List[TariffCandidate]]:
        reading = self._read_answer(answer)
        if reading is None:
            return None
        mode, value = reading
        kept: List[TariffCandidate] = []
        for candidate in candidates:
            interval = self.label_interval(candidate)
            if interval is None:
                continue
            if mode == "le" and interval.within(Interval(0.0, value)):
                kept.append(candidate)
            elif mode == "gt" and interval.within(Interval(value, math.inf)):
                kept.append(candidate)
            elif mode == "eq" and interval.contains(value):
                kept.append(candidate)
        return kept


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

GROSS_WEIGHT = RangeRule(
    key="gross_weight",
    subject="peso total con carga máxima",
    context=r"peso total",
    label_unit=r"t\b",
    answer_unit=r"t|tn|ton|tons|tonelada|toneladas",
    unit_display="t",
    alt_unit=r"kg|kilos",
    alt_factor=0.001,
)

TIPPING_BED = BinaryRule(
    key="tipping_bed",
    prompt="¿Tiene **caja basculante** (volcadora)? (sí/no)",
    label_feature=r"basculante",
    answer_mention=r"(basculante|volcadora|volquete)",
)

REFRIGERATED = BinaryRule(
    key="refrigerated",
    prompt="¿Es **frigorífico o isotérmico**? (sí/no)",
    label_feature=r"frigorific|isotermic|refrigera",
    answer_mention=r"(frigorific\w*|isotermic\w*|refrigerad\w*|frio)",
)

CHASSIS_ONLY = BinaryRule(
    key="chassis_only",
    prompt="¿Es un **chasis con motor y cabina** (sin carrocería)? (sí/no)",
    label_feature=r"chasis",
    answer_mention=r"(chasis|carroceria)",
)

IGNITION = ChoiceRule(
    key="ignition",
    prompt="¿El motor es **nafta (encendido por chispa)** o **diésel (encendido por compresión)**?",
    options=(
        ChoiceOption(answer_pattern=r"\b(nafta\w*|gasolina|chispa|naftero)\b", label_pattern=r"chispa"),
        ChoiceOption(answer_pattern=r"\b(diesel|gasoil|gas oil|compresion)\b", label_pattern=r"compresion"),
    ),
)

DISPLACEMENT = RangeRule(
    key="displacement",
    subject="cilindrada",
    context=r"cilindrada",
    label_unit=r"cm3\b",
    answer_unit=r"cm3|cc|cm 3|cm³|centimetros cubicos",
    unit_display="cm³",
    alt_unit=r"l|litros",
    alt_factor=1000.0,
)

ROAD_TRACTOR = ChoiceRule(
    key="road_tractor",
    prompt="¿Es un **tractor de carretera para semirremolques** o un tractor de otro uso (agrícola, forestal)?",
    options=(
        ChoiceOption(answer_pattern=r"\b(semirremolque\w*|carretera|ruta|camion tractor)\b", label_pattern=r"semirremolque"),
        ChoiceOption(answer_pattern=r"\b(agricola\w*|campo|rural|forestal)\b", label_pattern=r"agricola|forestal|los demas"),
    ),
)

TRACKED = BinaryRule(
    key="tracked",
    prompt="¿Es **de orugas**? (sí/no)",
    label_feature=r"oruga",
    answer_mention=r"(oruga\w*)",
)

SINGLE_AXLE = BinaryRule(
    key="single_axle",
    prompt="¿Es un tractor **de un solo eje** (motocultor)? (sí/no)",
    label_feature=r"un solo eje|motocultor",
    answer_mention=r"(un solo eje|motocultor|eje)",
)

PARTS_OR_COMPLETE = ChoiceRule(
    key="parts_or_complete",
    prompt="¿Importás el **equipo completo** o **partes/repuestos**?",
    options=(
        ChoiceOption(answer_pattern=r"\b(parte|partes|repuesto\w*|componente\w*|accesorio\w*)\b", label_pattern=r"\bpartes\b"),
        ChoiceOption(answer_pattern=r"\b(complet\w*|entero|entera|armad\w*)\b", label_pattern=r"^(?!.*\bpartes\b)"),
    ),
)

HEADING_RULES: Dict[str, Tuple[Rule, ...]] = {
    "8704": (GROSS_WEIGHT, TIPPING_BED, REFRIGERATED, CHASSIS_ONLY),
    "8703": (IGNITION, DISPLACEMENT),
    "8701": (ROAD_TRACTOR, TRACKED, SINGLE_AXLE),
}
GENERIC_RULES: Tuple[Rule, ...] = (PARTS_OR_COMPLETE,)


def shared_heading(candidates: Sequence[TariffCandidate]) -> Optional[str]:
    headings = {heading_of(c.code) for c in candidates}
    headings.discard(None)
    if len(headings) == 1:
        return headings.pop()
    return None


def rules_for(candidates: Sequence[TariffCandidate], heading: Optional[str] = None) -> Tuple[Rule, ...]:
    key = heading or shared_heading(candidates)
    return HEADING_RULES.get(key or "", ()) + GENERIC_RULES


def derive_questions(
    candidates: Sequence[TariffCandidate],
    heading: Optional[str] = None,
    limit: int = MAX_QUESTIONS,
) -> List[str]:
    """Questions whose answers would split ``candidates``."""

    if len(candidates) < 2:
        return []
    questions: List[str] = []
    for rule in rules_for(candidates, heading):
        if rule.splits(candidates):
            question = rule.question(candidates)
            if question not in questions:
                questions.append(question)
        if len(questions) >= limit:
            break
    return questions


@dataclass(frozen=True)
class Resolution:
    candidates: Tuple[TariffCandidate, ...]
    matched_rules: Tuple[str, ...]

    @property
    def resolved(self) -> Optional[TariffCandidate]:
        return self.candidates[0] if len(self.candidates) == 1 else None


def resolve_answer(
    candidates: Sequence[TariffCandidate],
    answer: str,
    heading: Optional[str] = None,
) -> Resolution:
    """Narrow ``candidates`` by every rule the answer speaks to."""

    remaining = list(candidates)
    matched: List[str] = []
    for rule in rules_for(candidates, heading):
        narrowed = rule.narrow(remaining, answer)
        if narrowed is None:
            continue
        matched.append(rule.key)
        remaining = narrowed
    return Resolution(candidates=tuple(remaining), matched_rules=tuple(matched))


PICKUP_MODEL_RE = re.compile(
    r"\b(hilux|ranger|amarok|s10|s 10|frontier|l200|l 200|saveiro|strada|toro|np300|navara|d max|dmax|"
    r"maverick|montana|oroch|alaskan|tacoma|tundra|f 150|f150|pick up|pickup)\b"
)


def default_answer_for_title(title: str) -> Optional[str]:
    """Implied answers for well-known light pick-up models, unless the title says otherwise."""

    folded = _folded(title)
    if not PICKUP_MODEL_RE.search(folded):
        return None
    parts = ["hasta 5 t"]
    if "basculante" not in folded and "volcador" not in folded:
        parts.append("sin caja basculante")
    if not re.search(r"frigorific|isotermic|refrigera", folded):
        parts.append("sin frigorifico")
    if "chasis" not in folded:
        parts.append("no es chasis")
    return ", ".join(parts)


def pick_default_for_title(candidates: Sequence[TariffCandidate], title: str) -> Optional[TariffCandidate]:
    answer = default_answer_for_title(title)
    if answer is None or len(candidates) < 2:
        return None
    resolution = resolve_answer(candidates, answer)
    if resolution.resolved:
        return resolution.resolved
    survivors = resolution.candidates or tuple(candidates)
    residual = [c for c in survivors if "los demas" in _folded(c.label)]
    if len(residual) == 1:
        return residual[0]
    return None
