"""Semantic (LLM) best-guess classification behind a narrow interface.

The model's JSON is untrusted: ``sanitize_semantic_payload`` is the only
place it is read, and everything downstream sees a validated
``SemanticClassification``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Mapping, Optional, Protocol

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field

from landedcost.tariff.codes import UNKNOWN_CODE, format_code, normalize_heading

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 6
MAX_SEARCH_TERMS = 6
MAX_QUESTIONS = 4


class ClassifierUnavailable(RuntimeError):
    """The semantic classifier could not produce a usable answer."""


class SemanticClassification(BaseModel):
    code: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rationale: str = ""
    candidates: List[str] = Field(default_factory=list)
    heading: Optional[str] = None
    kind: Optional[str] = None
    search_terms: List[str] = Field(default_factory=list)
    missing_info_questions: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class SemanticClassifier(Protocol):
    def classify(self, text: str) -> SemanticClassification:
        ...


def _str_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    items: List[str] = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in items:
            items.append(text)
        if len(items) >= limit:
            break
    return items


def _clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(1.0, number))


def sanitize_semantic_payload(raw: Mapping[str, Any]) -> SemanticClassification:
    """Coerce a model response into a ``SemanticClassification``.

    Unknown keys are ignored, codes are reformatted, lists are capped, and an
    unusable code becomes ``None``.
    """

    code = format_code(raw.get("ncm_code") or raw.get("code"))
    candidates: List[str] = []
    for item in _str_list(raw.get("candidates"), MAX_CANDIDATES * 2):
        formatted = format_code(item)
        if formatted != UNKNOWN_CODE and formatted not in candidates:
            candidates.append(formatted)
    kind = str(raw.get("kind") or "").strip() or None

    return SemanticClassification(
        code=None if code == UNKNOWN_CODE else code,
        confidence=_clamp_confidence(raw.get("confidence")),
        rationale=str(raw.get("rationale") or "").strip(),
        candidates=candidates[:MAX_CANDIDATES],
        heading=normalize_heading(raw.get("hs_heading") or raw.get("heading")),
        kind=kind,
        search_terms=_str_list(raw.get("search_terms"), MAX_SEARCH_TERMS),
        missing_info_questions=_str_list(raw.get("missing_info_questions"), MAX_QUESTIONS),
    )


SYSTEM_PROMPT = """Sos un despachante de aduana argentino. Clasificá el producto en la
Nomenclatura Común del Mercosur (NCM) y devolvé SOLO un objeto JSON con:
{
  "ncm_code": "NNNN.NN.NN o vacío si no sabés",
  "confidence": 0.0-1.0,
  "rationale": "breve justificación",
  "candidates": ["hasta 6 códigos alternativos"],
  "hs_heading": "partida de 4 dígitos",
  "kind": "tipo de producto en pocas palabras",
  "search_terms": ["hasta 6 términos para buscar en el nomenclador"],
  "missing_info_questions": ["hasta 4 preguntas para desambiguar"]
}"""


def _extract_json(text: str) -> Mapping[str, Any]:
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise ClassifierUnavailable("no JSON object in classifier response")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as exc:
        raise ClassifierUnavailable(f"invalid JSON from classifier: {exc}") from exc
    if not isinstance(data, dict):
        raise ClassifierUnavailable("classifier response is not an object")
    return data


class OpenAISemanticClassifier:
    """Chat-completions backed classifier returning JSON."""

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        timeout: float = 40.0,
        client: OpenAI | None = None,
    ):
        self.model = model
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def classify(self, text: str) -> SemanticClassification:
        cleaned = re.sub(r"\s+", " ", text or "").strip()
        if not cleaned:
            raise ClassifierUnavailable("empty product text")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0.1,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Producto: {cleaned}"},
                ],
            )
        except OpenAIError as exc:
            raise ClassifierUnavailable(f"classifier request failed: {exc}") from exc

        content = response.choices[0].message.content or ""
        result = sanitize_semantic_payload(_extract_json(content))
        logger.info(
            "Semantic classification %s (confidence %.2f) for %r",
            result.code,
            result.confidence,
            cleaned[:80],
        )
        return result
