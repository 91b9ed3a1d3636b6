from types import SimpleNamespace

import pytest

from landedcost.tariff.semantic import (
    ClassifierUnavailable,
    OpenAISemanticClassifier,
    sanitize_semantic_payload,
)


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_openai(content):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_sanitize_formats_codes_and_caps_lists():
    result = sanitize_semantic_payload(
        {
            "ncm_code": "84271019",
            "confidence": "1.7",
            "candidates": ["8427.20.90", "8427.20.90", "basura", "84272010"],
            "hs_heading": "8427",
            "kind": "  autoelevador ",
            "search_terms": ["a", "b", "c", "d", "e", "f", "g"],
            "missing_info_questions": ["¿Eléctrico?", ""],
            "unexpected": "ignored",
        }
    )

    assert result.code == "8427.10.19"
    assert result.confidence == 1.0
    assert result.candidates == ["8427.20.90", "8427.20.10"]
    assert result.heading == "8427"
    assert result.kind == "autoelevador"
    assert len(result.search_terms) == 6
    assert result.missing_info_questions == ["¿Eléctrico?"]


def test_sanitize_drops_unusable_code_and_bad_confidence():
    result = sanitize_semantic_payload({"ncm_code": "no sé", "confidence": "alta"})
    assert result.code is None
    assert result.confidence == 0.0
    assert result.candidates == []


def test_openai_classifier_reads_json_from_completion():
    client, completions = _fake_openai(
        'Respuesta: {"ncm_code": "8704.21.00", "confidence": 0.7, "hs_heading": "8704", '
        '"search_terms": ["camion diesel"]}'
    )
    classifier = OpenAISemanticClassifier(model="test-model", client=client)

    result = classifier.classify("  camión   diésel 3 t ")

    assert result.code == "8704.21.00"
    assert result.heading == "8704"
    assert result.search_terms == ["camion diesel"]
    call = completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][-1]["content"] == "Producto: camión diésel 3 t"


def test_openai_classifier_rejects_non_json():
    client, _ = _fake_openai("no puedo clasificar esto")
    classifier = OpenAISemanticClassifier(client=client)
    with pytest.raises(ClassifierUnavailable):
        classifier.classify("algo")


def test_openai_classifier_rejects_empty_text():
    client, completions = _fake_openai("{}")
    classifier = OpenAISemanticClassifier(client=client)
    with pytest.raises(ClassifierUnavailable):
        classifier.classify("   ")
    assert completions.calls == []
