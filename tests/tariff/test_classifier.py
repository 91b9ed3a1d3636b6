from landedcost.models import TariffCandidate, TariffDetail
from landedcost.tariff.classifier import TariffClassifier, build_search_queries, expand_query, merge_candidates
from landedcost.tariff.semantic import ClassifierUnavailable, SemanticClassification

from fakes import FakeAuthoritative, FakeSemantic

FORKLIFT = TariffCandidate(code="8427.10.19", label="Autoelevadores eléctricos de horquilla")
OTHER_TRUCKS = TariffCandidate(code="8427.20.90", label="Las demás carretillas autopropulsadas")
LIGHT = TariffCandidate(
    code="8704.21.00",
    label="Vehículos para transporte de mercancías, diésel, de peso total con carga máxima inferior o igual a 5 t",
)
MEDIUM = TariffCandidate(
    code="8704.22.10",
    label="Vehículos para transporte de mercancías, diésel, de peso total con carga máxima "
    "superior a 5 t pero inferior o igual a 20 t",
)


class DownSemantic:
    def classify(self, text):
        raise ClassifierUnavailable("quota exceeded")


def test_expand_query_adds_trade_synonyms():
    assert expand_query("autoelevador 3 t") == ["autoelevador 3 t", "carretilla", "carretillas", "apilador"]
    assert expand_query("montacargas para ascensor") == ["montacargas para ascensor"]
    assert expand_query("elevador de autos") == [
        "elevador de autos",
        "ascensor",
        "elevador vehiculos",
        "elevador de liquidos",
    ]
    assert expand_query("  ") == []


def test_build_search_queries_starts_from_heading():
    queries = build_search_queries("camión volcador", "8704", "camion", ["camion volcador", "volquete"])
    assert queries[:3] == ["8704", "8704 camion", "camion volcador"]
    assert len(queries) <= 6


def test_merge_candidates_dedupes_and_fills_labels():
    bare = TariffCandidate(code="84271019", source="local_index")
    merged = merge_candidates([[bare], [FORKLIFT, OTHER_TRUCKS]], limit=5)
    assert [c.code for c in merged] == ["8427.10.19", "8427.20.90"]
    assert merged[0].label == FORKLIFT.label
    assert merged[0].source == "local_index"
    assert len(merge_candidates([[FORKLIFT, OTHER_TRUCKS]], limit=1)) == 1


def test_explicit_code_short_circuits(seeded_index):
    semantic = FakeSemantic(SemanticClassification(code="9999.99.99"))
    result = TariffClassifier(seeded_index, semantic=semantic).classify("autoelevador 8427.10.19")

    assert result.best_code == "8427.10.19"
    assert result.confidence == 1.0
    assert result.source == "explicit"
    assert result.candidates[0].label == FORKLIFT.label
    assert result.heading_hint == "8427"
    assert semantic.calls == []


def test_dominant_candidate_is_accepted(seeded_index):
    text = "autoelevador eléctrico 3T, USD 4180, x1"
    authoritative = FakeAuthoritative({text: [FORKLIFT, OTHER_TRUCKS], "carretilla": [OTHER_TRUCKS]})
    result = TariffClassifier(seeded_index, authoritative=authoritative).classify(text)

    assert result.best_code == "8427.10.19"
    assert result.ambiguous is False
    assert result.source == "authoritative"
    assert "carretilla" in authoritative.searches
    assert result.to_state().pending_questions == []


def test_tie_is_ambiguous_with_weight_question(seeded_index):
    text = "camion diesel para transporte de mercancias"
    authoritative = FakeAuthoritative({text: [LIGHT, MEDIUM]})
    result = TariffClassifier(seeded_index, authoritative=authoritative).classify(text)

    assert result.ambiguous is True
    assert result.best_code is None
    assert [c.code for c in result.candidates] == ["8704.21.00", "8704.22.10"]
    assert result.missing_info_questions == ("¿El peso total con carga máxima es **≤ 5 t** o **> 5 t**?",)
    state = result.to_state()
    assert state.awaiting_answer
    assert state.pending_questions == list(result.missing_info_questions)


def test_pickup_title_picks_light_truck_without_asking(seeded_index):
    text = "Toyota Hilux 4x4 cabina doble"
    authoritative = FakeAuthoritative({text: [LIGHT, MEDIUM]})
    result = TariffClassifier(seeded_index, authoritative=authoritative).classify(text)

    assert result.best_code == "8704.21.00"
    assert result.source == "title_default"
    assert result.ambiguous is False
    assert result.missing_info_questions == ()


def test_semantic_code_in_candidate_list_wins(seeded_index):
    semantic = FakeSemantic(
        SemanticClassification(code="8427.20.90", confidence=0.6, heading="8427", search_terms=["carretilla"])
    )
    result = TariffClassifier(seeded_index, semantic=semantic).classify("apilador eléctrico")

    assert result.best_code == "8427.20.90"
    assert result.source == "semantic"
    assert result.semantic_code == "8427.20.90"
    assert result.heading_hint == "8427"


def test_semantic_code_outside_candidates_is_adjusted(seeded_index):
    semantic = FakeSemantic(
        SemanticClassification(code="8427.90.00", heading="8427", search_terms=["autoelevador electrico"])
    )
    result = TariffClassifier(seeded_index, semantic=semantic).classify("autoelevador eléctrico")

    assert result.best_code == "8427.10.19"
    assert result.source == "local_index"
    assert (result.adjusted_from, result.adjusted_to) == ("8427.90.00", "8427.10.19")


def test_semantic_guess_without_candidates(index):
    semantic = FakeSemantic(SemanticClassification(code="8428.10.00", confidence=0.55, heading="8428"))
    result = TariffClassifier(index, semantic=semantic).classify("ascensor para edificio")

    assert result.best_code == "8428.10.00"
    assert result.confidence == 0.55
    assert result.source == "semantic"
    assert result.candidates == ()


def test_unavailable_semantic_degrades_to_index(seeded_index):
    result = TariffClassifier(seeded_index, semantic=DownSemantic()).classify("autoelevadores eléctricos")

    assert result.best_code == "8427.10.19"
    assert result.semantic_code is None


def test_heading_hint_filters_candidates(seeded_index):
    stray = TariffCandidate(code="8704.21.00", label="Carretillas de transporte")
    authoritative = FakeAuthoritative({"carretillas": [OTHER_TRUCKS, stray]})
    result = TariffClassifier(seeded_index, authoritative=authoritative).classify("carretillas", heading_hint="8427")

    assert [c.code for c in result.candidates] == ["8427.20.90"]
    assert result.best_code == "8427.20.90"


def test_unlabelled_candidates_are_enriched_from_detail(index):
    text = "bomba centrifuga"
    authoritative = FakeAuthoritative(
        {text: [TariffCandidate(code="8413.70.10")]},
        details={"8413.70.10": TariffDetail(code="8413.70.10", label="Bombas centrífugas monocelulares")},
    )
    result = TariffClassifier(index, authoritative=authoritative).classify(text)

    assert authoritative.detail_requests == ["8413.70.10"]
    assert result.candidates[0].label == "Bombas centrífugas monocelulares"
    assert result.best_code == "8413.70.10"
