from landedcost.models import TariffCandidate
from landedcost.tariff.scoring import DEFAULT_POLICY, AcceptancePolicy, decide, query_tokens


def _cand(code: str, label: str) -> TariffCandidate:
    return TariffCandidate(code=code, label=label)


def test_query_tokens_drop_short_and_stop_words():
    assert query_tokens("Un ascensor para la casa de 3 pisos") == ["ascensor", "casa", "pisos"]


def test_generic_single_token_is_never_accepted():
    decision = decide([_cand("8428.10.00", "Ascensores y montacargas; elevador")], "elevador")
    assert decision.tokens == ("elevador",)
    assert decision.best.score == 1.0
    assert not decision.accepted


def test_single_specific_token_needs_full_match():
    decision = decide([_cand("8427.10.19", "Autoelevadores eléctricos")], "autoelevador")
    assert decision.accepted
    assert decision.best.candidate.code == "8427.10.19"


def test_margin_separates_close_candidates():
    clear = decide(
        [_cand("8427.10.19", "Carretillas eléctricas"), _cand("8427.20.90", "Carretillas de nafta")],
        "carretilla electrica",
    )
    assert clear.accepted
    assert clear.best.candidate.code == "8427.10.19"

    tied = decide(
        [_cand("8427.10.19", "Carretillas eléctricas"), _cand("8427.10.11", "Carretillas eléctricas con horquilla")],
        "carretilla electrica",
    )
    assert not tied.accepted


def test_margin_of_exactly_point_two_is_enough():
    decision = decide(
        [
            _cand("8413.70.10", "Bombas centrífugas eléctricas sumergibles para agua"),
            _cand("8413.70.90", "Bombas centrífugas eléctricas para agua"),
        ],
        "bomba centrifuga electrica sumergible agua",
    )
    assert [round(item.score, 2) for item in decision.ranked] == [1.0, 0.8]
    assert decision.accepted


def test_below_threshold_is_not_accepted():
    decision = decide([_cand("8471.30.12", "Máquinas portátiles")], "notebook gamer liviana")
    assert decision.best.score == 0.0
    assert not decision.accepted


def test_decision_is_pure():
    candidates = [_cand("8427.10.19", "Carretillas eléctricas"), _cand("8427.20.90", "Carretillas de nafta")]
    assert decide(candidates, "carretilla electrica") == decide(candidates, "carretilla electrica")


def test_custom_policy_margin():
    strict = AcceptancePolicy(margin=0.6)
    candidates = [_cand("8427.10.19", "Carretillas eléctricas"), _cand("8427.20.90", "Carretillas de nafta")]
    assert decide(candidates, "carretilla electrica", DEFAULT_POLICY).accepted
    assert not decide(candidates, "carretilla electrica", strict).accepted
