import pytest

from landedcost.dialogue import messages as msg
from landedcost.dialogue.parsing import (
    clean_product_title,
    contact_channel,
    infer_product_seed,
    infer_stage_hint,
    is_affirmative,
    is_small_talk,
    looks_like_code_disagreement,
    looks_like_product_text,
    parse_amount,
    parse_assumption_update,
    parse_budget,
    parse_choice_index,
    parse_quantity,
    parse_quantity_smart,
    parse_unit_price,
    parse_unit_price_smart,
)
from landedcost.models import ChatMessage, Stage


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1.500,50", 1500.5),
        ("9,800", 9800.0),
        ("15.000", 15000.0),
        ("120.50", 120.5),
        ("1.234.567", 1234567.0),
        ("0,500", 0.5),
        ("USD 4180,", 4180.0),
        ("abc", None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_unit_price_needs_currency_unless_bare_allowed():
    assert parse_unit_price("USD 120") == 120.0
    assert parse_unit_price("el precio es 1.500,50 dólares") == 1500.5
    assert parse_unit_price("500 unidades") is None
    assert parse_unit_price("120") is None
    assert parse_unit_price("120", allow_bare=True) == 120.0


def test_quantity_ignores_currency_only_messages():
    assert parse_quantity("500 unidades") == 500
    assert parse_quantity("x 12") == 12
    assert parse_quantity("cantidad: 1.000") == 1000
    assert parse_quantity("USD 50 x 200 unidades") == 200
    assert parse_quantity("USD 120") is None
    assert parse_quantity("300") is None
    assert parse_quantity("300", allow_bare=True) == 300


def test_smart_parsers_accept_trigger_words():
    assert parse_unit_price_smart("precio 80") == 80.0
    assert parse_unit_price_smart("80") is None
    assert parse_quantity_smart("son 40 piezas") == 40


def test_parse_budget():
    assert parse_budget("tengo USD 10.000 para invertir") == 10000.0
    assert parse_budget("20000") == 20000.0
    assert parse_budget("no sé") is None


def test_product_text_detection():
    assert looks_like_product_text("autoelevador eléctrico 3 t")
    assert looks_like_product_text("autoelevador eléctrico 3T, USD 4180, x1")
    assert not looks_like_product_text("USD 120")
    assert not looks_like_product_text("500 unidades")
    assert not looks_like_product_text("hola")
    assert not looks_like_product_text("")


def test_clean_product_title_strips_slots_and_lead_in():
    assert clean_product_title("quiero importar un autoelevador eléctrico USD 4180 x1") == "un autoelevador eléctrico"
    assert clean_product_title("autoelevador eléctrico 3T, USD 4180, x1") == "autoelevador eléctrico 3T"


def test_code_disagreement():
    assert looks_like_code_disagreement("la NCM 8427.10.19 no es correcta")
    assert looks_like_code_disagreement("esa posición 84271019 está mal")
    assert not looks_like_code_disagreement("la NCM está perfecta")


def test_choice_index():
    assert parse_choice_index("2", upper=3) == 2
    assert parse_choice_index("7", upper=3) is None
    assert parse_choice_index("2 unidades") is None


def test_post_quote_predicates():
    assert is_affirmative("sí, quiero avanzar")
    assert not is_affirmative("no, gracias")
    assert contact_channel("ana@example.com") == "email"
    assert contact_channel("+54 9 11 5555-1234") == "whatsapp"
    assert contact_channel("mañana") == "unknown"
    assert is_small_talk("Hola!")
    assert not is_small_talk("hola, quiero importar sillas")


def test_assumption_updates():
    assert parse_assumption_update("Origen: China") == {"origin": "China"}
    assert parse_assumption_update("perfil carga: pesada") == {"shipping_profile": "heavy"}
    assert parse_assumption_update("liviana") == {"shipping_profile": "light"}
    assert parse_assumption_update("hola") is None


def test_stage_hint_from_last_assistant_turn():
    def assistant(text):
        return ChatMessage(role="assistant", content=text)

    assert infer_stage_hint([assistant(msg.ASK_PRICE)]) == Stage.AWAITING_PRICE
    assert infer_stage_hint([assistant(msg.ASK_QUANTITY)]) == Stage.AWAITING_QUANTITY
    assert infer_stage_hint([assistant(msg.ASK_PRODUCT)]) == Stage.AWAITING_PRODUCT
    assert infer_stage_hint([assistant(msg.ASK_PRICE), assistant("**Total estimado: USD 9.000**")]) is None
    assert infer_stage_hint([ChatMessage(role="user", content="hola")]) is None


def test_product_seed_prefers_links():
    history = [
        ChatMessage(role="user", content="mirá https://shop.test/p/silla-gamer-ergonomica"),
        ChatMessage(role="user", content="autoelevador eléctrico"),
        ChatMessage(role="user", content="500"),
    ]
    assert infer_product_seed(history) == "https://shop.test/p/silla-gamer-ergonomica"
    assert infer_product_seed(history[1:]) == "autoelevador eléctrico"
    assert infer_product_seed([ChatMessage(role="user", content="hola")]) is None
