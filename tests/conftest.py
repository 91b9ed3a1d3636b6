"""Shared fixtures: isolated settings, fake collaborators, and an engine builder."""

import pytest

from landedcost.config import Settings
from landedcost.dialogue.engine import DialogueEngine
from landedcost.dialogue.session_store import DraftStore, SessionLocks
from landedcost.models import TariffCandidate, TariffDetail, TaxKind
from landedcost.quote.calculator import LandedCostCalculator
from landedcost.services import Services
from landedcost.tariff.classifier import TariffClassifier
from landedcost.tariff.detail_cache import DetailCache
from landedcost.tariff.local_index import IndexEntry, LocalTariffIndex

from fakes import FakeAuthoritative, FakeRates, RecordingLeadSink


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        base_url="https://tariff.test",
        login_url="https://tariff.test/login.php",
        username="broker",
        password="secret",
        state_path=tmp_path / "state.json",
        cache_path=tmp_path / "cache.db",
        index_path=tmp_path / "index.db",
        sessions_path=tmp_path / "drafts.jsonl",
    )


@pytest.fixture()
def index(tmp_path):
    idx = LocalTariffIndex(tmp_path / "index.db")
    yield idx
    idx.close()


@pytest.fixture()
def seeded_index(index):
    index.upsert(
        [
            IndexEntry(code="8427.10.19", label="Autoelevadores eléctricos de horquilla"),
            IndexEntry(code="8427.20.90", label="Las demás carretillas autopropulsadas"),
            IndexEntry(
                code="8704.21.00",
                label="Vehículos para transporte de mercancías, diésel, de peso total con carga máxima "
                "inferior o igual a 5 t",
            ),
            IndexEntry(
                code="8704.22.10",
                label="Vehículos para transporte de mercancías, diésel, de peso total con carga máxima "
                "superior a 5 t pero inferior o igual a 20 t",
            ),
        ]
    )
    return index


@pytest.fixture()
def fake_rates() -> FakeRates:
    return FakeRates()


@pytest.fixture()
def lead_sink() -> RecordingLeadSink:
    return RecordingLeadSink()


@pytest.fixture()
def make_engine(tmp_path, seeded_index, fake_rates, lead_sink):
    """Build a ``DialogueEngine`` over the seeded index; keyword overrides replace collaborators."""

    def build(
        authoritative=None,
        semantic=None,
        store=None,
        locks=None,
        classifier=None,
        resolver=None,
        calculator=None,
    ) -> DialogueEngine:
        authoritative = authoritative if authoritative is not None else FakeAuthoritative(enabled=False)
        return DialogueEngine(
            store=store or DraftStore(tmp_path / "drafts.jsonl"),
            classifier=classifier or TariffClassifier(seeded_index, authoritative=authoritative, semantic=semantic),
            calculator=calculator or LandedCostCalculator(fake_rates),
            resolver=resolver,
            authoritative=authoritative,
            locks=locks or SessionLocks(),
            lead_sink=lead_sink,
        )

    return build


@pytest.fixture()
def services(tmp_path, settings, seeded_index, lead_sink):
    """A ``Services`` bundle over fakes, with the forklift code known to the tariff source."""

    forklift = TariffCandidate(code="8427.10.19", label="Autoelevadores eléctricos de horquilla")
    authoritative = FakeAuthoritative(
        {"autoelevador": [forklift]},
        details={
            "8427.10.19": TariffDetail(
                code="8427.10.19",
                label=forklift.label,
                rates={TaxKind.IMPORT_DUTY: 14.0, TaxKind.VAT: 21.0},
            )
        },
    )
    cache = DetailCache(tmp_path / "cache.db")
    classifier = TariffClassifier(seeded_index, authoritative=authoritative)
    rates = FakeRates(local_per_usd=1150.0)
    calculator = LandedCostCalculator(rates)
    store = DraftStore(tmp_path / "drafts.jsonl")
    locks = SessionLocks()
    bundle = Services(
        settings=settings,
        index=seeded_index,
        cache=cache,
        authoritative=authoritative,
        classifier=classifier,
        exchange_rates=rates,
        calculator=calculator,
        store=store,
        locks=locks,
        engine=DialogueEngine(
            store=store,
            classifier=classifier,
            calculator=calculator,
            authoritative=authoritative,
            locks=locks,
            lead_sink=lead_sink,
        ),
    )
    yield bundle
    cache.close()
