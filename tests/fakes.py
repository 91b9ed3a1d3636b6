"""In-memory stand-ins for the engine's external collaborators."""

from typing import Dict, List, Optional

from landedcost.models import TariffCandidate, TariffDetail
from landedcost.quote.exchange import ExchangeRateSnapshot
from landedcost.tariff.semantic import SemanticClassification


class FakeAuthoritative:
    def __init__(
        self,
        candidates: Optional[Dict[str, List[TariffCandidate]]] = None,
        details: Optional[Dict[str, TariffDetail]] = None,
        enabled: bool = True,
    ):
        self.candidates = candidates or {}
        self.details = details or {}
        self.enabled = enabled
        self.searches: List[str] = []
        self.detail_requests: List[str] = []

    def search_code(self, text: str, limit: int = 8) -> List[TariffCandidate]:
        self.searches.append(text)
        return list(self.candidates.get(text, []))[:limit]

    def get_detail(self, code: str, bypass_cache: bool = False) -> Optional[TariffDetail]:
        self.detail_requests.append(code)
        return self.details.get(code)

    def close(self) -> None:
        pass


class FakeRates:
    def __init__(self, local_per_usd: float = 1000.0, source: str = "env"):
        self.snapshot = ExchangeRateSnapshot(local_per_usd, source, 0.0)
        self.calls = 0

    def get(self) -> ExchangeRateSnapshot:
        self.calls += 1
        return self.snapshot


class FakeSemantic:
    def __init__(self, result: SemanticClassification):
        self.result = result
        self.calls: List[str] = []

    def classify(self, text: str) -> SemanticClassification:
        self.calls.append(text)
        return self.result


class RecordingLeadSink:
    def __init__(self) -> None:
        self.leads = []

    def capture(self, draft, contact, channel) -> None:
        self.leads.append((draft.session_id, contact, channel))
