"""Data contracts shared by the tariff, quote, and dialogue layers."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from landedcost.tariff.codes import format_code


class Stage(str, Enum):
    AWAITING_PRODUCT = "awaiting_product"
    AWAITING_PRICE = "awaiting_price"
    AWAITING_QUANTITY = "awaiting_quantity"
    QUOTED = "quoted"
    REFINED = "refined"
    DECISION_REQUESTED = "decision_requested"
    LEAD_CAPTURED = "lead_captured"


SLOT_STAGES = frozenset({Stage.AWAITING_PRODUCT, Stage.AWAITING_PRICE, Stage.AWAITING_QUANTITY})
POST_QUOTE_STAGES = frozenset({Stage.QUOTED, Stage.REFINED, Stage.DECISION_REQUESTED, Stage.LEAD_CAPTURED})


class TaxKind(str, Enum):
    STATISTICAL_FEE = "statistical_fee"
    IMPORT_DUTY = "import_duty"
    COMMON_EXTERNAL_TARIFF = "common_external_tariff"
    INTRAZONE_DUTY = "intrazone_duty"
    VAT = "vat"
    VAT_SURCHARGE = "vat_surcharge"
    INCOME_TAX_WITHHOLDING = "income_tax_withholding"
    GROSS_RECEIPTS_WITHHOLDING = "gross_receipts_withholding"


CandidateSource = Literal["explicit", "semantic", "local_index", "authoritative"]
AssumptionSource = Literal["authoritative", "user", "resolver", "estimate"]
ShippingProfile = Literal["light", "medium", "heavy"]
QuoteMode = Literal["quote", "budget"]


class TariffCandidate(BaseModel):
    code: str
    label: Optional[str] = None
    source: CandidateSource = "authoritative"

    model_config = ConfigDict(extra="forbid")

    @field_validator("code")
    @classmethod
    def _format_code(cls, value: str) -> str:
        return format_code(value)


class InternalTaxTier(BaseModel):
    """One band of the internal (excise) tax schedule, in local currency.

    Matches values ``v`` with ``lower_exclusive < v <= upper_inclusive``; an
    absent upper bound is open-ended.
    """

    lower_exclusive: float = 0.0
    upper_inclusive: Optional[float] = None
    rate_pct: float
    label: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def contains(self, value: float) -> bool:
        if value <= self.lower_exclusive:
            return False
        return self.upper_inclusive is None or value <= self.upper_inclusive


class InternalTaxSchedule(BaseModel):
    label: str = "Impuestos internos"
    window_from: Optional[str] = None
    window_to: Optional[str] = None
    tiers: List[InternalTaxTier]
    raw_text: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_partition(self) -> "InternalTaxSchedule":
        if not self.tiers:
            raise ValueError("internal tax schedule requires at least one tier")
        if self.tiers[0].lower_exclusive != 0:
            raise ValueError("first tier must start at zero")
        for current, following in zip(self.tiers, self.tiers[1:]):
            if current.upper_inclusive is None:
                raise ValueError("only the last tier may be open-ended")
            if current.upper_inclusive != following.lower_exclusive:
                raise ValueError("tiers must be contiguous")
            if following.lower_exclusive <= current.lower_exclusive:
                raise ValueError("tiers must be ascending")
        if self.tiers[-1].upper_inclusive is not None:
            raise ValueError("last tier must be open-ended")
        return self

    def select_tier(self, value: float) -> Optional[InternalTaxTier]:
        if value <= 0:
            return None
        for tier in self.tiers:
            if tier.contains(value):
                return tier
        return None


class TariffDetail(BaseModel):
    code: str
    label: Optional[str] = None
    breadcrumbs: List[str] = Field(default_factory=list)
    rates: Dict[TaxKind, float] = Field(default_factory=dict)
    internal_taxes: Optional[InternalTaxSchedule] = None
    interventions: List[str] = Field(default_factory=list)
    reclassifications: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None
    provenance: Literal["live", "cache"] = "live"
    fetched_at: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("code")
    @classmethod
    def _format_code(cls, value: str) -> str:
        return format_code(value)

    @property
    def has_rates(self) -> bool:
        return bool(self.rates)


class MoneyRange(BaseModel):
    min: float
    max: float

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def point(cls, value: float) -> "MoneyRange":
        return cls(min=value, max=value)

    def __add__(self, other: "MoneyRange") -> "MoneyRange":
        return MoneyRange(min=self.min + other.min, max=self.max + other.max)

    def rounded(self) -> "MoneyRange":
        return MoneyRange(min=round(self.min, 2), max=round(self.max, 2))


class CostBreakdown(BaseModel):
    quantity: int
    unit_fob: MoneyRange
    fob_total: MoneyRange
    freight: MoneyRange
    insurance: MoneyRange
    cif: MoneyRange
    cif_insurance: MoneyRange
    statistical_fee: MoneyRange
    import_duty: MoneyRange
    vat: MoneyRange
    vat_surcharge: MoneyRange
    internal_tax: MoneyRange
    tax_subtotal: MoneyRange
    broker_fee: MoneyRange
    port_deposit: MoneyRange
    local_transport: MoneyRange
    transfer_fee: MoneyRange
    handling_subtotal: MoneyRange
    grand_total: MoneyRange
    uses_authoritative_rates: bool = False
    local_per_usd: Optional[float] = None

    model_config = ConfigDict(extra="forbid")


class Assumption(BaseModel):
    id: str
    label: str
    value: str
    source: AssumptionSource

    model_config = ConfigDict(extra="forbid")


class QuoteResult(BaseModel):
    breakdown: CostBreakdown
    explanation: str
    quality_score: int
    assumptions: List[Assumption] = Field(default_factory=list)
    transit_time: str = "Marítimo: 35–55 días"

    model_config = ConfigDict(extra="forbid")


class BudgetEstimate(BaseModel):
    budget_usd: float
    max_fob: float
    freight: MoneyRange
    taxes: MoneyRange
    handling: MoneyRange
    total: MoneyRange
    explanation: str

    model_config = ConfigDict(extra="forbid")


class ProductDraft(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    source_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    origin: Optional[str] = None
    shipping_profile: Optional[ShippingProfile] = None
    unit_price: Optional[float] = None
    currency: str = "USD"
    price_range: Optional[MoneyRange] = None
    quantity: Optional[int] = None
    tariff_code: Optional[str] = None
    tariff_detail: Optional[TariffDetail] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def has_product(self) -> bool:
        return bool(self.title or self.source_url)

    @property
    def has_price(self) -> bool:
        return self.unit_price is not None or self.price_range is not None


class ClassificationState(BaseModel):
    candidates: List[TariffCandidate] = Field(default_factory=list)
    confidence: float = 0.0
    pending_questions: List[str] = Field(default_factory=list)
    ambiguous: bool = False
    heading_hint: Optional[str] = None
    kind_hint: Optional[str] = None
    source: Optional[str] = None
    semantic_code: Optional[str] = None
    adjusted_from: Optional[str] = None
    adjusted_to: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def awaiting_answer(self) -> bool:
        return self.ambiguous and bool(self.pending_questions) and len(self.candidates) > 1


class QuoteDraft(BaseModel):
    """One conversation's accumulated state; ``version`` guards concurrent writes."""

    session_id: str
    version: int = 0
    stage: Stage = Stage.AWAITING_PRODUCT
    mode: QuoteMode = "quote"
    product: ProductDraft = Field(default_factory=ProductDraft)
    classification: ClassificationState = Field(default_factory=ClassificationState)
    quote: Optional[QuoteResult] = None
    budget: Optional[BudgetEstimate] = None
    contact: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(extra="forbid")

    def serializable_dict(self) -> Dict[str, object]:
        return self.model_dump(mode="json")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""

    model_config = ConfigDict(extra="forbid")


class TurnRequest(BaseModel):
    session_id: Optional[str] = None
    mode: QuoteMode = "quote"
    messages: List[ChatMessage] = Field(default_factory=list)
    contact: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class StructuredQuestion(BaseModel):
    slot: Literal["product", "price", "quantity", "classification", "contact"]
    prompt: str
    options: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class ProductPreview(BaseModel):
    title: Optional[str] = None
    source_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    tariff_code: Optional[str] = None
    tariff_label: Optional[str] = None
    candidates: List[TariffCandidate] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class TurnResponse(BaseModel):
    session_id: str
    stage: Stage
    assistant_text: str
    question: Optional[StructuredQuestion] = None
    cost_breakdown: Optional[CostBreakdown] = None
    quality_score: Optional[int] = None
    assumptions: List[Assumption] = Field(default_factory=list)
    product_preview: Optional[ProductPreview] = None
    budget: Optional[BudgetEstimate] = None
    request_contact: bool = False

    model_config = ConfigDict(extra="forbid")
