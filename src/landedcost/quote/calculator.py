"""Landed-cost calculation.

Every monetary figure is a ``MoneyRange`` computed bound by bound, so the
minimum total is built only from minimum components and the maximum from
maximum components.

Tax layering with authoritative rates::

    fee   = (CIF + insurance) * TE
    duty  = (CIF + insurance) * DIE
    base  = (CIF + insurance) + fee + duty
    vat   = base * IVA
    extra = base * IVA ADIC

Internal (excise) tax applies the tier selected by the local-currency value
of CIF + insurance, separately for each bound.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from landedcost.models import (
    Assumption,
    BudgetEstimate,
    CostBreakdown,
    InternalTaxSchedule,
    MoneyRange,
    QuoteDraft,
    QuoteResult,
    TariffDetail,
    TaxKind,
)
from landedcost.quote.exchange import ExchangeRateSupplier
from landedcost.tariff.codes import digits_only, heading_of

logger = logging.getLogger(__name__)

DEFAULT_UNIT_FOB = 120.0
DEFAULT_BUDGET_USD = 5000.0
TRANSIT_TIME = "Marítimo: 35–55 días"

FREIGHT_SHARE = (0.18, 0.42)
FREIGHT_UNIT_CLAMP_MIN = (45.0, 650.0)
FREIGHT_UNIT_CLAMP_MAX = (95.0, 1400.0)
FREIGHT_PROFILE_CLAMP_MIN = (45.0, 900.0)
FREIGHT_PROFILE_CLAMP_MAX = (95.0, 2400.0)
PROFILE_FACTORS: Dict[str, Tuple[float, float]] = {
    "light": (0.75, 0.85),
    "medium": (1.0, 1.0),
    "heavy": (1.15, 1.35),
}

DEFAULT_STATISTICAL_FEE_PCT = 3.0
DEFAULT_IMPORT_DUTY_PCT = 14.0
DEFAULT_VAT_PCT = 21.0
DEFAULT_VAT_SURCHARGE_PCT = 0.0

HEURISTIC_DUTY_WITH_CODE = (0.08, 0.18)
HEURISTIC_DUTY_WITHOUT_CODE = (0.12, 0.28)
HEURISTIC_VAT = (0.21, 0.31)

MACHINERY_TITLE_RE = re.compile(
    r"\b(maquin\w*|machine\w*|industrial\w*|cnc|cortad\w*|sierra\w*|stone|piedra\w*)\b",
    re.IGNORECASE,
)

PROFILE_LABELS = {"light": "liviana", "medium": "media", "heavy": "pesada"}


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def format_usd(value: float) -> str:
    whole = f"{round(value):,}".replace(",", ".")
    return f"USD {whole}"


def format_range(money: MoneyRange) -> str:
    if round(money.min) == round(money.max):
        return format_usd(money.min)
    return f"{format_usd(money.min)} – {format_usd(money.max)}"


@dataclass(frozen=True)
class HandlingBands:
    broker_fee: MoneyRange
    port_deposit: MoneyRange
    local_transport: MoneyRange
    transfer_fee: MoneyRange

    @property
    def subtotal(self) -> MoneyRange:
        return self.broker_fee + self.port_deposit + self.local_transport + self.transfer_fee


MACHINERY_HANDLING = HandlingBands(
    broker_fee=MoneyRange.point(700),
    port_deposit=MoneyRange.point(1500),
    local_transport=MoneyRange.point(600),
    transfer_fee=MoneyRange.point(350),
)
DEFAULT_HANDLING = HandlingBands(
    broker_fee=MoneyRange(min=350, max=700),
    port_deposit=MoneyRange(min=450, max=1800),
    local_transport=MoneyRange(min=200, max=1000),
    transfer_fee=MoneyRange(min=120, max=600),
)


@dataclass(frozen=True)
class TaxLayers:
    statistical_fee: MoneyRange
    import_duty: MoneyRange
    vat: MoneyRange
    vat_surcharge: MoneyRange
    internal_tax: MoneyRange
    authoritative: bool

    @property
    def subtotal(self) -> MoneyRange:
        return self.statistical_fee + self.import_duty + self.vat + self.vat_surcharge + self.internal_tax


@dataclass(frozen=True)
class QuoteInputs:
    title: Optional[str] = None
    unit_price: Optional[float] = None
    price_range: Optional[MoneyRange] = None
    quantity: Optional[int] = None
    tariff_code: Optional[str] = None
    tariff_detail: Optional[TariffDetail] = None
    origin: Optional[str] = None
    shipping_profile: Optional[str] = None
    heading_hint: Optional[str] = None

    @classmethod
    def from_draft(cls, draft: QuoteDraft) -> "QuoteInputs":
        product = draft.product
        return cls(
            title=product.title,
            unit_price=product.unit_price,
            price_range=product.price_range,
            quantity=product.quantity,
            tariff_code=product.tariff_code,
            tariff_detail=product.tariff_detail,
            origin=product.origin,
            shipping_profile=product.shipping_profile,
            heading_hint=draft.classification.heading_hint,
        )


def _rate(rates: Dict[TaxKind, float], *kinds: TaxKind, default: float) -> float:
    for kind in kinds:
        value = rates.get(kind)
        if value is not None:
            return value
    return default


def _internal_tax_bound(base_usd: float, schedule: InternalTaxSchedule, local_per_usd: float) -> float:
    tier = schedule.select_tier(base_usd * local_per_usd)
    if tier is None:
        return 0.0
    return base_usd * tier.rate_pct / 100.0


def authoritative_taxes(
    cif_insurance: MoneyRange,
    rates: Dict[TaxKind, float],
    schedule: Optional[InternalTaxSchedule] = None,
    local_per_usd: Optional[float] = None,
) -> TaxLayers:
    fee_pct = _rate(rates, TaxKind.STATISTICAL_FEE, default=DEFAULT_STATISTICAL_FEE_PCT) / 100.0
    duty_pct = _rate(
        rates, TaxKind.IMPORT_DUTY, TaxKind.COMMON_EXTERNAL_TARIFF, default=DEFAULT_IMPORT_DUTY_PCT
    ) / 100.0
    vat_pct = _rate(rates, TaxKind.VAT, default=DEFAULT_VAT_PCT) / 100.0
    surcharge_pct = _rate(rates, TaxKind.VAT_SURCHARGE, default=DEFAULT_VAT_SURCHARGE_PCT) / 100.0

    def layer(base: float) -> Tuple[float, float, float, float, float]:
        fee = base * fee_pct
        duty = base * duty_pct
        vat_base = base + fee + duty
        internal = 0.0
        if schedule is not None and local_per_usd:
            internal = _internal_tax_bound(base, schedule, local_per_usd)
        return fee, duty, vat_base * vat_pct, vat_base * surcharge_pct, internal

    low = layer(cif_insurance.min)
    high = layer(cif_insurance.max)
    pairs = [MoneyRange(min=a, max=b) for a, b in zip(low, high)]
    return TaxLayers(*pairs, authoritative=True)


def heuristic_taxes(cif_insurance: MoneyRange, has_code: bool) -> TaxLayers:
    duty_share = HEURISTIC_DUTY_WITH_CODE if has_code else HEURISTIC_DUTY_WITHOUT_CODE
    duty = MoneyRange(min=cif_insurance.min * duty_share[0], max=cif_insurance.max * duty_share[1])
    vat = MoneyRange(
        min=(cif_insurance.min + duty.min) * HEURISTIC_VAT[0],
        max=(cif_insurance.max + duty.max) * HEURISTIC_VAT[1],
    )
    zero = MoneyRange.point(0.0)
    return TaxLayers(
        statistical_fee=zero,
        import_duty=duty,
        vat=vat,
        vat_surcharge=zero,
        internal_tax=zero,
        authoritative=False,
    )


def is_machinery(tariff_code: Optional[str], heading_hint: Optional[str], title: Optional[str]) -> bool:
    heading = heading_of(tariff_code) or (digits_only(heading_hint)[:4] if heading_hint else None)
    if heading and len(heading) == 4 and 8400 <= int(heading) <= 8999:
        return True
    return bool(title and MACHINERY_TITLE_RE.search(title))


def quality_score(
    *,
    has_price: bool,
    has_quantity: bool,
    has_code: bool,
    has_rates: bool,
    has_origin: bool,
    has_profile: bool,
    machinery: bool,
) -> int:
    score = 28
    score += 18 if has_price else 0
    score += 10 if has_quantity else 0
    score += 18 if has_code else 0
    score += 18 if has_rates else 0
    score += 8 if has_origin else 0
    score += 6 if has_profile else 0
    score += 6 if machinery else 0
    return max(0, min(100, score))


def freight_range(unit_fob: MoneyRange, quantity: int, profile: Optional[str]) -> MoneyRange:
    unit_min = clamp(unit_fob.min * FREIGHT_SHARE[0], *FREIGHT_UNIT_CLAMP_MIN)
    unit_max = clamp(unit_fob.max * FREIGHT_SHARE[1], *FREIGHT_UNIT_CLAMP_MAX)
    factor_min, factor_max = PROFILE_FACTORS.get(profile or "medium", (1.0, 1.0))
    unit_min = clamp(unit_min * factor_min, *FREIGHT_PROFILE_CLAMP_MIN)
    unit_max = clamp(unit_max * factor_max, *FREIGHT_PROFILE_CLAMP_MAX)
    return MoneyRange(min=unit_min * quantity, max=unit_max * quantity)


class LandedCostCalculator:
    def __init__(self, exchange_rates: ExchangeRateSupplier, insurance_rate: float = 0.01):
        self.exchange_rates = exchange_rates
        self.insurance_rate = insurance_rate

    def _unit_fob(self, inputs: QuoteInputs) -> Tuple[MoneyRange, str]:
        # A price the user typed overrides whatever the product page listed.
        if inputs.unit_price is not None and inputs.unit_price > 0:
            return MoneyRange.point(inputs.unit_price), "user"
        if inputs.price_range is not None and inputs.price_range.max > 0:
            low = max(0.0, min(inputs.price_range.min, inputs.price_range.max))
            return MoneyRange(min=low, max=max(inputs.price_range.min, inputs.price_range.max)), "resolver"
        return MoneyRange.point(DEFAULT_UNIT_FOB), "estimate"

    def calculate_quote(self, inputs: QuoteInputs) -> QuoteResult:
        quantity = max(1, int(inputs.quantity or 1))
        unit_fob, price_source = self._unit_fob(inputs)
        fob = MoneyRange(min=unit_fob.min * quantity, max=unit_fob.max * quantity)
        freight = freight_range(unit_fob, quantity, inputs.shipping_profile)
        insurance = MoneyRange(min=fob.min * self.insurance_rate, max=fob.max * self.insurance_rate)
        cif = fob + freight
        cif_insurance = cif + insurance

        detail = inputs.tariff_detail
        local_per_usd: Optional[float] = None
        if detail is not None and detail.has_rates:
            schedule = detail.internal_taxes
            if schedule is not None:
                local_per_usd = self.exchange_rates.get().local_per_usd
            taxes = authoritative_taxes(cif_insurance, detail.rates, schedule, local_per_usd)
        else:
            taxes = heuristic_taxes(cif_insurance, has_code=bool(inputs.tariff_code))

        machinery = is_machinery(inputs.tariff_code, inputs.heading_hint, inputs.title)
        handling = MACHINERY_HANDLING if machinery else DEFAULT_HANDLING
        tax_subtotal = taxes.subtotal
        handling_subtotal = handling.subtotal
        grand_total = cif_insurance + tax_subtotal + handling_subtotal

        breakdown = CostBreakdown(
            quantity=quantity,
            unit_fob=unit_fob.rounded(),
            fob_total=fob.rounded(),
            freight=freight.rounded(),
            insurance=insurance.rounded(),
            cif=cif.rounded(),
            cif_insurance=cif_insurance.rounded(),
            statistical_fee=taxes.statistical_fee.rounded(),
            import_duty=taxes.import_duty.rounded(),
            vat=taxes.vat.rounded(),
            vat_surcharge=taxes.vat_surcharge.rounded(),
            internal_tax=taxes.internal_tax.rounded(),
            tax_subtotal=tax_subtotal.rounded(),
            broker_fee=handling.broker_fee,
            port_deposit=handling.port_deposit,
            local_transport=handling.local_transport,
            transfer_fee=handling.transfer_fee,
            handling_subtotal=handling_subtotal,
            grand_total=grand_total.rounded(),
            uses_authoritative_rates=taxes.authoritative,
            local_per_usd=local_per_usd,
        )
        score = quality_score(
            has_price=price_source != "estimate",
            has_quantity=inputs.quantity is not None and inputs.quantity > 0,
            has_code=bool(inputs.tariff_code),
            has_rates=taxes.authoritative,
            has_origin=bool(inputs.origin),
            has_profile=inputs.shipping_profile is not None,
            machinery=machinery,
        )
        assumptions = self._assumptions(inputs, price_source, unit_fob, quantity, taxes, machinery)
        explanation = self._explanation(inputs, breakdown, taxes)
        logger.info(
            "Quote for %r: total %s (score %d, authoritative=%s)",
            (inputs.title or "")[:60],
            format_range(grand_total),
            score,
            taxes.authoritative,
        )
        return QuoteResult(
            breakdown=breakdown,
            explanation=explanation,
            quality_score=score,
            assumptions=assumptions,
            transit_time=TRANSIT_TIME,
        )

    def _assumptions(
        self,
        inputs: QuoteInputs,
        price_source: str,
        unit_fob: MoneyRange,
        quantity: int,
        taxes: TaxLayers,
        machinery: bool,
    ) -> List[Assumption]:
        items: List[Assumption] = []
        if inputs.title:
            items.append(Assumption(id="product", label="Producto", value=inputs.title, source="user"))
        price_value = format_range(unit_fob) + " por unidad"
        if price_source == "estimate":
            price_value += " (valor de referencia)"
        items.append(Assumption(id="unit_price", label="Precio FOB unitario", value=price_value, source=price_source))
        items.append(
            Assumption(
                id="quantity",
                label="Cantidad",
                value=str(quantity),
                source="user" if inputs.quantity else "estimate",
            )
        )
        if inputs.tariff_code:
            items.append(
                Assumption(
                    id="tariff_code",
                    label="Posición arancelaria (NCM)",
                    value=inputs.tariff_code,
                    source="authoritative" if inputs.tariff_detail else "estimate",
                )
            )
        else:
            items.append(
                Assumption(id="tariff_code", label="Posición arancelaria (NCM)", value="Sin validar", source="estimate")
            )
        if taxes.authoritative and inputs.tariff_detail is not None:
            rates = inputs.tariff_detail.rates
            summary = ", ".join(f"{kind.value} {value:g}%" for kind, value in sorted(rates.items(), key=lambda kv: kv[0].value))
            items.append(Assumption(id="tax_rates", label="Alícuotas", value=summary, source="authoritative"))
        else:
            items.append(
                Assumption(
                    id="tax_rates",
                    label="Alícuotas",
                    value="Rango estimado (derechos + IVA)",
                    source="estimate",
                )
            )
        items.append(
            Assumption(
                id="origin",
                label="Origen",
                value=inputs.origin or "No informado",
                source="user" if inputs.origin else "estimate",
            )
        )
        items.append(
            Assumption(
                id="shipping_profile",
                label="Perfil de carga",
                value=PROFILE_LABELS.get(inputs.shipping_profile or "medium", "media"),
                source="user" if inputs.shipping_profile else "estimate",
            )
        )
        items.append(
            Assumption(
                id="insurance",
                label="Seguro",
                value=f"{self.insurance_rate * 100:g}% del FOB",
                source="estimate",
            )
        )
        items.append(
            Assumption(
                id="handling",
                label="Gastos locales",
                value="Banda maquinaria industrial" if machinery else "Banda general",
                source="estimate",
            )
        )
        return items

    def _explanation(self, inputs: QuoteInputs, breakdown: CostBreakdown, taxes: TaxLayers) -> str:
        lines = [
            f"Estimación de costo puesto en destino para {breakdown.quantity} unidad(es)"
            + (f" de **{inputs.title}**" if inputs.title else "")
            + ":",
            f"- FOB: {format_range(breakdown.fob_total)}",
            f"- Flete internacional: {format_range(breakdown.freight)}",
            f"- Seguro: {format_range(breakdown.insurance)}",
            f"- CIF + seguro: {format_range(breakdown.cif_insurance)}",
        ]
        if taxes.authoritative:
            lines.extend(
                [
                    f"- Tasa de estadística: {format_range(breakdown.statistical_fee)}",
                    f"- Derechos de importación: {format_range(breakdown.import_duty)}",
                    f"- IVA: {format_range(breakdown.vat)}",
                    f"- IVA adicional: {format_range(breakdown.vat_surcharge)}",
                ]
            )
            if breakdown.internal_tax.max > 0:
                lines.append(f"- Impuestos internos: {format_range(breakdown.internal_tax)}")
        else:
            lines.append(
                f"- Derechos e IVA (estimados, sin alícuotas oficiales): {format_range(breakdown.tax_subtotal)}"
            )
        lines.extend(
            [
                f"- Gastos locales (despachante, depósito, transporte, transferencia): "
                f"{format_range(breakdown.handling_subtotal)}",
                f"**Total estimado: {format_range(breakdown.grand_total)}**",
                f"Tiempo de tránsito: {TRANSIT_TIME}.",
            ]
        )
        if not taxes.authoritative:
            lines.append("_Estimación pendiente de validación de la posición arancelaria._")
        return "\n".join(lines)

    def calculate_budget(self, budget_usd: Optional[float]) -> BudgetEstimate:
        budget = budget_usd if budget_usd and budget_usd > 0 else DEFAULT_BUDGET_USD
        max_fob = clamp(budget * 0.35, 800, 20000)
        freight = MoneyRange(min=budget * 0.08, max=budget * 0.18).rounded()
        taxes = MoneyRange(min=budget * 0.22, max=budget * 0.42).rounded()
        handling = MoneyRange(min=220, max=650)
        total = MoneyRange(min=budget * 0.92, max=budget * 1.05).rounded()
        explanation = "\n".join(
            [
                f"Con un presupuesto total de {format_usd(budget)}, el valor FOB de la mercadería "
                f"no debería superar aproximadamente {format_usd(max_fob)}.",
                f"- Flete internacional: {format_range(freight)}",
                f"- Impuestos y tasas: {format_range(taxes)}",
                f"- Gastos locales: {format_range(handling)}",
                f"- Total puesto en destino: {format_range(total)}",
                "Contame qué producto querés traer y te armo una cotización puntual.",
            ]
        )
        return BudgetEstimate(
            budget_usd=budget,
            max_fob=round(max_fob, 2),
            freight=freight,
            taxes=taxes,
            handling=handling,
            total=total,
            explanation=explanation,
        )
