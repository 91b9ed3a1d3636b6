"""Turn handling for the quoting conversation.

Each turn loads the session's draft, advances the slot stage machine
(product → price → quantity → quote) and writes the draft back with a
version check. Post-quote turns refine assumptions, request a decision or
capture contact details. ``handle_turn`` never raises: unexpected failures
are logged and answered with a fallback message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from landedcost.dialogue import messages as msg
from landedcost.dialogue.parsing import (
    contact_channel,
    extract_url,
    has_currency_signal,
    has_quantity_hint,
    has_quote_signals,
    infer_product_seed,
    infer_stage_hint,
    is_affirmative,
    is_small_talk,
    last_user_message,
    looks_like_classification_answer,
    looks_like_code_disagreement,
    looks_like_contact,
    looks_like_just_number,
    looks_like_product_text,
    parse_assumption_update,
    parse_budget,
    parse_choice_index,
    parse_quantity,
    parse_quantity_smart,
    parse_unit_price,
    parse_unit_price_smart,
)
from landedcost.dialogue.resolver import ProductSourceResolver, TextProductResolver
from landedcost.dialogue.session_store import (
    DraftStore,
    SessionBusyError,
    SessionLockProvider,
    SessionLocks,
    StaleDraftError,
    new_draft,
)
from landedcost.models import (
    POST_QUOTE_STAGES,
    BudgetEstimate,
    ClassificationState,
    ProductDraft,
    ProductPreview,
    QuoteDraft,
    QuoteResult,
    Stage,
    StructuredQuestion,
    TariffCandidate,
    TurnRequest,
    TurnResponse,
)
from landedcost.observability import log_event, turn_scope
from landedcost.quote.calculator import LandedCostCalculator, QuoteInputs
from landedcost.tariff.authoritative import AuthoritativeTariffClient
from landedcost.tariff.classifier import TariffClassifier
from landedcost.tariff.codes import find_tariff_codes, same_code
from landedcost.tariff.disambiguation import derive_questions, resolve_answer

logger = logging.getLogger(__name__)

SAVE_ATTEMPTS = 2


class LeadSink(Protocol):
    def capture(self, draft: QuoteDraft, contact: str, channel: str) -> None:
        ...


class LoggingLeadSink:
    """Records captured leads in the application log."""

    def capture(self, draft: QuoteDraft, contact: str, channel: str) -> None:
        quote = draft.quote
        log_event(
            "Lead captured",
            channel=channel,
            product=draft.product.title,
            tariff_code=draft.product.tariff_code,
            total_max=quote.breakdown.grand_total.max if quote else None,
        )


@dataclass
class _Reply:
    text: str
    question: Optional[StructuredQuestion] = None
    quote: Optional[QuoteResult] = None
    budget: Optional[BudgetEstimate] = None
    request_contact: bool = False


class DialogueEngine:
    def __init__(
        self,
        store: DraftStore,
        classifier: TariffClassifier,
        calculator: LandedCostCalculator,
        resolver: Optional[ProductSourceResolver] = None,
        authoritative: Optional[AuthoritativeTariffClient] = None,
        locks: Optional[SessionLockProvider] = None,
        lead_sink: Optional[LeadSink] = None,
        lock_timeout: float = 30.0,
    ):
        self.store = store
        self.classifier = classifier
        self.calculator = calculator
        self.resolver = resolver or TextProductResolver()
        self.authoritative = authoritative
        self.locks = locks or SessionLocks()
        self.lead_sink = lead_sink or LoggingLeadSink()
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Turn boundary
    # ------------------------------------------------------------------
    def handle_turn(self, request: TurnRequest) -> TurnResponse:
        session_id = request.session_id or new_draft().session_id
        with turn_scope(session_id=session_id):
            try:
                with self.locks.hold(session_id, timeout=self.lock_timeout):
                    return self._run_with_retry(session_id, request)
            except SessionBusyError:
                logger.warning("Session %s busy; turn rejected", session_id)
                return self._failure_response(session_id, msg.RETRY_LATER)
            except Exception:
                logger.exception("Unexpected failure handling turn for session %s", session_id)
                return self._failure_response(session_id, msg.FALLBACK)

    def _failure_response(self, session_id: str, text: str) -> TurnResponse:
        """Answer without touching the draft, reporting the stage it was left at."""

        try:
            stored = self.store.get(session_id)
        except (OSError, ValueError):
            logger.exception("Could not read draft for session %s", session_id)
            stored = None
        stage = stored.stage if stored else Stage.AWAITING_PRODUCT
        return TurnResponse(session_id=session_id, stage=stage, assistant_text=text)

    def _run_with_retry(self, session_id: str, request: TurnRequest) -> TurnResponse:
        for attempt in range(SAVE_ATTEMPTS):
            stored = self.store.get(session_id)
            expected = stored.version if stored else 0
            draft = stored or new_draft(session_id, request.mode)
            reply = self._process(draft, request, restored=stored is not None)
            try:
                saved = self.store.save(draft, expected)
            except StaleDraftError as exc:
                logger.warning(
                    "Stale draft for %s (expected v%d, found v%d), attempt %d",
                    session_id,
                    exc.expected,
                    exc.actual,
                    attempt + 1,
                )
                continue
            log_event("Turn handled", stage=saved.stage.value, version=saved.version)
            return self._response(saved, reply)
        stage = stored.stage if stored else Stage.AWAITING_PRODUCT
        return TurnResponse(session_id=session_id, stage=stage, assistant_text=msg.RETRY_LATER)

    def _response(self, draft: QuoteDraft, reply: _Reply) -> TurnResponse:
        quote = reply.quote
        return TurnResponse(
            session_id=draft.session_id,
            stage=draft.stage,
            assistant_text=reply.text,
            question=reply.question,
            cost_breakdown=quote.breakdown if quote else None,
            quality_score=quote.quality_score if quote else None,
            assumptions=list(quote.assumptions) if quote else [],
            product_preview=self._preview(draft),
            budget=reply.budget,
            request_contact=reply.request_contact,
        )

    @staticmethod
    def _preview(draft: QuoteDraft) -> Optional[ProductPreview]:
        product = draft.product
        if not product.has_product:
            return None
        detail = product.tariff_detail
        return ProductPreview(
            title=product.title,
            source_url=product.source_url,
            images=list(product.images),
            tariff_code=product.tariff_code,
            tariff_label=detail.label if detail else None,
            candidates=list(draft.classification.candidates) if draft.classification.awaiting_answer else [],
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _process(self, draft: QuoteDraft, request: TurnRequest, restored: bool) -> _Reply:
        text = last_user_message(request.messages).strip()

        if request.mode == "budget":
            return self._budget(draft, text)
        draft.mode = "quote"

        contact = (request.contact or "").strip()
        if not contact and draft.stage == Stage.DECISION_REQUESTED and looks_like_contact(text):
            contact = text
        if contact and looks_like_contact(contact):
            if draft.stage in POST_QUOTE_STAGES or has_quote_signals(request.messages):
                return self._capture_lead(draft, contact)

        if not restored:
            self._restore_from_history(draft, request.messages)

        if not text:
            return self._ask_next(draft)

        if draft.stage in POST_QUOTE_STAGES:
            return self._post_quote(draft, text)

        if draft.product.has_product and looks_like_code_disagreement(text):
            return self._reopen_classification(draft, text)

        if draft.stage == Stage.AWAITING_PRICE:
            return self._awaiting_price(draft, text)
        if draft.stage == Stage.AWAITING_QUANTITY:
            return self._awaiting_quantity(draft, text)
        return self._awaiting_product(draft, text)

    def _budget(self, draft: QuoteDraft, text: str) -> _Reply:
        estimate = self.calculator.calculate_budget(parse_budget(text))
        draft.mode = "budget"
        draft.budget = estimate
        return _Reply(text=estimate.explanation, budget=estimate)

    def _restore_from_history(self, draft: QuoteDraft, history_messages: Sequence) -> None:
        history = list(history_messages)[:-1]
        if not any(m.role == "user" for m in history):
            return
        seed = infer_product_seed(history)
        if seed:
            self._set_product(draft, seed)
        for message in history:
            if message.role != "user":
                continue
            price = parse_unit_price(message.content)
            quantity = parse_quantity(message.content)
            if price is not None:
                draft.product.unit_price = price
            if quantity is not None:
                draft.product.quantity = quantity
        hint = infer_stage_hint(history)
        if hint is not None and not draft.classification.awaiting_answer and draft.product.has_product:
            draft.stage = hint
        else:
            draft.stage = self._next_stage(draft)
        logger.info("Restored session %s from history at stage %s", draft.session_id, draft.stage.value)

    # ------------------------------------------------------------------
    # Slot stages
    # ------------------------------------------------------------------
    @staticmethod
    def _next_stage(draft: QuoteDraft) -> Stage:
        product = draft.product
        if not product.has_product or draft.classification.awaiting_answer:
            return Stage.AWAITING_PRODUCT
        if not product.has_price:
            return Stage.AWAITING_PRICE
        if not product.quantity:
            return Stage.AWAITING_QUANTITY
        return Stage.QUOTED

    def _ask_next(self, draft: QuoteDraft, lead: str = "") -> _Reply:
        stage = self._next_stage(draft)
        if stage == Stage.QUOTED:
            reply = self._quote(draft, refined=False)
            reply.text = _join(lead, reply.text)
            return reply
        draft.stage = stage
        if stage == Stage.AWAITING_PRODUCT:
            if draft.classification.awaiting_answer:
                return self._ask_classification(draft, lead)
            question = StructuredQuestion(slot="product", prompt=msg.ASK_PRODUCT)
        elif stage == Stage.AWAITING_PRICE:
            question = StructuredQuestion(slot="price", prompt=msg.ASK_PRICE)
        else:
            question = StructuredQuestion(slot="quantity", prompt=msg.ASK_QUANTITY)
        return _Reply(text=_join(lead, question.prompt), question=question)

    def _ask_classification(self, draft: QuoteDraft, lead: str = "") -> _Reply:
        state = draft.classification
        draft.stage = Stage.AWAITING_PRODUCT
        prompt = msg.classification_prompt(state.pending_questions, state.candidates)
        question = StructuredQuestion(
            slot="classification",
            prompt=prompt,
            options=[c.code for c in state.candidates[:5]],
        )
        return _Reply(text=_join(lead, prompt), question=question)

    def _awaiting_product(self, draft: QuoteDraft, text: str) -> _Reply:
        if draft.classification.awaiting_answer and draft.product.has_product:
            reply = self._answer_classification(draft, text)
            if reply is not None:
                return reply

        if extract_url(text) or find_tariff_codes(text) or looks_like_product_text(text):
            lead = self._set_product(draft, text)
            self._capture_slots(draft, text)
            return self._ask_next(draft, lead)

        self._capture_slots(draft, text)
        if is_small_talk(text) or not draft.product.has_product:
            draft.stage = Stage.AWAITING_PRODUCT
            question = StructuredQuestion(slot="product", prompt=msg.ASK_PRODUCT)
            return _Reply(text=question.prompt, question=question)
        return self._ask_next(draft)

    def _answer_classification(self, draft: QuoteDraft, text: str) -> Optional[_Reply]:
        """Apply an answer to pending classification questions; None means 'not an answer'."""

        state = draft.classification
        candidates = list(state.candidates)

        codes = find_tariff_codes(text)
        if codes:
            self._accept_code(draft, codes[0], source="explicit")
            self._capture_slots(draft, text)
            return self._ask_next(draft)

        index = parse_choice_index(text, upper=min(5, len(candidates)))
        if index is not None:
            self._accept_code(draft, candidates[index - 1].code, source="choice")
            return self._ask_next(draft)

        resolution = resolve_answer(candidates, text, state.heading_hint)
        if resolution.resolved is not None:
            self._accept_code(draft, resolution.resolved.code, source="answer")
            self._capture_slots(draft, text)
            return self._ask_next(draft)
        if resolution.matched_rules and resolution.candidates:
            narrowed = list(resolution.candidates)
            state.candidates = narrowed
            state.pending_questions = derive_questions(narrowed, state.heading_hint) or [
                "¿Cuál de estas posiciones corresponde?"
            ]
            logger.info("Narrowed %d -> %d candidates", len(candidates), len(narrowed))
            return self._ask_classification(draft)

        if looks_like_product_text(text) and not looks_like_classification_answer(text):
            return None
        return self._ask_classification(draft, "No me quedó claro.")

    def _accept_code(self, draft: QuoteDraft, code: str, source: str) -> None:
        state = draft.classification
        product = draft.product
        if not (product.tariff_code and same_code(product.tariff_code, code)):
            product.tariff_detail = None
        product.tariff_code = code
        if not any(same_code(c.code, code) for c in state.candidates):
            state.candidates.insert(0, TariffCandidate(code=code, source="explicit"))
        state.ambiguous = False
        state.pending_questions = []
        state.source = source
        state.confidence = max(state.confidence, 0.8)
        logger.info("Tariff code %s accepted for session %s (%s)", code, draft.session_id, source)

    def _awaiting_price(self, draft: QuoteDraft, text: str) -> _Reply:
        price = parse_unit_price_smart(text)
        if price is None and not has_quantity_hint(text):
            price = parse_unit_price(text, allow_bare=True)
        quantity = parse_quantity(text)
        if price is None and quantity is None and self._is_new_product(text):
            return self._replace_product(draft, text)
        if quantity is not None:
            draft.product.quantity = quantity
        if price is None:
            question = StructuredQuestion(slot="price", prompt=msg.REPROMPT_PRICE)
            return _Reply(text=question.prompt, question=question)
        draft.product.unit_price = price
        return self._ask_next(draft)

    def _awaiting_quantity(self, draft: QuoteDraft, text: str) -> _Reply:
        quantity = parse_quantity_smart(text)
        if quantity is None and not has_currency_signal(text):
            quantity = parse_quantity(text, allow_bare=True)
        price = parse_unit_price(text)
        if price is None and quantity is None and self._is_new_product(text):
            return self._replace_product(draft, text)
        if price is not None:
            draft.product.unit_price = price
        if quantity is None:
            question = StructuredQuestion(slot="quantity", prompt=msg.REPROMPT_QUANTITY)
            return _Reply(text=question.prompt, question=question)
        draft.product.quantity = quantity
        return self._ask_next(draft)

    @staticmethod
    def _is_new_product(text: str) -> bool:
        if looks_like_just_number(text):
            return False
        return bool(extract_url(text)) or looks_like_product_text(text)

    @staticmethod
    def _capture_slots(draft: QuoteDraft, text: str) -> None:
        price = parse_unit_price(text)
        quantity = parse_quantity(text)
        if price is not None:
            draft.product.unit_price = price
        if quantity is not None:
            draft.product.quantity = quantity

    # ------------------------------------------------------------------
    # Product and classification
    # ------------------------------------------------------------------
    def _set_product(self, draft: QuoteDraft, text: str) -> str:
        """Resolve and classify a product, keeping previously captured price and quantity."""

        resolved = self.resolver.resolve(text)
        url = extract_url(text)
        product = draft.product
        product.title = resolved.title or product.title
        product.description = resolved.description
        product.source_url = resolved.source_url or url
        product.images = list(resolved.images)
        product.price_range = resolved.price_range
        product.tariff_code = None
        product.tariff_detail = None
        draft.quote = None

        lead = ""
        if resolved.status == "failed":
            lead = msg.LINK_FAILED
        if not product.title:
            draft.classification = ClassificationState()
            return lead

        classify_text = text if not url else product.title
        result = self.classifier.classify(classify_text)
        draft.classification = result.to_state()
        if result.best_code and not draft.classification.awaiting_answer:
            product.tariff_code = result.best_code
        log_event(
            "Product set",
            title=product.title,
            tariff_code=product.tariff_code,
            ambiguous=result.ambiguous,
            resolver_status=resolved.status,
        )
        return lead

    def _replace_product(self, draft: QuoteDraft, text: str) -> _Reply:
        previous = draft.product
        draft.product = ProductDraft(origin=previous.origin, shipping_profile=previous.shipping_profile)
        draft.classification = ClassificationState()
        lead = self._set_product(draft, text)
        self._capture_slots(draft, text)
        logger.info("Product replaced in session %s", draft.session_id)
        return self._ask_next(draft, _join("Perfecto, actualicé el producto.", lead))

    def _reopen_classification(self, draft: QuoteDraft, text: str) -> _Reply:
        product = draft.product
        disputed = product.tariff_code
        product.tariff_code = None
        product.tariff_detail = None
        draft.quote = None

        corrections = [c for c in find_tariff_codes(text) if not (disputed and same_code(c, disputed))]
        if corrections:
            self._accept_code(draft, corrections[0], source="explicit")
            return self._ask_next(draft, "Entendido, uso la posición que me indicaste.")

        state = draft.classification
        candidates = self._without(state.candidates, disputed)
        disputed_listed = disputed is None or any(same_code(c.code, disputed) for c in state.candidates)
        if len(candidates) < 2 or not disputed_listed:
            result = self.classifier.classify(product.title or text)
            candidates = self._without(result.candidates, disputed)
            state.heading_hint = result.heading_hint or state.heading_hint
            state.kind_hint = result.kind_hint or state.kind_hint

        state.candidates = candidates
        state.ambiguous = True
        state.source = None
        if not candidates:
            state.pending_questions = []
            draft.stage = Stage.AWAITING_PRODUCT
            question = StructuredQuestion(slot="product", prompt=msg.DESCRIBE_MORE)
            return _Reply(text=_join("Entendido, revisemos la clasificación.", msg.DESCRIBE_MORE), question=question)
        if len(candidates) == 1:
            self._accept_code(draft, candidates[0].code, source="dispute")
            return self._ask_next(draft, "Entendido, revisemos la clasificación.")
        state.pending_questions = derive_questions(candidates, state.heading_hint) or [
            "¿Cuál de estas posiciones corresponde?"
        ]
        logger.info("Classification reopened for session %s (disputed %s)", draft.session_id, disputed)
        return self._ask_classification(draft, "Entendido, revisemos la clasificación.")

    @staticmethod
    def _without(candidates: Sequence[TariffCandidate], code: Optional[str]) -> List[TariffCandidate]:
        if not code:
            return list(candidates)
        return [c for c in candidates if not same_code(c.code, code)]

    # ------------------------------------------------------------------
    # Quote and post-quote turns
    # ------------------------------------------------------------------
    def _quote(self, draft: QuoteDraft, refined: bool) -> _Reply:
        product = draft.product
        if product.tariff_code and product.tariff_detail is None and self.authoritative is not None:
            product.tariff_detail = self.authoritative.get_detail(product.tariff_code)
        result = self.calculator.calculate_quote(QuoteInputs.from_draft(draft))
        draft.quote = result
        draft.stage = Stage.REFINED if refined else Stage.QUOTED
        return _Reply(text=_join(result.explanation, msg.AFTER_QUOTE_HINT), quote=result)

    def _post_quote(self, draft: QuoteDraft, text: str) -> _Reply:
        update = parse_assumption_update(text)
        if update and draft.product.has_product:
            for key, value in update.items():
                setattr(draft.product, key, value)
            return self._quote(draft, refined=True)

        quoted = draft.stage in (Stage.QUOTED, Stage.REFINED)
        if quoted and looks_like_code_disagreement(text):
            return self._reopen_classification(draft, text)

        if quoted and is_affirmative(text):
            draft.stage = Stage.DECISION_REQUESTED
            question = StructuredQuestion(slot="contact", prompt=msg.ASK_CONTACT)
            return _Reply(text=msg.ASK_CONTACT, question=question, request_contact=True)

        if self._is_new_product(text) and not is_small_talk(text):
            contact = draft.contact
            draft.product = ProductDraft()
            draft.classification = ClassificationState()
            draft.quote = None
            draft.contact = contact
            lead = self._set_product(draft, text)
            self._capture_slots(draft, text)
            logger.info("New quote started in session %s", draft.session_id)
            return self._ask_next(draft, lead)

        if quoted:
            price = parse_unit_price(text)
            quantity = parse_quantity(text)
            if price is not None or quantity is not None:
                self._capture_slots(draft, text)
                return self._quote(draft, refined=True)
            return _Reply(text=msg.AFTER_QUOTE_HINT)

        if draft.stage == Stage.DECISION_REQUESTED:
            question = StructuredQuestion(slot="contact", prompt=msg.REPROMPT_CONTACT)
            return _Reply(text=msg.REPROMPT_CONTACT, question=question, request_contact=True)
        return _Reply(text=msg.ALREADY_CAPTURED)

    def _capture_lead(self, draft: QuoteDraft, contact: str) -> _Reply:
        channel = contact_channel(contact)
        draft.contact = contact
        draft.stage = Stage.LEAD_CAPTURED
        self.lead_sink.capture(draft, contact, channel)
        return _Reply(text=msg.lead_captured(channel))


def _join(*parts: str) -> str:
    return "\n\n".join(part for part in parts if part)
