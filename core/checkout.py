"""
Checkout orchestrator.

Opens gateway charges for a cart and reconciles purchase rows with the
gateway's view of the payment.

begin (PIX or card):
1. Validate buyer, cart and card fields
2. Price the cart from the catalog
3. Create pending purchase rows and tag them with the checkout reference
4. Commit
5. Open the charge with a deterministic idempotency key
6. Persist the gateway payment id (card: apply the synchronous outcome)

A refused charge deletes the batch; an unknown outcome keeps it pending
for the webhook, or for the sweeper to find by reference and settle.
Reconciliation is state-gated, so any number of overlapping confirmations
settle each row once.
"""
import time
import uuid
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Sequence, Tuple

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.catalog import CatalogReader, parse_uuid
from core.exceptions import (
    BuyerNotIdentifiedError,
    CheckoutValidationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentConfigurationError,
)
from core.ledger import PurchaseLedger, PurchaseLine
from core.messages import refusal_message, status_message
from core.pricing import CartDiscount, PricedItem, price_cart, to_money
from core.reference import CheckoutReference, encode_reference
from core.revenue_share import RevenueShareRecorder, ShareOutcome
from core.state_machine import PurchaseStatus, status_from_gateway, transition
from core.validation import clean_cpf, validate_buyer
from integrations.gateway import (
    ChargeRequest,
    GatewayClient,
    GatewayError,
    GatewayPayment,
    Payer,
    is_payment_id,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PaymentMethod = Literal["pix", "card"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(_CamelModel):
    """Cart line as submitted by the storefront."""

    id: str
    price: Optional[Decimal] = None


class Buyer(_CamelModel):
    name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("taxId", "tax_id", "cpf"))


class DiscountRequest(_CamelModel):
    """Discount the storefront displayed; only ``enabled`` is honored."""

    enabled: bool = True
    percentage: Optional[Decimal] = None
    amount: Optional[Decimal] = None


class CardDetails(_CamelModel):
    card_token: Optional[str] = None
    card_brand_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("cardBrandId", "card_brand_id", "paymentMethodId")
    )
    issuer_id: Optional[str] = None
    installments: int = 1


class PixInstructions(_CamelModel):
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    expires_at: Optional[str] = None
    ticket_url: Optional[str] = None


class CheckoutResult(BaseModel):
    """Outcome of a begin-PIX or begin-card call."""

    payment_id: str
    purchase_ids: List[uuid.UUID]
    reference: str
    status: str
    status_detail: Optional[str] = None
    message: Optional[str] = None
    pix: Optional[PixInstructions] = None
    discount: CartDiscount


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one gateway payment."""

    payment_id: str
    gateway_status: str
    status: PurchaseStatus
    found: bool
    purchase_ids: List[uuid.UUID] = Field(default_factory=list)
    transitioned_ids: List[uuid.UUID] = Field(default_factory=list)
    shares: Dict[str, int] = Field(default_factory=dict)


def aggregate_status(statuses: Sequence[str]) -> PurchaseStatus:
    """Single status for a batch: pending while any row is pending."""
    if not statuses or PurchaseStatus.PENDING.value in statuses:
        return PurchaseStatus.PENDING
    if PurchaseStatus.COMPLETED.value in statuses:
        return PurchaseStatus.COMPLETED
    return PurchaseStatus.FAILED


def buyer_facing_status(gateway_status: str) -> str:
    """Collapse gateway statuses into ``approved``, ``pending`` or ``rejected``."""
    target = status_from_gateway(gateway_status)
    if target is PurchaseStatus.COMPLETED:
        return "approved"
    if target is PurchaseStatus.FAILED:
        return "rejected"
    return "pending"


class CheckoutService:
    """
    Per-request checkout orchestrator.

    Holds no state beyond its collaborators; the database is the only
    source of truth, so instances can be created freely and run
    concurrently in any number of processes.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[GatewayClient],
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.ledger = PurchaseLedger(db)
        self.catalog = CatalogReader(db)
        self.recorder = RevenueShareRecorder(db, self.settings.platform_percentage)

    def _require_gateway(self) -> GatewayClient:
        if self.gateway is None or not self.settings.is_payment_configured:
            logger.error("payment_gateway_not_configured")
            raise PaymentConfigurationError("Mercado Pago access token is not configured")
        return self.gateway

    async def begin_pix(
        self,
        buyer_id: Optional[str],
        items: Sequence[CartItem],
        buyer: Buyer,
        discount: Optional[DiscountRequest] = None,
        device_id: Optional[str] = None,
    ) -> CheckoutResult:
        """Open a PIX charge for the cart and return the QR code instructions."""
        return await self._begin("pix", buyer_id, items, buyer, discount, None, device_id)

    async def begin_card(
        self,
        buyer_id: Optional[str],
        items: Sequence[CartItem],
        buyer: Buyer,
        card: CardDetails,
        discount: Optional[DiscountRequest] = None,
        device_id: Optional[str] = None,
    ) -> CheckoutResult:
        """Charge a tokenized card for the cart and apply the synchronous outcome."""
        return await self._begin("card", buyer_id, items, buyer, discount, card, device_id)

    async def _begin(
        self,
        method: PaymentMethod,
        buyer_id: Optional[str],
        items: Sequence[CartItem],
        buyer: Buyer,
        discount: Optional[DiscountRequest],
        card: Optional[CardDetails],
        device_id: Optional[str],
    ) -> CheckoutResult:
        started = time.perf_counter()
        try:
            result = await self._open_charge(
                method, buyer_id, items, buyer, discount, card, device_id
            )
        except CheckoutValidationError:
            metrics.record_checkout(method, "invalid", time.perf_counter() - started)
            raise
        except GatewayRejectedError:
            metrics.record_checkout(method, "rejected", time.perf_counter() - started)
            raise
        except GatewayUnavailableError:
            metrics.record_checkout(method, "unavailable", time.perf_counter() - started)
            raise

        metrics.record_checkout(
            method, "created", time.perf_counter() - started, cart_size=len(result.purchase_ids)
        )
        metrics.record_discount(result.discount.percentage)
        return result

    async def _open_charge(
        self,
        method: PaymentMethod,
        buyer_id: Optional[str],
        items: Sequence[CartItem],
        buyer: Buyer,
        discount: Optional[DiscountRequest],
        card: Optional[CardDetails],
        device_id: Optional[str],
    ) -> CheckoutResult:
        if not buyer_id or not str(buyer_id).strip():
            raise BuyerNotIdentifiedError("checkout without an authenticated buyer")
        gateway = self._require_gateway()

        validate_buyer(buyer.name, buyer.surname, buyer.email, buyer.tax_id)
        if not items:
            raise CheckoutValidationError("Nenhuma foto selecionada")
        if method == "card":
            if card is None or not card.card_token:
                raise CheckoutValidationError("Token do cartão não fornecido", field="cardToken")
            if not card.card_brand_id:
                raise CheckoutValidationError("Bandeira do cartão não informada", field="cardBrandId")
            if card.installments < 1:
                raise CheckoutValidationError("Número de parcelas inválido", field="installments")

        lines, cart = await self._price(items, discount)

        logger.info(
            "checkout_started",
            method=method,
            buyer_id=buyer_id,
            quantity=cart.quantity,
            subtotal=str(cart.subtotal),
            discount_percentage=cart.percentage,
            total=str(cart.total),
        )

        purchase_ids = await self.ledger.create_pending(str(buyer_id), lines, method)
        reference = encode_reference(
            purchase_ids, max_length=self.settings.reference_max_length
        )
        await self.ledger.tag_with_reference(purchase_ids, reference)
        await self.db.commit()

        charge = ChargeRequest(
            method=method,
            amount=cart.total,
            description=self._description(cart.quantity),
            external_reference=reference.external_reference,
            idempotency_key=reference.idempotency_key(method),
            payer=Payer(
                email=buyer.email.strip().lower(),
                first_name=buyer.name.strip(),
                last_name=buyer.surname.strip(),
                cpf=clean_cpf(buyer.tax_id),
            ),
            device_id=device_id,
            card_token=card.card_token if card else None,
            payment_method_id=card.card_brand_id if card else None,
            issuer_id=card.issuer_id if card else None,
            installments=card.installments if card else 1,
            metadata={
                **cart.as_metadata(),
                "buyer_id": str(buyer_id),
                "checkout_reference": reference.token,
            },
        )

        try:
            payment = await gateway.create_charge(charge)
        except GatewayError as e:
            await self._handle_charge_error(e, method, purchase_ids, reference)
            raise  # _handle_charge_error always raises

        reference = reference.with_gateway_payment(payment.id)
        await self.ledger.tag_with_reference(purchase_ids, reference)
        await self.db.commit()

        logger.info(
            "charge_opened",
            method=method,
            payment_id=payment.id,
            status=payment.status,
            reference=reference.to_wire(),
        )

        # Refusals and instant approvals come back on the create call
        if status_from_gateway(payment.status).is_terminal:
            await self.reconcile(payment)

        if method == "pix":
            pix = payment.pix
            return CheckoutResult(
                payment_id=payment.id,
                purchase_ids=purchase_ids,
                reference=reference.to_wire(),
                status=buyer_facing_status(payment.status),
                status_detail=payment.status_detail,
                message=status_message(payment.status, payment.status_detail),
                pix=PixInstructions(
                    qr_code=pix.qr_code if pix else None,
                    qr_code_base64=pix.qr_code_base64 if pix else None,
                    ticket_url=pix.ticket_url if pix else None,
                    expires_at=payment.date_of_expiration,
                ),
                discount=cart,
            )

        return CheckoutResult(
            payment_id=payment.id,
            purchase_ids=purchase_ids,
            reference=reference.to_wire(),
            status=buyer_facing_status(payment.status),
            status_detail=payment.status_detail,
            message=status_message(payment.status, payment.status_detail),
            discount=cart,
        )

    async def _handle_charge_error(
        self,
        error: GatewayError,
        method: PaymentMethod,
        purchase_ids: List[uuid.UUID],
        reference: CheckoutReference,
    ) -> None:
        if error.is_refusal:
            deleted = await self.ledger.delete_batch(purchase_ids)
            await self.db.commit()
            metrics.record_batch_rollback()
            logger.warning(
                "charge_refused",
                method=method,
                reference=reference.token,
                status_code=error.status_code,
                reason_codes=error.cause_codes,
                deleted=deleted,
            )
            raise GatewayRejectedError(
                f"gateway refused {method} charge: {error.message}",
                user_message=refusal_message(error.cause_codes, error.cause_description),
                reason_code=error.cause_codes[0] if error.cause_codes else None,
            ) from error

        logger.error(
            "charge_outcome_unknown",
            method=method,
            reference=reference.token,
            purchase_ids=[str(pid) for pid in purchase_ids],
            error=error.message,
        )
        raise GatewayUnavailableError(
            f"{method} charge outcome unknown: {error.message}", reference=reference.token
        ) from error

    async def _price(
        self, items: Sequence[CartItem], discount: Optional[DiscountRequest]
    ) -> Tuple[List[PurchaseLine], CartDiscount]:
        """Price the cart from catalog data; client prices are only compared."""
        photo_ids: List[uuid.UUID] = []
        for item in items:
            photo_id = parse_uuid(item.id)
            if photo_id is None:
                raise CheckoutValidationError("Foto inválida no carrinho", item_id=item.id)
            if photo_id in photo_ids:
                raise CheckoutValidationError("Foto duplicada no carrinho", item_id=item.id)
            photo_ids.append(photo_id)

        photos = await self.catalog.get_photos(photo_ids)
        lines: List[PurchaseLine] = []
        priced: List[PricedItem] = []
        for item, photo_id in zip(items, photo_ids):
            photo = photos.get(photo_id)
            if photo is None or not photo.is_available:
                raise CheckoutValidationError(
                    "Uma das fotos não está mais disponível. Atualize o carrinho.",
                    item_id=item.id,
                )
            price = to_money(photo.price)
            if item.price is not None and to_money(item.price) != price:
                logger.warning(
                    "cart_price_mismatch",
                    photo_id=str(photo_id),
                    client_price=str(item.price),
                    catalog_price=str(price),
                )
                raise CheckoutValidationError(
                    "O preço de uma das fotos mudou. Atualize o carrinho.", item_id=item.id
                )
            lines.append(
                PurchaseLine(
                    photo_id=photo.id,
                    photographer_id=photo.photographer_id,
                    campaign_id=photo.campaign_id,
                    amount=price,
                )
            )
            priced.append(PricedItem(item_id=str(photo.id), price=price))

        campaigns = await self.catalog.get_campaigns(line.campaign_id for line in lines)
        eligible = (discount is None or discount.enabled) and all(
            campaign.progressive_discount_enabled for campaign in campaigns.values()
        )
        cart = price_cart(priced, eligible, minimum_charge=self.settings.minimum_charge_amount)

        if discount is not None:
            if discount.percentage is not None and Decimal(discount.percentage) != cart.percentage:
                logger.warning(
                    "client_discount_mismatch",
                    client_percentage=str(discount.percentage),
                    percentage=cart.percentage,
                )
            if discount.amount is not None and to_money(discount.amount) != cart.discount_amount:
                logger.warning(
                    "client_discount_mismatch",
                    client_amount=str(discount.amount),
                    amount=str(cart.discount_amount),
                )
        return lines, cart

    def _description(self, quantity: int) -> str:
        if quantity > 1:
            return f"{quantity} fotos - {self.settings.store_name}"
        return f"Foto - {self.settings.store_name}"

    async def check_status(self, payment_id: str | int) -> ReconciliationResult:
        """
        Look the payment up at the gateway and reconcile its purchases.

        Used by client polling, the webhook and the sweeper alike.

        Raises:
            CheckoutValidationError: Unknown payment id
            GatewayUnavailableError: Gateway unreachable
        """
        gateway = self._require_gateway()
        payment_id = str(payment_id).strip()
        if not payment_id:
            raise CheckoutValidationError("ID do pagamento não fornecido", field="paymentId")
        if not is_payment_id(payment_id):
            logger.warning("check_status_invalid_payment_id", payment_id=payment_id[:64])
            raise CheckoutValidationError("ID do pagamento inválido", field="paymentId")

        try:
            payment = await gateway.get_payment(payment_id)
        except GatewayError as e:
            if e.status_code == 404:
                raise CheckoutValidationError(
                    "Pagamento não encontrado", payment_id=payment_id
                ) from e
            if e.is_refusal:
                raise GatewayRejectedError(
                    f"payment lookup refused: {e.message}", reason_code=str(e.status_code)
                ) from e
            raise GatewayUnavailableError(
                f"payment lookup failed: {e.message}", payment_id=payment_id
            ) from e

        return await self.reconcile(payment)

    async def reconcile(self, payment: GatewayPayment) -> ReconciliationResult:
        """
        Apply a gateway payment status to the purchases it covers.

        Each row is settled in its own transaction so one failing row does
        not undo its siblings. Rows already terminal are left untouched.
        """
        target = status_from_gateway(payment.status)
        rows = await self.ledger.resolve_by_reference(payment.external_reference, payment.id)

        if not rows:
            metrics.record_unmatched_payment()
            logger.warning(
                "reconcile_no_purchases_found",
                payment_id=payment.id,
                external_reference=payment.external_reference,
                gateway_status=payment.status,
            )
            return ReconciliationResult(
                payment_id=payment.id,
                gateway_status=payment.status,
                status=target,
                found=False,
            )

        purchase_ids = [row.id for row in rows]
        transitioned: List[uuid.UUID] = []
        shares: Dict[str, int] = {}

        if target.is_terminal:
            # Rows already terminal never reach the write path
            settleable = [row.id for row in rows if transition(row.status, target) is not None]
            for purchase_id in settleable:
                moved, outcome = await self._settle(purchase_id, target, payment.id)
                if moved:
                    transitioned.append(purchase_id)
                if outcome is not None:
                    shares[outcome.value] = shares.get(outcome.value, 0) + 1
            metrics.record_transition(target.value, len(transitioned))

        statuses = await self.ledger.get_statuses(purchase_ids)
        result = ReconciliationResult(
            payment_id=payment.id,
            gateway_status=payment.status,
            status=aggregate_status(list(statuses.values())),
            found=True,
            purchase_ids=purchase_ids,
            transitioned_ids=transitioned,
            shares=shares,
        )

        logger.info(
            "payment_reconciled",
            payment_id=payment.id,
            gateway_status=payment.status,
            status=result.status.value,
            purchase_count=len(purchase_ids),
            transitioned=len(transitioned),
            shares=shares,
        )
        return result

    async def _settle(
        self, purchase_id: uuid.UUID, target: PurchaseStatus, payment_id: str
    ) -> Tuple[bool, Optional[ShareOutcome]]:
        """
        Transition one row and record its share in a single transaction.

        A duplicate share insert rolls the transaction back; the retry then
        finds the share and commits the transition alone.
        """
        for attempt in (1, 2):
            try:
                moved = await self.ledger.update_status([purchase_id], target)
                outcome = None
                if moved and target is PurchaseStatus.COMPLETED:
                    outcome = (await self.recorder.record_if_absent(purchase_id)).outcome
                await self.db.commit()
                return bool(moved), outcome
            except IntegrityError as e:
                await self.db.rollback()
                logger.warning(
                    "revenue_share_concurrent_insert",
                    purchase_id=str(purchase_id),
                    payment_id=payment_id,
                    attempt=attempt,
                    error=str(e.orig),
                )

        logger.error(
            "purchase_settle_failed",
            purchase_id=str(purchase_id),
            payment_id=payment_id,
            target=target.value,
        )
        return False, None

    async def backfill_revenue_shares(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Record shares for completed purchases that have none."""
        rows = await self.ledger.list_completed_without_share(limit=limit)
        purchase_ids = [row.id for row in rows]
        tally: Dict[str, int] = {}

        for purchase_id in purchase_ids:
            try:
                outcome = (await self.recorder.record_if_absent(purchase_id)).outcome
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                outcome = ShareOutcome.ALREADY_RECORDED
            tally[outcome.value] = tally.get(outcome.value, 0) + 1

        if purchase_ids:
            logger.info("revenue_shares_backfilled", candidates=len(purchase_ids), **tally)
        return tally
