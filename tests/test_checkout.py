"""
Tests for the checkout orchestrator.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_fakes import FakeGateway, cart_of, purchase_statuses, revenue_shares
from config import Settings
from core.checkout import Buyer, CardDetails, CartItem, CheckoutService, DiscountRequest
from core.exceptions import (
    BuyerNotIdentifiedError,
    CheckoutValidationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentConfigurationError,
)
from core.state_machine import PurchaseStatus
from database.models import Purchase
from integrations.gateway import GatewayError, GatewayErrorType


async def purchase_count(db: AsyncSession) -> int:
    return await db.scalar(select(func.count()).select_from(Purchase))


@pytest.fixture
def service(test_db: AsyncSession, fake_gateway: FakeGateway, test_settings: Settings) -> CheckoutService:
    return CheckoutService(test_db, fake_gateway, test_settings)


@pytest.mark.integration
class TestBeginPix:
    """Test suite for PIX checkout."""

    @pytest.mark.asyncio
    async def test_discount_disabled_cart(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        """Three photos at 10 with the discount off: one charge of 30."""
        result = await service.begin_pix(
            "buyer-1",
            cart_of(catalog.event_photos[:3], with_prices=True),
            buyer,
            discount=DiscountRequest(enabled=False),
        )

        assert result.discount.subtotal == Decimal("30.00")
        assert result.discount.discount_amount == Decimal("0.00")
        assert result.discount.total == Decimal("30.00")
        charge = fake_gateway.charges[0]
        assert charge.amount == Decimal("30.00")
        assert charge.metadata["discount_percentage"] == 0
        assert charge.description == "3 fotos - STA Fotos"

    @pytest.mark.asyncio
    async def test_ten_photo_cart_gets_twenty_percent(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        """Ten photos at 5 with the discount on: one charge of 40."""
        result = await service.begin_pix("buyer-1", cart_of(catalog.solo_photos), buyer)

        assert result.discount.subtotal == Decimal("50.00")
        assert result.discount.percentage == 20
        assert result.discount.total == Decimal("40.00")
        charge = fake_gateway.charges[0]
        assert charge.amount == Decimal("40.00")
        assert charge.metadata["discount_amount"] == "10.00"
        assert charge.metadata["buyer_id"] == "buyer-1"

    @pytest.mark.asyncio
    async def test_pix_creates_tagged_pending_rows(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        result = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)

        assert result.status == "pending"
        assert result.pix.qr_code.startswith("000201")
        assert result.pix.qr_code_base64
        assert result.pix.expires_at == "2026-10-18T12:00:00.000-03:00"
        assert len(result.purchase_ids) == 2
        assert set((await purchase_statuses(test_db, result.purchase_ids)).values()) == {"pending"}

        charge = fake_gateway.charges[0]
        assert charge.external_reference.startswith("batch_")
        assert charge.idempotency_key == f"pix-{charge.external_reference}"
        assert result.reference == f"{charge.external_reference}|mp:{result.payment_id}"

        stored = await test_db.execute(
            select(Purchase.gateway_reference, Purchase.gateway_payment_id).where(
                Purchase.id.in_(result.purchase_ids)
            )
        )
        assert {tuple(row) for row in stored} == {(result.reference, result.payment_id)}

    @pytest.mark.asyncio
    async def test_pix_refused_on_create_fails_rows(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        """A PIX charge rejected on creation settles its rows immediately."""
        fake_gateway.pix_status = "rejected"
        fake_gateway.pix_status_detail = "rejected_high_risk"

        result = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)

        assert result.status == "rejected"
        assert result.message == "Pagamento recusado por segurança. Tente pagar com PIX."
        assert set((await purchase_statuses(test_db, result.purchase_ids)).values()) == {"failed"}
        assert await revenue_shares(test_db, result.purchase_ids) == []

    @pytest.mark.asyncio
    async def test_single_photo_uses_purchase_id_as_reference(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        result = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:1]), buyer)

        charge = fake_gateway.charges[0]
        assert charge.external_reference == str(result.purchase_ids[0])
        assert charge.description == "Foto - STA Fotos"

    @pytest.mark.asyncio
    async def test_payer_is_normalized(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:1]), buyer)

        payer = fake_gateway.charges[0].payer
        assert payer.email == "maria@example.com"
        assert payer.cpf == "52998224725"

    @pytest.mark.asyncio
    async def test_campaign_without_discount_disables_cart_discount(
        self, service: CheckoutService, catalog, buyer: Buyer
    ) -> None:
        """One opted-out campaign in the cart disables the discount for all items."""
        photos = catalog.event_photos[:4] + catalog.premium_photos[:1]

        result = await service.begin_pix("buyer-1", cart_of(photos), buyer)

        assert result.discount.quantity == 5
        assert result.discount.percentage == 0
        assert result.discount.total == Decimal("140.00")


@pytest.mark.integration
class TestBeginValidation:
    """Rejections that happen before any purchase row is written."""

    @pytest.mark.asyncio
    async def test_missing_buyer_id(self, service: CheckoutService, catalog, buyer: Buyer) -> None:
        with pytest.raises(BuyerNotIdentifiedError) as exc_info:
            await service.begin_pix(None, cart_of(catalog.event_photos[:1]), buyer)

        assert exc_info.value.http_status == 401

    @pytest.mark.asyncio
    async def test_gateway_not_configured(
        self, test_db: AsyncSession, test_settings: Settings, catalog, buyer: Buyer
    ) -> None:
        service = CheckoutService(test_db, None, test_settings)

        with pytest.raises(PaymentConfigurationError) as exc_info:
            await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:1]), buyer)

        assert exc_info.value.http_status == 500
        assert await purchase_count(test_db) == 0

    @pytest.mark.asyncio
    async def test_missing_access_token(
        self, test_db: AsyncSession, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        settings = Settings(_env_file=None, mercadopago_access_token=None)
        service = CheckoutService(test_db, fake_gateway, settings)

        with pytest.raises(PaymentConfigurationError):
            await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:1]), buyer)

        assert fake_gateway.charges == []

    @pytest.mark.asyncio
    async def test_invalid_cpf(self, service: CheckoutService, catalog, test_db) -> None:
        buyer = Buyer(name="Maria", surname="Silva", email="maria@example.com", tax_id="123.456.789-00")

        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:1]), buyer)

        assert exc_info.value.user_message == "CPF inválido"
        assert await purchase_count(test_db) == 0

    @pytest.mark.asyncio
    async def test_empty_cart(self, service: CheckoutService, buyer: Buyer) -> None:
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", [], buyer)

        assert exc_info.value.user_message == "Nenhuma foto selecionada"

    @pytest.mark.asyncio
    async def test_unavailable_photo(self, service: CheckoutService, catalog, buyer: Buyer, test_db) -> None:
        cart = cart_of(catalog.event_photos[:1] + [catalog.unavailable_photo])

        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", cart, buyer)

        assert "não está mais disponível" in exc_info.value.user_message
        assert await purchase_count(test_db) == 0

    @pytest.mark.asyncio
    async def test_stale_client_price(self, service: CheckoutService, catalog, buyer: Buyer) -> None:
        cart = [CartItem(id=str(catalog.event_photos[0].id), price=Decimal("8.00"))]

        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", cart, buyer)

        assert exc_info.value.user_message == "O preço de uma das fotos mudou. Atualize o carrinho."

    @pytest.mark.asyncio
    async def test_duplicate_photo(self, service: CheckoutService, catalog, buyer: Buyer) -> None:
        cart = cart_of([catalog.event_photos[0], catalog.event_photos[0]])

        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", cart, buyer)

        assert exc_info.value.user_message == "Foto duplicada no carrinho"

    @pytest.mark.asyncio
    async def test_malformed_photo_id(self, service: CheckoutService, buyer: Buyer) -> None:
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_pix("buyer-1", [CartItem(id="photo-1")], buyer)

        assert exc_info.value.user_message == "Foto inválida no carrinho"

    @pytest.mark.asyncio
    async def test_card_without_token(self, service: CheckoutService, catalog, buyer: Buyer) -> None:
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_card(
                "buyer-1", cart_of(catalog.event_photos[:1]), buyer, CardDetails(card_brand_id="visa")
            )

        assert exc_info.value.user_message == "Token do cartão não fornecido"

    @pytest.mark.asyncio
    async def test_card_without_brand(self, service: CheckoutService, catalog, buyer: Buyer) -> None:
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.begin_card(
                "buyer-1", cart_of(catalog.event_photos[:1]), buyer, CardDetails(card_token="tok")
            )

        assert exc_info.value.user_message == "Bandeira do cartão não informada"


@pytest.mark.integration
class TestChargeFailures:
    """Gateway refusals and unknown outcomes."""

    @pytest.mark.asyncio
    async def test_refused_charge_deletes_batch(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, card, test_db
    ) -> None:
        """A refused charge leaves no pending rows behind."""
        fake_gateway.create_error = GatewayError(
            "Amount too high",
            GatewayErrorType.PERMANENT,
            status_code=400,
            causes=[{"code": "cc_amount_rate_limit_exceeded", "description": "amount limit"}],
        )

        with pytest.raises(GatewayRejectedError) as exc_info:
            await service.begin_card("buyer-1", cart_of(catalog.premium_photos), buyer, card)

        assert "PIX" in exc_info.value.user_message
        assert exc_info.value.reason_code == "cc_amount_rate_limit_exceeded"
        assert exc_info.value.http_status == 400
        assert await purchase_count(test_db) == 0

    @pytest.mark.asyncio
    async def test_rate_limited_charge_deletes_batch(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        fake_gateway.create_error = GatewayError(
            "Too many requests", GatewayErrorType.RATE_LIMIT, status_code=429
        )

        with pytest.raises(GatewayRejectedError):
            await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)

        assert await purchase_count(test_db) == 0

    @pytest.mark.asyncio
    async def test_unknown_outcome_keeps_rows_pending(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        """A timeout may have created the charge, so the batch stays for the sweeper."""
        fake_gateway.create_error = GatewayError("timed out", GatewayErrorType.TRANSIENT)

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)

        assert exc_info.value.http_status == 503
        assert exc_info.value.to_dict()["retryable"] is True
        rows = (await test_db.execute(select(Purchase.status))).scalars().all()
        assert rows == ["pending", "pending"]


@pytest.mark.integration
class TestBeginCard:
    """Card charges settle synchronously."""

    @pytest.mark.asyncio
    async def test_approved_card_completes_and_splits(
        self, service: CheckoutService, catalog, buyer: Buyer, card: CardDetails, test_db
    ) -> None:
        """A 100.00 photo under a 20% organization: shares 9 / 20 / 71."""
        result = await service.begin_card("buyer-1", cart_of(catalog.premium_photos[:1]), buyer, card)

        assert result.status == "approved"
        assert result.message == "Pagamento aprovado com sucesso!"
        assert set((await purchase_statuses(test_db, result.purchase_ids)).values()) == {"completed"}
        shares = await revenue_shares(test_db, result.purchase_ids)
        assert len(shares) == 1
        assert (shares[0].platform_amount, shares[0].organization_amount, shares[0].photographer_amount) == (
            Decimal("9.00"),
            Decimal("20.00"),
            Decimal("71.00"),
        )

    @pytest.mark.asyncio
    async def test_card_charge_fields(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer
    ) -> None:
        card = CardDetails(card_token="tok_123", card_brand_id="master", issuer_id="24", installments=3)

        await service.begin_card("buyer-1", cart_of(catalog.event_photos[:2]), buyer, card, device_id="dev-1")

        charge = fake_gateway.charges[0]
        assert charge.method == "card"
        assert charge.card_token == "tok_123"
        assert charge.payment_method_id == "master"
        assert charge.installments == 3
        assert charge.device_id == "dev-1"
        assert charge.idempotency_key.startswith("card-batch_")

    @pytest.mark.asyncio
    async def test_rejected_card_fails_rows(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, card, test_db
    ) -> None:
        fake_gateway.card_status = "rejected"
        fake_gateway.card_status_detail = "cc_rejected_insufficient_amount"

        result = await service.begin_card("buyer-1", cart_of(catalog.event_photos[:2]), buyer, card)

        assert result.status == "rejected"
        assert result.message == "Saldo insuficiente."
        assert set((await purchase_statuses(test_db, result.purchase_ids)).values()) == {"failed"}
        assert await revenue_shares(test_db, result.purchase_ids) == []

    @pytest.mark.asyncio
    async def test_card_in_process_stays_pending(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, card, test_db
    ) -> None:
        fake_gateway.card_status = "in_process"
        fake_gateway.card_status_detail = "pending_review_manual"

        result = await service.begin_card("buyer-1", cart_of(catalog.event_photos[:1]), buyer, card)

        assert result.status == "pending"
        assert "análise" in result.message
        assert set((await purchase_statuses(test_db, result.purchase_ids)).values()) == {"pending"}


@pytest.mark.integration
class TestCheckStatus:
    """Test suite for check_status and reconcile."""

    @pytest.mark.asyncio
    async def test_paid_pix_completes_batch(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:3]), buyer)
        fake_gateway.settle(begun.payment_id, "approved", "accredited")

        result = await service.check_status(begun.payment_id)

        assert result.found
        assert result.status is PurchaseStatus.COMPLETED
        assert sorted(result.transitioned_ids) == sorted(begun.purchase_ids)
        assert result.shares == {"created": 3}
        shares = await revenue_shares(test_db, begun.purchase_ids)
        # shares use the per-photo price; the cart discount only affects the charge
        assert [share.total_amount for share in shares] == [Decimal("10.00")] * 3

    @pytest.mark.asyncio
    async def test_payment_without_reference_settles_whole_batch(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        """The gateway payment id alone is enough to find every row of a batch."""
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:3]), buyer)
        fake_gateway.add_payment(begun.payment_id, "approved", external_reference=None)

        result = await service.check_status(begun.payment_id)

        assert result.found
        assert sorted(result.transitioned_ids) == sorted(begun.purchase_ids)
        assert result.shares == {"created": 3}
        assert set((await purchase_statuses(test_db, begun.purchase_ids)).values()) == {"completed"}

    @pytest.mark.asyncio
    async def test_pending_pix_changes_nothing(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)

        result = await service.check_status(begun.payment_id)

        assert result.status is PurchaseStatus.PENDING
        assert result.transitioned_ids == []
        assert set((await purchase_statuses(test_db, begun.purchase_ids)).values()) == {"pending"}

    @pytest.mark.asyncio
    async def test_cancelled_pix_fails_batch(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)
        fake_gateway.settle(begun.payment_id, "cancelled", "expired")

        result = await service.check_status(begun.payment_id)

        assert result.status is PurchaseStatus.FAILED
        assert set((await purchase_statuses(test_db, begun.purchase_ids)).values()) == {"failed"}

    @pytest.mark.asyncio
    async def test_terminal_rows_never_move_again(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        """A late 'rejected' after 'approved' leaves the batch completed."""
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)
        fake_gateway.settle(begun.payment_id, "approved")
        await service.check_status(begun.payment_id)
        fake_gateway.settle(begun.payment_id, "rejected")

        result = await service.check_status(begun.payment_id)

        assert result.status is PurchaseStatus.COMPLETED
        assert result.transitioned_ids == []
        assert set((await purchase_statuses(test_db, begun.purchase_ids)).values()) == {"completed"}

    @pytest.mark.asyncio
    async def test_unknown_payment(self, service: CheckoutService) -> None:
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.check_status("999")

        assert exc_info.value.user_message == "Pagamento não encontrado"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment_id", ["1/../../users/me", "abc", "12 34", "-1"])
    async def test_malformed_payment_id_rejected(
        self, service: CheckoutService, fake_gateway: FakeGateway, payment_id: str
    ) -> None:
        """Only numeric ids ever reach the gateway."""
        with pytest.raises(CheckoutValidationError) as exc_info:
            await service.check_status(payment_id)

        assert exc_info.value.user_message == "ID do pagamento inválido"
        assert fake_gateway.lookups == []

    @pytest.mark.asyncio
    async def test_gateway_down_during_lookup(
        self, service: CheckoutService, fake_gateway: FakeGateway
    ) -> None:
        fake_gateway.lookup_error = GatewayError("Service unavailable", GatewayErrorType.TRANSIENT, 503)

        with pytest.raises(GatewayUnavailableError):
            await service.check_status("123")

    @pytest.mark.asyncio
    async def test_payment_without_purchases(
        self, service: CheckoutService, fake_gateway: FakeGateway
    ) -> None:
        """An approved payment nobody owns is reported, not raised."""
        fake_gateway.add_payment("424242", "approved", "batch_00000000_2_zzz")

        result = await service.check_status("424242")

        assert not result.found
        assert result.purchase_ids == []

    @pytest.mark.asyncio
    async def test_backfill_records_missing_shares(
        self, service: CheckoutService, fake_gateway: FakeGateway, catalog, buyer: Buyer, test_db
    ) -> None:
        """Rows completed without a share (crash between writes) get one."""
        begun = await service.begin_pix("buyer-1", cart_of(catalog.event_photos[:2]), buyer)
        await service.ledger.update_status(begun.purchase_ids, PurchaseStatus.COMPLETED)
        await test_db.commit()

        tally = await service.backfill_revenue_shares()
        again = await service.backfill_revenue_shares()

        assert tally == {"created": 2}
        assert again == {}
        assert len(await revenue_shares(test_db, begun.purchase_ids)) == 2
