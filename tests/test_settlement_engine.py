from __future__ import annotations

import unittest

from app.extensions import db
from app.models import (
    Delivery,
    DeliveryFeeTransaction,
    Escrow,
    EscrowStatus,
    OrderItem,
    Payout,
    PayoutStatus,
    Product,
    WalletOwner,
    WalletTransaction,
)
from app.services.delivery_orchestrator import cancel_delivery
from app.services.reconciliation_service import recompute_wallet_balances
from app.services.settlement_service import (
    merchant_balances,
    process_merchant_payouts,
    release_escrow,
    release_if_held,
)
from app.utils.errors import EscrowAlreadyReleased, EscrowNotFound
from app.utils.wallets import find_wallet
from tests.factories import ORDER_TOTAL_MINOR, PipelineTestCase, make_merchant, make_product, paid_order, place_order


class SettlementEngineTestCase(PipelineTestCase):
    def test_release_splits_the_escrow_exactly(self):
        order, merchant, _ = paid_order(delivered=True)
        order_id, merchant_id = int(order.id), int(merchant.id)
        rider_id = int(Delivery.query.filter_by(order_id=order_id).one().rider_id)

        breakdown = release_escrow(order_id, source="admin")

        self.assertEqual(breakdown.merchant_earnings_minor, 600000)
        self.assertEqual(breakdown.commission_minor, 250000)
        self.assertEqual(breakdown.delivery_fee_minor, 150000)
        self.assertEqual(breakdown.rider_amount_minor, 120000)
        self.assertEqual(breakdown.platform_delivery_minor, 30000)
        self.assertEqual(breakdown.platform_total_minor, 280000)
        self.assertEqual(
            breakdown.merchant_earnings_minor + breakdown.platform_total_minor + breakdown.rider_amount_minor,
            ORDER_TOTAL_MINOR,
        )

        escrow = self.reload(Escrow, Escrow.query.filter_by(order_id=order_id).one().id)
        self.assertEqual(escrow.status, EscrowStatus.RELEASED.value)
        self.assertEqual(escrow.released_by, "admin")
        self.assertIsNotNone(escrow.released_at)

        payout = Payout.query.filter_by(order_id=order_id).one()
        self.assertEqual(int(payout.amount_minor), 600000)
        self.assertEqual(payout.status, PayoutStatus.PENDING.value)
        self.assertEqual(int(payout.merchant_id), merchant_id)

        self.assertEqual(int(find_wallet(WalletOwner.RIDER, rider_id).balance_minor), 120000)
        self.assertEqual(int(find_wallet(WalletOwner.PLATFORM).balance_minor), 280000)
        fee_row = DeliveryFeeTransaction.query.filter_by(order_id=order_id).one()
        self.assertEqual(int(fee_row.rider_amount_minor), 120000)
        self.assertEqual(int(fee_row.platform_amount_minor), 30000)

    def test_second_release_is_rejected_and_writes_nothing(self):
        order, _, _ = paid_order()
        order_id = int(order.id)
        release_escrow(order_id)
        txns_before = WalletTransaction.query.count()

        with self.assertRaises(EscrowAlreadyReleased):
            release_escrow(order_id)
        self.assertIsNone(release_if_held(order_id))

        self.assertEqual(WalletTransaction.query.count(), txns_before)
        self.assertEqual(Payout.query.filter_by(order_id=order_id).count(), 1)

    def test_release_without_escrow_is_not_found(self):
        merchant = make_merchant()
        order = place_order(merchant, make_product(merchant))
        with self.assertRaises(EscrowNotFound):
            release_escrow(int(order.id))

    def test_release_without_rider_gives_platform_the_whole_fee(self):
        order, _, _ = paid_order(rider=False)
        breakdown = release_escrow(int(order.id))

        self.assertIsNone(breakdown.rider_id)
        self.assertEqual(breakdown.rider_amount_minor, 0)
        self.assertEqual(breakdown.platform_delivery_minor, 150000)
        self.assertEqual(breakdown.platform_total_minor, 400000)
        self.assertEqual(int(find_wallet(WalletOwner.PLATFORM).balance_minor), 400000)
        self.assertEqual(DeliveryFeeTransaction.query.count(), 0)

    def test_cancelled_delivery_does_not_pay_the_rider(self):
        order, _, _ = paid_order()
        order_id = int(order.id)
        delivery = Delivery.query.filter_by(order_id=order_id).one()
        delivery_id, rider_id = int(delivery.id), int(delivery.rider_id)
        cancel_delivery(delivery_id, "customer unreachable")
        self.assertEqual(int(self.reload(Delivery, delivery_id).rider_id), rider_id)

        breakdown = release_escrow(order_id, source="admin")

        self.assertIsNone(breakdown.rider_id)
        self.assertEqual(breakdown.rider_amount_minor, 0)
        self.assertEqual(breakdown.platform_delivery_minor, 150000)
        self.assertEqual(breakdown.platform_total_minor, 400000)
        self.assertIsNone(find_wallet(WalletOwner.RIDER, rider_id))
        self.assertEqual(int(find_wallet(WalletOwner.PLATFORM).balance_minor), 400000)
        self.assertEqual(DeliveryFeeTransaction.query.count(), 0)
        self.assertTrue(recompute_wallet_balances()["ok"])

    def test_undelivered_order_released_early_does_not_pay_the_rider(self):
        order, _, _ = paid_order()
        rider_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().rider_id)

        breakdown = release_escrow(int(order.id), source="admin")

        self.assertEqual(breakdown.rider_amount_minor, 0)
        self.assertIsNone(find_wallet(WalletOwner.RIDER, rider_id))
        self.assertEqual(DeliveryFeeTransaction.query.count(), 0)

    def test_merchant_earnings_use_the_price_captured_at_order_time(self):
        order, _, product = paid_order()
        product_id = int(product.id)
        live = db.session.get(Product, product_id)
        live.price_minor = 350000
        db.session.commit()

        breakdown = release_escrow(int(order.id))
        self.assertEqual(breakdown.merchant_earnings_minor, 600000)

    def test_missing_captured_price_falls_back_to_live_product_price(self):
        order, _, product = paid_order()
        item = OrderItem.query.filter_by(order_id=int(order.id)).one()
        item.wholesale_price_minor = None
        live = db.session.get(Product, int(product.id))
        live.price_minor = 350000
        db.session.commit()

        breakdown = release_escrow(int(order.id))
        self.assertEqual(breakdown.merchant_earnings_minor, 700000)
        self.assertEqual(breakdown.commission_minor, 150000)

    def test_ledger_matches_balances_after_settlement_and_payout(self):
        order, merchant, _ = paid_order(delivered=True)
        merchant_id = int(merchant.id)
        release_escrow(int(order.id))

        self.assertEqual(merchant_balances(merchant_id)["payout_pending_minor"], 600000)
        result = process_merchant_payouts(merchant_id)
        self.assertEqual(result, {"merchant_id": merchant_id, "processed": 1, "amount_minor": 600000})
        self.assertEqual(process_merchant_payouts(merchant_id)["processed"], 0)

        balances = merchant_balances(merchant_id)
        self.assertEqual(balances["payout_pending_minor"], 0)
        self.assertEqual(balances["payout_completed_minor"], 600000)
        self.assertEqual(balances["escrow_held_minor"], 0)
        self.assertEqual(int(find_wallet(WalletOwner.MERCHANT, merchant_id).balance_minor), 600000)

        summary = recompute_wallet_balances()
        self.assertTrue(summary["ok"])
        self.assertEqual(summary["wallet_count"], 3)
        self.assertEqual(summary["drift_count"], 0)

    def test_reconciliation_reports_a_tampered_balance(self):
        order, _, _ = paid_order()
        release_escrow(int(order.id))
        wallet = find_wallet(WalletOwner.PLATFORM)
        wallet.balance_minor = int(wallet.balance_minor) + 500
        db.session.commit()

        summary = recompute_wallet_balances()
        self.assertFalse(summary["ok"])
        self.assertEqual(summary["drift_count"], 1)
        self.assertEqual(summary["drift_items"][0]["drift_minor"], 500)
        self.assertTrue(recompute_wallet_balances(tolerance_minor=500)["ok"])

    def test_admin_release_route_returns_the_breakdown(self):
        order, _, _ = paid_order(delivered=True)
        order_id = int(order.id)

        res = self.client.post(f"/api/admin/escrow/{order_id}/release")
        self.assertEqual(res.status_code, 200)
        settlement = (res.get_json() or {}).get("settlement") or {}
        self.assertEqual(settlement.get("merchant_earnings_minor"), 600000)
        self.assertEqual(settlement.get("platform_total_minor"), 280000)

        again = self.client.post(f"/api/admin/escrow/{order_id}/release")
        self.assertEqual(again.status_code, 409)
        self.assertEqual((again.get_json() or {}).get("error"), "ESCROW_ALREADY_RELEASED")

        view = self.client.get(f"/api/escrow/{order_id}")
        self.assertEqual(view.status_code, 200)
        body = view.get_json() or {}
        self.assertEqual(body["escrow"]["status"], EscrowStatus.RELEASED.value)
        self.assertEqual(body["payout"]["amount_minor"], 600000)


if __name__ == "__main__":
    unittest.main()
