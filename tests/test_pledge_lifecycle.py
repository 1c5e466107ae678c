"""Tests for pledge creation, renewal, redemption, forfeiture and auction."""
import os
import sys
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from pawnsys.database import StorageManager
from pawnsys.engine import PawnEngine
from pawnsys.services import PledgeService, audit_log
from pawnsys.data_structures import PledgeItem
from pawnsys.exceptions import (
    ValidationError,
    PledgeStatusError,
    PledgeNotFoundError,
    CustomerNotFoundError,
    RackNotFoundError,
    InsufficientPaymentError,
    VerificationRequiredError,
)

PRICES = {"999": 320.0, "916": 300.0, "750": 243.0}
CREATED = datetime(2025, 1, 1, 10, 0)


def chain_item():
    return {'category': 'chain', 'weight_grams': 10, 'purity': '916',
            'deduction': 10, 'deduction_type': 'percent'}


class PledgeTestCase(unittest.TestCase):

    def setUp(self):
        self.storage = StorageManager(":memory:")
        self.engine = PawnEngine(self.storage)
        self.service = self.engine.pledge_service
        self.customer = self.engine.customer_service.create_customer(
            "Ahmad bin Abdullah", "850101-14-5523", "012-3456789", now=CREATED
        )

    def tearDown(self):
        self.storage.close()

    def create(self, now=CREATED, **kwargs):
        return self.service.create_pledge(
            self.customer.id, [chain_item()], 70, price_table=PRICES, now=now, **kwargs
        )


class TestCreatePledge(PledgeTestCase):

    def test_create_pledge(self):
        pledge = self.create(user="Cashier User")
        self.assertEqual(pledge.id, "PLG-2025-000001")
        self.assertAlmostEqual(pledge.gross_value, 3000.0, places=2)
        self.assertAlmostEqual(pledge.total_deduction, 300.0, places=2)
        self.assertAlmostEqual(pledge.net_value, 2700.0, places=2)
        self.assertAlmostEqual(pledge.loan_amount, 1890.0, places=2)
        self.assertEqual(pledge.status, "active")
        self.assertEqual(pledge.due_date, datetime(2025, 7, 1, 10, 0))
        self.assertAlmostEqual(pledge.items[0].net_value, 2700.0, places=2)

        stored = self.service.get_pledge(pledge.id)
        self.assertEqual(stored.to_dict(), pledge.to_dict())

    def test_sequential_ids(self):
        first = self.create()
        second = self.create(now=CREATED + timedelta(hours=1))
        third = self.create(now=datetime(2026, 1, 2))
        self.assertEqual(first.id, "PLG-2025-000001")
        self.assertEqual(second.id, "PLG-2025-000002")
        self.assertEqual(third.id, "PLG-2026-000001")

    def test_customer_counters(self):
        self.create()
        self.create()
        customer = self.engine.customer_service.get_customer(self.customer.id)
        self.assertEqual(customer.active_pledges, 2)
        self.assertEqual(customer.total_pledges, 2)
        self.assertAlmostEqual(customer.total_amount, 3780.0, places=2)
        self.assertEqual(customer.last_visit, CREATED)

    def test_blank_rows_ignored(self):
        items = [chain_item(), {'category': '', 'weight_grams': ''}]
        pledge = self.service.create_pledge(self.customer.id, items, 70, price_table=PRICES, now=CREATED)
        self.assertEqual(len(pledge.items), 1)

    def test_requires_an_item(self):
        with self.assertRaises(ValidationError):
            self.service.create_pledge(self.customer.id, [], 70, price_table=PRICES, now=CREATED)
        with self.assertRaises(ValidationError):
            self.service.create_pledge(self.customer.id, [{'category': 'ring', 'weight_grams': 0}], 70,
                                       price_table=PRICES, now=CREATED)

    def test_negative_weight_not_silently_dropped(self):
        items = [chain_item(), PledgeItem("ring", -2, "916")]
        with self.assertRaises(ValidationError):
            self.service.create_pledge(self.customer.id, items, 70, price_table=PRICES, now=CREATED)

    def test_invalid_percentage_stores_nothing(self):
        with self.assertRaises(ValidationError):
            self.service.create_pledge(self.customer.id, [chain_item()], 0, price_table=PRICES, now=CREATED)
        self.assertEqual(self.service.list_pledges(), [])

    def test_unknown_customer(self):
        with self.assertRaises(CustomerNotFoundError):
            self.service.create_pledge("CUST-999999", [chain_item()], 70, price_table=PRICES, now=CREATED)
        self.assertEqual(self.service.list_pledges(), [])

    def test_unknown_payout_method(self):
        with self.assertRaises(ValidationError):
            self.create(payout_method="crypto")

    def test_uses_configured_gold_price(self):
        self.engine.set_gold_price("916", 250)
        pledge = self.service.create_pledge(self.customer.id, [chain_item()], 70, now=CREATED)
        self.assertAlmostEqual(pledge.gross_value, 2500.0, places=2)

    def test_pledge_not_found(self):
        with self.assertRaises(PledgeNotFoundError):
            self.service.get_pledge("PLG-2025-999999")

    def test_audit_entry_written(self):
        pledge = self.create(user="Cashier User")
        logs = self.engine.audit.get_logs(action="pledge_create")
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]['details']['pledge_id'], pledge.id)
        self.assertEqual(logs[0]['user'], "Cashier User")


class TestRenewal(PledgeTestCase):

    def test_renewal_on_overdue_pledge(self):
        pledge = self.create()
        now = CREATED + timedelta(days=185)
        self.assertEqual(self.service.get_status(pledge.id, now), "overdue")

        renewed = self.service.renew_pledge(pledge.id, 1, 120, now=now, user="Cashier User")
        self.assertEqual(renewed.status, "active")
        self.assertEqual(renewed.due_date, datetime(2025, 8, 1, 10, 0))
        self.assertEqual(len(renewed.renewals), 1)

        renewal = renewed.renewals[0]
        self.assertAlmostEqual(renewal.outstanding_interest_paid, 85.05, places=2)
        self.assertAlmostEqual(renewal.extension_interest_prepaid, 28.35, places=2)
        self.assertAlmostEqual(renewal.interest_paid, 113.40, places=2)
        self.assertAlmostEqual(renewal.change_given, 6.60, places=2)
        self.assertEqual(renewal.amount_received, 120.0)

        self.assertAlmostEqual(renewed.loan_amount, 1890.0, places=2)
        self.assertEqual(self.service.get_status(pledge.id, now), "active")

    def test_renewals_append_and_extend_from_due_date(self):
        pledge = self.create()
        first = CREATED + timedelta(days=10)
        quote = self.service.quote_renewal(pledge.id, 2, first)
        self.service.renew_pledge(pledge.id, 2, quote.total_payable, now=first)

        second = CREATED + timedelta(days=20)
        quote = self.service.quote_renewal(pledge.id, 1, second)
        renewed = self.service.renew_pledge(pledge.id, 1, quote.total_payable, now=second)

        self.assertEqual([r.extension_months for r in renewed.renewals], [2, 1])
        self.assertEqual(renewed.due_date, datetime(2025, 10, 1, 10, 0))

    def test_interest_after_renewal(self):
        pledge = self.create()
        self.service.renew_pledge(pledge.id, 1, 113.40, now=CREATED + timedelta(days=185))
        interest = self.service.get_interest(pledge.id, CREATED + timedelta(days=200))
        self.assertEqual(interest.outstanding_interest, 0.0)
        interest = self.service.get_interest(pledge.id, CREATED + timedelta(days=245))
        self.assertAlmostEqual(interest.outstanding_interest, 28.35, places=2)

    def test_insufficient_payment_changes_nothing(self):
        pledge = self.create()
        now = CREATED + timedelta(days=185)
        with self.assertRaises(InsufficientPaymentError):
            self.service.renew_pledge(pledge.id, 1, 100, now=now)
        stored = self.service.get_pledge(pledge.id)
        self.assertEqual(stored.renewals, [])
        self.assertEqual(stored.due_date, pledge.due_date)

    def test_renewal_updates_last_visit(self):
        pledge = self.create()
        now = CREATED + timedelta(days=15)
        self.service.renew_pledge(pledge.id, 1, 50, now=now)
        customer = self.engine.customer_service.get_customer(self.customer.id)
        self.assertEqual(customer.last_visit, now)
        self.assertEqual(customer.active_pledges, 1)


class TestRedemption(PledgeTestCase):

    def test_redeem(self):
        pledge = self.create()
        now = CREATED + timedelta(days=40)
        redeemed = self.engine.redeem_pledge(pledge.id, 2000, True, True, now=now)

        self.assertEqual(redeemed.status, "redeemed")
        self.assertEqual(redeemed.redeemed_at, now)
        self.assertAlmostEqual(redeemed.redemption_amount, 1908.90, places=2)
        self.assertAlmostEqual(redeemed.change_given, 91.10, places=2)
        self.assertAlmostEqual(redeemed.loan_amount, 1890.0, places=2)

        customer = self.engine.customer_service.get_customer(self.customer.id)
        self.assertEqual(customer.active_pledges, 0)
        self.assertEqual(customer.total_pledges, 1)

    def test_insufficient_payment(self):
        pledge = self.create()
        with self.assertRaises(InsufficientPaymentError):
            self.service.redeem_pledge(pledge.id, 1900, True, True, now=CREATED + timedelta(days=40))
        self.assertEqual(self.service.get_pledge(pledge.id).status, "active")

    def test_verification_required(self):
        pledge = self.create()
        with self.assertRaises(VerificationRequiredError):
            self.service.redeem_pledge(pledge.id, 5000, ic_verified=True, items_verified=False,
                                       now=CREATED + timedelta(days=40))
        self.assertEqual(self.service.get_pledge(pledge.id).status, "active")

    def test_cannot_redeem_twice(self):
        pledge = self.create()
        now = CREATED + timedelta(days=40)
        self.service.redeem_pledge(pledge.id, 2000, True, True, now=now)
        with self.assertRaises(PledgeStatusError):
            self.service.redeem_pledge(pledge.id, 2000, True, True, now=now)
        with self.assertRaises(PledgeStatusError):
            self.service.renew_pledge(pledge.id, 1, 2000, now=now)

    def test_active_pledges_floor_at_zero(self):
        customers = self.engine.customer_service
        customers.record_redemption(self.customer.id)
        self.assertEqual(customers.get_customer(self.customer.id).active_pledges, 0)


class TestForfeitAndAuction(PledgeTestCase):

    def test_forfeit_requires_overdue(self):
        pledge = self.create()
        with self.assertRaises(PledgeStatusError):
            self.service.forfeit_pledge(pledge.id, now=CREATED + timedelta(days=30))

    def test_forfeit_then_auction(self):
        pledge = self.create()
        now = datetime(2025, 8, 15)
        forfeited = self.service.forfeit_pledge(pledge.id, now=now)
        self.assertEqual(forfeited.status, "forfeited")
        self.assertEqual(forfeited.forfeited_at, now)

        sold = self.service.record_auction(pledge.id, 3200, "Gold Traders Sdn Bhd", now=datetime(2025, 9, 1))
        self.assertEqual(sold.status, "auctioned")
        self.assertEqual(sold.auction_price, 3200.0)
        self.assertEqual(sold.auction_buyer, "Gold Traders Sdn Bhd")
        self.assertAlmostEqual(sold.loan_amount, 1890.0, places=2)

        with self.assertRaises(PledgeStatusError):
            self.service.record_auction(pledge.id, 3300, "Someone Else", now=datetime(2025, 9, 2))

    def test_no_skipping_to_auction(self):
        pledge = self.create()
        with self.assertRaises(PledgeStatusError):
            self.service.record_auction(pledge.id, 3200, "Buyer", now=datetime(2025, 8, 15))

    def test_forfeited_cannot_be_redeemed_or_renewed(self):
        pledge = self.create()
        self.service.forfeit_pledge(pledge.id, now=datetime(2025, 8, 15))
        with self.assertRaises(PledgeStatusError):
            self.service.redeem_pledge(pledge.id, 5000, True, True, now=datetime(2025, 8, 16))
        with self.assertRaises(PledgeStatusError):
            self.service.renew_pledge(pledge.id, 1, 5000, now=datetime(2025, 8, 16))

    def test_auction_requires_price_and_buyer(self):
        pledge = self.create()
        self.service.forfeit_pledge(pledge.id, now=datetime(2025, 8, 15))
        with self.assertRaises(ValidationError):
            self.service.record_auction(pledge.id, 0, "Buyer")
        with self.assertRaises(ValidationError):
            self.service.record_auction(pledge.id, 3000, "  ")
        self.assertEqual(self.service.get_pledge(pledge.id).status, "forfeited")

    def test_list_by_effective_status(self):
        first = self.create()
        self.create(now=datetime(2025, 6, 1))
        overdue = self.service.list_pledges(status="overdue", now=datetime(2025, 7, 15))
        self.assertEqual([p.id for p in overdue], [first.id])


class TestPledgeServiceCollaborators(unittest.TestCase):

    def test_create_notifies_customer_service_and_audit(self):
        storage = StorageManager(":memory:")
        customers = MagicMock()
        audit = MagicMock()
        service = PledgeService(storage, customer_service=customers, audit_logger=audit)

        pledge = service.create_pledge("CUST-000042", [chain_item()], 70, price_table=PRICES, now=CREATED)

        customers.get_customer.assert_called_once_with("CUST-000042")
        customers.record_new_pledge.assert_called_once_with("CUST-000042", pledge.loan_amount, CREATED)
        audit.log.assert_called_once()
        self.assertEqual(audit.log.call_args[0][0], audit_log.PLEDGE_CREATE)
        storage.close()


class TestIsoTimestamps(PledgeTestCase):

    def test_create_with_iso_string(self):
        pledge = self.create(now="2025-01-01T10:00:00")
        self.assertEqual(pledge.id, "PLG-2025-000001")
        self.assertEqual(pledge.created_at, CREATED)
        self.assertEqual(pledge.due_date, datetime(2025, 7, 1, 10, 0))

    def test_renew_with_iso_string(self):
        pledge = self.create()
        renewed = self.service.renew_pledge(pledge.id, 1, 1000, now="2025-02-10T10:00:00")
        self.assertEqual(renewed.renewals[-1].date, datetime(2025, 2, 10, 10, 0))
        stored = self.service.get_pledge(pledge.id)
        self.assertIsInstance(stored.renewals[-1].date, datetime)

    def test_redeem_with_iso_string(self):
        pledge = self.create()
        redeemed = self.service.redeem_pledge(pledge.id, 2000, True, True, now="2025-02-10T10:00:00")
        self.assertEqual(redeemed.redeemed_at, datetime(2025, 2, 10, 10, 0))
        self.assertAlmostEqual(redeemed.redemption_amount, 1908.90, places=2)

    def test_forfeit_and_auction_with_iso_strings(self):
        pledge = self.create()
        forfeited = self.service.forfeit_pledge(pledge.id, now="2025-08-01T00:00:00")
        self.assertEqual(forfeited.forfeited_at, datetime(2025, 8, 1))

        sold = self.service.record_auction(pledge.id, 3200, "Gold Traders Sdn Bhd", now="2025-08-20T12:00:00")
        self.assertEqual(sold.auctioned_at, datetime(2025, 8, 20, 12, 0))

    def test_unparseable_timestamp(self):
        pledge = self.create()
        with self.assertRaises(ValidationError):
            self.service.forfeit_pledge(pledge.id, now="first of August")

    def test_timezone_aware_instant_rejected(self):
        pledge = self.create()
        with self.assertRaises(ValidationError) as context:
            self.service.quote_redemption(pledge.id, now="2025-02-10T00:00:00+00:00")
        self.assertEqual(context.exception.field, "now")
        with self.assertRaises(ValidationError):
            self.service.list_pledges(status="overdue", now="2025-02-10T00:00:00+00:00")


class TestItemInput(PledgeTestCase):

    def test_preview_leaves_caller_items_untouched(self):
        item = PledgeItem("chain", "10", 916, "10", "percent")
        valuation, loan = self.service.preview_valuation([item], 70, price_table=PRICES)
        self.assertAlmostEqual(valuation.net_value, 2700.0, places=2)
        self.assertAlmostEqual(loan, 1890.0, places=2)
        self.assertEqual(item.weight_grams, "10")
        self.assertEqual(item.purity, 916)
        self.assertIsNone(item.gross_value)

    def test_create_copies_items(self):
        item = PledgeItem("chain", "10", "916", 10, "percent")
        pledge = self.service.create_pledge(self.customer.id, [item], 70, price_table=PRICES, now=CREATED)
        self.assertEqual(pledge.items[0].weight_grams, 10.0)
        self.assertEqual(item.weight_grams, "10")
        self.assertIsNot(pledge.items[0], item)


class TestRackLocationOnCreate(PledgeTestCase):

    def test_location_is_normalized(self):
        pledge = self.create(rack_location=" a-03 ")
        self.assertEqual(pledge.rack_location, "A-3")

    def test_unknown_rack_rejected(self):
        with self.assertRaises(RackNotFoundError):
            self.create(rack_location="Z-99")
        self.assertEqual(self.service.list_pledges(), [])

    def test_slot_out_of_range_rejected(self):
        with self.assertRaises(ValidationError) as context:
            self.create(rack_location="A-99")
        self.assertEqual(context.exception.field, "rack_location")
        self.assertEqual(self.service.list_pledges(), [])


if __name__ == '__main__':
    unittest.main()
