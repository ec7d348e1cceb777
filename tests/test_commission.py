import unittest
import os
import sys
from decimal import Decimal
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from interview_slots.booking.commission import FlatRateCommission, TieredCommission, split
from interview_slots.booking.error_utils import ValidationError


class SplitTest(unittest.TestCase):

    def test_flat_rate_split(self):
        self.assertEqual(split(Decimal("100.00"), FlatRateCommission("0.10")), (Decimal("10.00"), Decimal("90.00")))

    def test_rounding_remainder_goes_to_platform(self):
        fee, payout = split(Decimal("99.99"), FlatRateCommission("0.10"))
        self.assertEqual(payout, Decimal("89.99"))
        self.assertEqual(fee, Decimal("10.00"))
        fee, payout = split(Decimal("0.05"), FlatRateCommission("0.10"))
        self.assertEqual((fee, payout), (Decimal("0.01"), Decimal("0.04")))

    def test_parts_always_sum_to_gross(self):
        policies = [FlatRateCommission("0.10"), FlatRateCommission("0.175"), FlatRateCommission("0.333"),
                    FlatRateCommission("0"), FlatRateCommission("1"),
                    TieredCommission([(0, "0.20"), (100, "0.15"), (1000, "0.1234")])]
        amounts = ["0.01", "0.03", "1.00", "9.99", "33.33", "99.99", "100.00", "101.01", "999.99", "1000.00",
                   "1234.57", "65535.55"]
        for policy in policies:
            for amount in amounts:
                with self.subTest(policy=policy, amount=amount):
                    gross = Decimal(amount)
                    fee, payout = split(gross, policy)
                    self.assertEqual(fee + payout, gross)
                    self.assertGreaterEqual(fee, 0)
                    self.assertGreaterEqual(payout, 0)
                    self.assertEqual(payout, payout.quantize(Decimal("0.01")))

    def test_tiered_rate_applies_to_whole_amount(self):
        policy = TieredCommission([(100, "0.15"), (0, "0.20")])
        self.assertEqual(policy.rate_for(Decimal("99.99")), Decimal("0.20"))
        self.assertEqual(policy.rate_for(Decimal("100.00")), Decimal("0.15"))
        self.assertEqual(split(Decimal("200.00"), policy), (Decimal("30.00"), Decimal("170.00")))

    def test_invalid_policies(self):
        with self.assertRaises(ValidationError):
            FlatRateCommission("1.5")
        with self.assertRaises(ValidationError):
            FlatRateCommission("-0.1")
        with self.assertRaises(ValidationError):
            TieredCommission([])
        with self.assertRaises(ValidationError):
            TieredCommission([(50, "0.1")])


if __name__ == '__main__':
    unittest.main()
