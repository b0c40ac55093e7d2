from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from app.utils.commission import (
    format_naira,
    line_commission_minor,
    money_major_to_minor,
    money_minor_to_major,
    split_delivery_fee_minor,
)


class CommissionMinorTestCase(unittest.TestCase):
    def test_delivery_fee_splits_eighty_twenty(self):
        self.assertEqual(split_delivery_fee_minor(150000), (120000, 30000))
        self.assertEqual(split_delivery_fee_minor(250000), (200000, 50000))

    def test_half_up_rounding_keeps_the_parts_whole(self):
        # 20% of 12345 = 2469.0; 20% of 12347 = 2469.4 -> 2469; 20% of 12348 = 2469.6 -> 2470
        self.assertEqual(split_delivery_fee_minor(12345), (9876, 2469))
        self.assertEqual(split_delivery_fee_minor(12347), (9878, 2469))
        self.assertEqual(split_delivery_fee_minor(12348), (9878, 2470))
        # 20% of 3 = 0.6 -> 1
        self.assertEqual(split_delivery_fee_minor(3), (2, 1))
        for fee in (1, 7, 99, 101, 333333):
            rider, platform = split_delivery_fee_minor(fee)
            self.assertEqual(rider + platform, fee)

    def test_zero_and_negative_fees_split_to_nothing(self):
        self.assertEqual(split_delivery_fee_minor(0), (0, 0))
        self.assertEqual(split_delivery_fee_minor(-500), (0, 0))

    def test_platform_share_is_configurable(self):
        with patch.dict(os.environ, {"PLATFORM_DELIVERY_SHARE_BPS": "2500"}):
            self.assertEqual(split_delivery_fee_minor(150000), (112500, 37500))
        self.assertEqual(split_delivery_fee_minor(1000, platform_bps=10000), (0, 1000))

    def test_line_commission_is_markup_times_quantity(self):
        self.assertEqual(line_commission_minor(retail_minor=425000, wholesale_minor=300000, quantity=2), 250000)
        self.assertEqual(line_commission_minor(retail_minor=300000, wholesale_minor=300000, quantity=3), 0)
        # Selling under wholesale never produces a negative commission.
        self.assertEqual(line_commission_minor(retail_minor=250000, wholesale_minor=300000, quantity=1), 0)

    def test_naira_formatting(self):
        self.assertEqual(format_naira(1000000), "₦10,000.00")
        self.assertEqual(format_naira(5), "₦0.05")
        self.assertEqual(format_naira(None), "₦0.00")

    def test_major_minor_conversion(self):
        self.assertEqual(money_major_to_minor("4250.005"), 425001)
        self.assertEqual(money_major_to_minor(None), 0)
        self.assertEqual(money_major_to_minor(-10), 0)
        self.assertEqual(money_minor_to_major(425050), 4250.5)


if __name__ == "__main__":
    unittest.main()
