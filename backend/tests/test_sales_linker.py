"""
Tests for backend/funnel/sales_linker.py
Covers earliest-lead attribution, deal cycle labels, unattributable sales
and the per-source sales grouping.
"""
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from funnel.entities import Deal, Lead
from funnel.sales_linker import (
    DATE_ERROR,
    LEAD_NOT_FOUND,
    NO_DATA,
    UNKNOWN_SOURCE,
    LinkMethod,
    deal_cycle,
    group_sales_by_source,
    index_earliest_leads,
    link_sales,
)

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


def make_deal(deal_id, contact=None, created="2025-06-10T12:00:00+00:00", amount="1000"):
    return Deal.from_bitrix({
        "ID": str(deal_id),
        "TITLE": f"Deal {deal_id}",
        "OPPORTUNITY": amount,
        "STAGE_ID": "C31:WON",
        "CATEGORY_ID": "31",
        "CONTACT_ID": contact,
        "CURRENCY_ID": "RUB",
        "DATE_CREATE": created,
    })


def make_lead(lead_id, contact, source, created="2025-06-01T09:00:00+00:00"):
    return Lead.from_bitrix({
        "ID": str(lead_id),
        "STATUS_ID": "CONVERTED",
        "SOURCE_ID": source,
        "CONTACT_ID": contact,
        "DATE_CREATE": created,
    })


def name_for(code):
    return {"ADS": "Advertising", "WEB": "Website", UNKNOWN_SOURCE: "Unknown source"}.get(code, f"Source {code}")


class TestDealCycle:
    """Test deal_cycle labels"""

    def test_days(self):
        assert deal_cycle(T0, T0 + timedelta(days=9, hours=3)) == ("9 d", 9)

    def test_hours(self):
        assert deal_cycle(T0, T0 + timedelta(hours=5, minutes=10)) == ("5 h", 0)

    def test_minutes(self):
        assert deal_cycle(T0, T0 + timedelta(minutes=45)) == ("45 min", 0)

    def test_months(self):
        assert deal_cycle(T0, T0 + timedelta(days=75)) == ("2 mo", 75)

    def test_thirty_days_is_one_month(self):
        assert deal_cycle(T0, T0 + timedelta(days=30)) == ("1 mo", 30)

    def test_sale_before_lead(self):
        assert deal_cycle(T0, T0 - timedelta(days=1)) == (DATE_ERROR, None)

    def test_missing_date(self):
        assert deal_cycle(None, T0) == (None, None)


class TestEarliestLeadIndex:
    """Test index_earliest_leads"""

    def test_earliest_lead_wins(self):
        leads = [
            make_lead(1, "42", "WEB", "2025-06-05T09:00:00+00:00"),
            make_lead(2, "42", "ADS", "2025-06-01T09:00:00+00:00"),
        ]
        assert index_earliest_leads(leads)["42"].id == "2"

    def test_first_seen_wins_tie(self):
        leads = [make_lead(1, "42", "WEB"), make_lead(2, "42", "ADS")]
        assert index_earliest_leads(leads)["42"].id == "1"

    def test_input_order_does_not_change_result(self):
        leads = [
            make_lead(1, "42", "WEB", "2025-06-05T09:00:00+00:00"),
            make_lead(2, "42", "ADS", "2025-06-01T09:00:00+00:00"),
            make_lead(3, "42", "WEB", "2025-06-03T09:00:00+00:00"),
        ]
        assert index_earliest_leads(leads)["42"].id == index_earliest_leads(leads[::-1])["42"].id

    def test_leads_without_contact_ignored(self):
        assert index_earliest_leads([make_lead(1, None, "WEB")]) == {}


class TestLinkSales:
    """Test link_sales attribution"""

    def test_sale_linked_to_earliest_lead(self):
        """Deal on 2025-06-10, lead on 2025-06-01 gives a nine day cycle"""
        result = link_sales([make_deal(1, contact="42")], [make_lead(7, "42", "ADS")], name_for)
        sale = result.sales[0]

        assert sale["linkMethod"] == LinkMethod.CONTACT_ID
        assert sale["sourceId"] == "ADS"
        assert sale["sourceName"] == "Advertising"
        assert sale["linkedLeadId"] == "7"
        assert sale["dealCycle"] == "9 d"
        assert sale["dealCycleDays"] == 9
        assert sale["saleDateFormatted"] == "10.06.2025"
        assert sale["leadDateFormatted"] == "01.06.2025"

    def test_deal_without_contact(self):
        result = link_sales([make_deal(1, contact=None)], [make_lead(7, "42", "ADS")], name_for)
        sale = result.sales[0]

        assert sale["linkMethod"] == LinkMethod.NO_CONTACT
        assert sale["sourceId"] == UNKNOWN_SOURCE
        assert sale["dealCycle"] == NO_DATA
        assert sale["dealCycleDays"] is None
        assert result.stats["dealCycleStats"]["salesWithCycleData"] == 0

    def test_contact_without_leads(self):
        result = link_sales([make_deal(1, contact="55")], [make_lead(7, "42", "ADS")], name_for)
        sale = result.sales[0]
        assert sale["linkMethod"] == LinkMethod.NO_LEADS_FOUND
        assert sale["leadDateFormatted"] == LEAD_NOT_FOUND

    def test_zero_contact_is_no_contact(self):
        result = link_sales([make_deal(1, contact="0")], [], name_for)
        assert result.sales[0]["linkMethod"] == LinkMethod.NO_CONTACT

    def test_date_error_when_sale_precedes_lead(self):
        deal = make_deal(1, contact="42", created="2025-05-01T00:00:00+00:00")
        result = link_sales([deal], [make_lead(7, "42", "ADS")], name_for)
        assert result.sales[0]["dealCycle"] == DATE_ERROR
        assert result.sales[0]["dealCycleDays"] is None
        assert result.sales[0]["linkMethod"] == LinkMethod.CONTACT_ID

    def test_one_output_per_deal_in_order(self):
        deals = [make_deal(i, contact=str(i)) for i in range(5)]
        result = link_sales(deals, [make_lead(100, "2", "WEB")], name_for)
        assert [s["id"] for s in result.sales] == ["0", "1", "2", "3", "4"]

    def test_stats(self):
        deals = [
            make_deal(1, contact="42"),
            make_deal(2, contact="43", created="2025-06-21T09:00:00+00:00"),
            make_deal(3, contact=None),
            make_deal(4, contact="99"),
        ]
        leads = [make_lead(7, "42", "ADS"), make_lead(8, "43", "WEB")]
        stats = link_sales(deals, leads, name_for).stats

        assert stats["totalLinked"] == 2
        assert stats["successRate"] == 50
        assert stats["byMethod"] == {
            LinkMethod.CONTACT_ID: 2,
            LinkMethod.NO_CONTACT: 1,
            LinkMethod.NO_LEADS_FOUND: 1,
        }
        assert stats["dealCycleStats"] == {"avgDays": 15, "minDays": 9, "maxDays": 20, "salesWithCycleData": 2}

    def test_success_rate_rounds_half_up(self):
        """One linked sale out of eight is 12.5%, reported as 13"""
        deals = [make_deal(1, contact="42")] + [make_deal(i, contact=None) for i in range(2, 9)]
        stats = link_sales(deals, [make_lead(7, "42", "ADS")], name_for).stats
        assert stats["successRate"] == 13

    def test_average_cycle_rounds_half_up(self):
        deals = [
            make_deal(1, contact="42", created="2025-06-02T09:00:00+00:00"),
            make_deal(2, contact="43", created="2025-06-05T09:00:00+00:00"),
        ]
        leads = [make_lead(7, "42", "ADS"), make_lead(8, "43", "ADS")]
        assert link_sales(deals, leads, name_for).stats["dealCycleStats"]["avgDays"] == 3

    def test_rerun_is_identical(self):
        deals = [make_deal(i, contact=str(i % 3)) for i in range(6)]
        leads = [
            make_lead(1, "1", "WEB"),
            make_lead(2, "1", "ADS"),
            make_lead(3, "2", "ADS", "2025-05-01T00:00:00+00:00"),
        ]
        assert link_sales(deals, leads, name_for).sales == link_sales(deals, leads, name_for).sales

    def test_empty(self):
        result = link_sales([], [], name_for)
        assert result.sales == []
        assert result.stats["successRate"] == 0


class TestGroupSalesBySource:
    """Test group_sales_by_source"""

    def test_grouping_and_sorting(self):
        deals = [
            make_deal(1, contact="42", amount="1000"),
            make_deal(2, contact="43", amount="3000"),
            make_deal(3, contact="44", amount="2000"),
            make_deal(4, contact=None, amount="500"),
        ]
        leads = [make_lead(7, "42", "ADS"), make_lead(8, "43", "WEB"), make_lead(9, "44", "WEB")]
        groups = group_sales_by_source(link_sales(deals, leads, name_for).sales)

        assert [g["sourceId"] for g in groups] == ["WEB", "ADS", UNKNOWN_SOURCE]
        web = groups[0]
        assert web["totalSales"] == 2
        assert web["totalAmount"] == 5000.0
        assert web["averageAmount"] == 2500
        assert sum(g["totalSales"] for g in groups) == len(deals)

    def test_average_amount_rounds_half_up(self):
        deals = [make_deal(1, contact="42", amount="1000"), make_deal(2, contact="43", amount="1001")]
        leads = [make_lead(7, "42", "ADS"), make_lead(8, "43", "ADS")]
        groups = group_sales_by_source(link_sales(deals, leads, name_for).sales)
        assert groups[0]["totalAmount"] == 2001.0
        assert groups[0]["averageAmount"] == 1001
