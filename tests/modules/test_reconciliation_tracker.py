"""
Tests for the quantity reconciliation tracker.

The tracker is exercised both directly and through the delivery and
invoice services, which are its only production callers.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from erp_kernel.exceptions import QuantityExceedsRemainingError
from erp_modules.deliveries.orm import DeliveryItemModel
from erp_modules.invoicing.models import CustomerInvoiceInput, CustomerInvoiceItemInput
from erp_modules.reconciliation.models import (
    QuantityBasis,
    ReconciliationEffect,
    RemainingQuantity,
)
from erp_modules.reconciliation.service import SALES_ORDER_ITEM
from erp_modules.sales.models import SalesOrderStatus
from erp_modules.sales.orm import SalesOrderItemModel, SalesOrderModel


def _so_item(session, item_id) -> SalesOrderItemModel:
    return session.get(SalesOrderItemModel, item_id)


def _recomputed(records: list[dict]) -> list[dict]:
    return [
        r for r in records
        if r["message"] == "accumulator_recomputed" and r["field"] == "quantity_shipped"
    ]


class TestRemainingShippable:

    def test_second_delivery_over_remaining_rejected(
        self, make_order, make_delivery, sales_service,
    ):
        order = make_order("10")
        item_id = order.items[0].id

        make_delivery(order, {item_id: "6"})
        line = sales_service.get_order(order.id).items[0]
        assert line.quantity_shipped == Decimal("6")
        assert line.remaining_to_ship == Decimal("4")

        with pytest.raises(QuantityExceedsRemainingError) as exc_info:
            make_delivery(order, {item_id: "5"})
        error = exc_info.value
        assert error.remaining == Decimal("4")
        assert error.ordered == Decimal("10")
        assert error.committed == Decimal("6")
        assert "Already shipped" in str(error)

        assert sales_service.get_order(order.id).items[0].quantity_shipped == Decimal("6")

    def test_exact_remaining_accepted(self, make_order, make_delivery, sales_service):
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "6"})
        make_delivery(order, {item_id: "4"})
        assert sales_service.get_order(order.id).items[0].quantity_shipped == Decimal("10")

    def test_excluding_the_edited_delivery(self, make_order, make_delivery, tracker, session):
        order = make_order("10")
        item_id = order.items[0].id
        delivery = make_delivery(order, {item_id: "6"})

        so_item = _so_item(session, item_id)
        assert tracker.remaining_shippable(so_item).remaining == Decimal("4")
        assert tracker.remaining_shippable(
            so_item, excluding_delivery_id=delivery.id,
        ).remaining == Decimal("10")

    def test_cancelled_delivery_commits_nothing(
        self, make_order, make_delivery, delivery_service, tracker, session, refs,
    ):
        order = make_order("10")
        item_id = order.items[0].id
        delivery = make_delivery(order, {item_id: "6"})
        delivery_service.cancel_delivery(delivery.id, refs.user_id)

        assert tracker.committed_shipped(item_id) == Decimal("0")
        assert _so_item(session, item_id).quantity_shipped == Decimal("0")


class TestCheckWithinRemaining:

    def test_allows_up_to_remaining(self, tracker):
        remaining = RemainingQuantity(
            upstream_id=None, ordered=Decimal("10"), committed=Decimal("6"),
            remaining=Decimal("4"),
        )
        tracker.check_within_remaining(
            ReconciliationEffect.SHIP, SALES_ORDER_ITEM, Decimal("4"), remaining,
        )

    def test_invoice_wording(self, tracker, captured_logs):
        remaining = RemainingQuantity(
            upstream_id="line-1", ordered=Decimal("3"), committed=Decimal("3"),
            remaining=Decimal("0"),
        )
        with pytest.raises(QuantityExceedsRemainingError, match="Already invoiced: 3"):
            tracker.check_within_remaining(
                ReconciliationEffect.INVOICE, SALES_ORDER_ITEM, Decimal("1"), remaining,
            )
        warnings = [r for r in captured_logs() if r["message"] == "quantity_exceeds_remaining"]
        assert warnings[0]["effect"] == "invoice"


class TestRecompute:

    def test_recompute_is_idempotent(
        self, make_order, make_delivery, tracker, session, captured_logs,
    ):
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "6"})
        so_item = _so_item(session, item_id)
        written_by_create = len(_recomputed(captured_logs()))

        first = tracker.recompute_quantity_shipped(so_item)
        second = tracker.recompute_quantity_shipped(so_item)

        assert first == second == Decimal("6")
        # Both recomputes found the accumulator already correct.
        assert len(_recomputed(captured_logs())) == written_by_create

    def test_repairs_a_drifted_accumulator(self, make_order, make_delivery, tracker, session):
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "6"})
        so_item = _so_item(session, item_id)
        so_item.quantity_shipped = Decimal("2")
        session.flush()

        assert tracker.recompute_quantity_shipped(so_item) == Decimal("6")
        assert so_item.quantity_shipped == Decimal("6")

    def test_decrease_never_fails(self, make_order, make_delivery, tracker, session):
        """A line already over its ceiling can still be recomputed downwards."""
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "6"})
        so_item = _so_item(session, item_id)
        so_item.quantity = Decimal("4")
        so_item.quantity_shipped = Decimal("8")
        session.flush()

        assert tracker.recompute_quantity_shipped(so_item) == Decimal("6")

    def test_increase_past_ceiling_rejected(
        self, make_order, make_delivery, tracker, session, captured_logs,
    ):
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "6"})
        so_item = _so_item(session, item_id)
        so_item.quantity = Decimal("4")
        so_item.quantity_shipped = Decimal("0")
        session.flush()

        with pytest.raises(QuantityExceedsRemainingError):
            tracker.recompute_quantity_shipped(so_item)
        assert so_item.quantity_shipped == Decimal("0")
        assert any(r["message"] == "accumulator_bound_violated" for r in captured_logs())

    def test_recompute_for_items_skips_unknown_ids(self, tracker):
        tracker.recompute_for_items([uuid4()], ReconciliationEffect.INVOICE)


class TestRemainingInvoiceable:

    def test_ordered_basis(self, make_order, invoice_service, tracker, session, refs):
        order = make_order("10")
        item_id = order.items[0].id
        invoice_service.create_invoice(
            CustomerInvoiceInput(
                customer_id=refs.customer_id,
                items=(CustomerInvoiceItemInput(
                    quantity=Decimal("7"), unit_price_ht=Decimal("10"),
                    sales_order_item_id=item_id,
                ),),
            ),
            refs.user_id,
        )

        so_item = _so_item(session, item_id)
        assert so_item.quantity_invoiced == Decimal("7")
        remaining = tracker.remaining_invoiceable_for_order_item(so_item)
        assert remaining.ordered == Decimal("10")
        assert remaining.remaining == Decimal("3")

    def test_shipped_basis(self, make_order, make_delivery, tracker, session):
        order = make_order("10")
        item_id = order.items[0].id
        make_delivery(order, {item_id: "4"})

        remaining = tracker.remaining_invoiceable_for_order_item(
            _so_item(session, item_id), basis=QuantityBasis.SHIPPED,
        )
        assert remaining.ordered == Decimal("4")
        assert remaining.remaining == Decimal("4")

    def test_cancelled_delivery_line_has_no_ceiling(
        self, make_order, make_delivery, delivery_service, tracker, session, refs,
    ):
        order = make_order("10")
        delivery = make_delivery(order, {order.items[0].id: "4"})
        delivery_service.cancel_delivery(delivery.id, refs.user_id)

        delivery_item = session.get(DeliveryItemModel, delivery.items[0].id)
        remaining = tracker.remaining_invoiceable_for_delivery_item(delivery_item)
        assert remaining.ordered == Decimal("0")
        assert remaining.remaining == Decimal("0")


class TestOrderShippingStatus:

    def test_nothing_shipped(self, make_order, make_delivery, tracker, session):
        order = make_order("10")
        make_delivery(order, {order.items[0].id: "10"})
        # A pending delivery commits quantity but has not shipped anything.
        assert tracker.order_shipping_status(session.get(SalesOrderModel, order.id)) is None

    def test_fully_and_partially_shipped(
        self, make_order, make_delivery, delivery_service, tracker, session, refs,
    ):
        order = make_order("10", "5")
        first, second = order.items
        delivery = make_delivery(order, {first.id: "10", second.id: "2"})
        delivery_service.ship_delivery(delivery.id, refs.user_id)

        model = session.get(SalesOrderModel, order.id)
        assert tracker.shipped_by_item(order.id) == {
            first.id: Decimal("10"), second.id: Decimal("2"),
        }
        assert tracker.order_shipping_status(model) is SalesOrderStatus.PARTIALLY_SHIPPED

        rest = make_delivery(order, {second.id: "3"})
        delivery_service.ship_delivery(rest.id, refs.user_id)
        assert tracker.order_shipping_status(model) is SalesOrderStatus.FULLY_SHIPPED
