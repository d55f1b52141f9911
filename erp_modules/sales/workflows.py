"""
Sales Order Workflow.

State machine for the sales order lifecycle.  ``writes_stock`` marks the
transitions that append reservation or reversal movements.
"""

from erp_kernel.domain.workflow import Guard, Transition, Workflow
from erp_kernel.logging_config import get_logger

logger = get_logger("modules.sales.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

HAS_ITEMS = Guard(
    name="has_items",
    description="Order has at least one active line",
)

READY_FOR_PREPARATION = Guard(
    name="ready_for_preparation",
    description="Order is approved or its payment has been received",
)


# -----------------------------------------------------------------------------
# Sales Order Workflow
# -----------------------------------------------------------------------------

SALES_ORDER_WORKFLOW = Workflow(
    name="sales_order",
    description="Sales order lifecycle",
    initial_state="draft",
    states=(
        "draft",
        "pending_approval",
        "approved",
        "payment_pending",
        "payment_received",
        "in_preparation",
        "partially_shipped",
        "fully_shipped",
        "invoiced",
        "completed",
        "cancelled",
    ),
    transitions=(
        Transition("draft", "pending_approval", action="submit", guard=HAS_ITEMS),
        Transition("draft", "approved", action="approve", guard=HAS_ITEMS, writes_stock=True),
        Transition("draft", "cancelled", action="cancel"),
        Transition("pending_approval", "approved", action="approve", guard=HAS_ITEMS, writes_stock=True),
        Transition("pending_approval", "draft", action="return_to_draft"),
        Transition("pending_approval", "cancelled", action="cancel"),
        Transition("approved", "payment_pending", action="await_payment"),
        Transition("approved", "payment_received", action="receive_payment"),
        Transition("approved", "in_preparation", action="prepare", guard=READY_FOR_PREPARATION),
        Transition("approved", "partially_shipped", action="ship"),
        Transition("approved", "fully_shipped", action="ship"),
        Transition("approved", "cancelled", action="cancel", writes_stock=True),  # reversal
        Transition("payment_pending", "payment_received", action="receive_payment"),
        Transition("payment_pending", "cancelled", action="cancel", writes_stock=True),  # reversal
        Transition("payment_received", "in_preparation", action="prepare", guard=READY_FOR_PREPARATION),
        Transition("payment_received", "partially_shipped", action="ship"),
        Transition("payment_received", "fully_shipped", action="ship"),
        Transition("payment_received", "cancelled", action="cancel", writes_stock=True),  # reversal
        Transition("in_preparation", "partially_shipped", action="ship"),
        Transition("in_preparation", "fully_shipped", action="ship"),
        Transition("in_preparation", "cancelled", action="cancel", writes_stock=True),  # reversal
        Transition("partially_shipped", "fully_shipped", action="ship"),
        Transition("partially_shipped", "invoiced", action="invoice"),
        Transition("partially_shipped", "completed", action="complete"),
        Transition("invoiced", "completed", action="complete"),
    ),
    terminal_states=("fully_shipped", "completed", "cancelled"),
    locked_states=("fully_shipped", "completed", "cancelled"),
)

logger.info(
    "sales_order_workflow_registered",
    extra={
        "workflow_name": SALES_ORDER_WORKFLOW.name,
        "state_count": len(SALES_ORDER_WORKFLOW.states),
        "transition_count": len(SALES_ORDER_WORKFLOW.transitions),
        "initial_state": SALES_ORDER_WORKFLOW.initial_state,
    },
)
