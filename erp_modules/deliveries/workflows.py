"""
Delivery Workflow.

State machine for the delivery lifecycle.  Shipping is the only transition
that writes stock.
"""

from erp_kernel.domain.workflow import Guard, Transition, Workflow
from erp_kernel.logging_config import get_logger

logger = get_logger("modules.deliveries.workflows")


HAS_LINES = Guard(
    name="has_lines",
    description="Delivery has at least one active line",
)


DELIVERY_WORKFLOW = Workflow(
    name="delivery",
    description="Delivery lifecycle",
    initial_state="pending",
    states=(
        "pending",
        "in_preparation",
        "ready_to_ship",
        "shipped",
        "delivered",
        "cancelled",
        "failed_delivery",
    ),
    transitions=(
        Transition("pending", "in_preparation", action="prepare"),
        Transition("pending", "ready_to_ship", action="mark_ready"),
        Transition("pending", "shipped", action="ship", guard=HAS_LINES, writes_stock=True),
        Transition("pending", "cancelled", action="cancel"),
        Transition("in_preparation", "ready_to_ship", action="mark_ready"),
        Transition("in_preparation", "shipped", action="ship", guard=HAS_LINES, writes_stock=True),
        Transition("in_preparation", "cancelled", action="cancel"),
        Transition("ready_to_ship", "shipped", action="ship", guard=HAS_LINES, writes_stock=True),
        Transition("ready_to_ship", "cancelled", action="cancel"),
        Transition("shipped", "delivered", action="mark_delivered"),
        Transition("shipped", "failed_delivery", action="mark_failed"),
    ),
    terminal_states=("delivered", "cancelled", "failed_delivery"),
    locked_states=("shipped", "delivered", "cancelled"),
)

logger.info(
    "delivery_workflow_registered",
    extra={
        "workflow_name": DELIVERY_WORKFLOW.name,
        "state_count": len(DELIVERY_WORKFLOW.states),
        "transition_count": len(DELIVERY_WORKFLOW.transitions),
        "initial_state": DELIVERY_WORKFLOW.initial_state,
    },
)
