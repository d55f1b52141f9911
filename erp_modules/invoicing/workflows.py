"""
Customer Invoice Workflow.

State machine for the invoice lifecycle.  Payment application moves an
invoice between sent, partially_paid, and paid outside this table; the table
governs explicit status changes.
"""

from erp_kernel.domain.workflow import Guard, Transition, Workflow
from erp_kernel.logging_config import get_logger

logger = get_logger("modules.invoicing.workflows")


HAS_LINES = Guard(
    name="has_lines",
    description="Invoice has at least one active line",
)


CUSTOMER_INVOICE_WORKFLOW = Workflow(
    name="customer_invoice",
    description="Customer invoice lifecycle",
    initial_state="draft",
    states=(
        "draft",
        "sent",
        "partially_paid",
        "paid",
        "overdue",
        "voided",
        "cancelled",
    ),
    transitions=(
        Transition("draft", "sent", action="send", guard=HAS_LINES),
        Transition("draft", "cancelled", action="cancel"),
        Transition("sent", "partially_paid", action="record_partial_payment"),
        Transition("sent", "paid", action="mark_paid"),
        Transition("sent", "overdue", action="mark_overdue"),
        Transition("sent", "voided", action="void"),
        Transition("sent", "cancelled", action="cancel"),
        Transition("partially_paid", "paid", action="mark_paid"),
        Transition("partially_paid", "overdue", action="mark_overdue"),
        Transition("partially_paid", "voided", action="void"),
        Transition("partially_paid", "sent", action="reopen"),
        Transition("overdue", "partially_paid", action="record_partial_payment"),
        Transition("overdue", "paid", action="mark_paid"),
        Transition("overdue", "voided", action="void"),
        Transition("overdue", "cancelled", action="cancel"),
    ),
    terminal_states=("paid", "voided", "cancelled"),
    locked_states=("paid", "voided", "cancelled"),
)

logger.info(
    "customer_invoice_workflow_registered",
    extra={
        "workflow_name": CUSTOMER_INVOICE_WORKFLOW.name,
        "state_count": len(CUSTOMER_INVOICE_WORKFLOW.states),
        "transition_count": len(CUSTOMER_INVOICE_WORKFLOW.transitions),
        "initial_state": CUSTOMER_INVOICE_WORKFLOW.initial_state,
    },
)
