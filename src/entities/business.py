"""
src/entities/business.py - reference CRM & projects workspace

Clients, invoices and tasks exposed as entities, with the custom operations
the assistant needs on top of plain queries and writes:
- find_client(query, top_k): fuzzy match on client names (RapidFuzz)
- create_invoice(...): compute totals/VAT, number the invoice, save as draft
- mark_paid(number): flip an invoice to "paid"
- chase_late_payers(as_of): find overdue invoices and draft reminder messages

Key ideas:

1) Fuzzy matching (RapidFuzz)
   We compare the user's text to stored client names and produce a similarity
   score (0-100). This lets us match "Acme" to "Acme Ltd" even if the text
   doesn't match exactly.

2) RBAC
   Sensitive operations are gated by the role matrix in entities.permissions;
   the provider checks it before any handler runs.

Usage:
    provider = build_provider()
    toolkit = tools.registry.build(provider, ToolSelection(actor={"role": "owner"}))
"""


import logging
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz, process, utils

from config import DEFAULT_TERM_DAYS, Currency, format_money
from entities import diagnostics
from entities.errors import FieldError, InvalidError, NotFoundError
from entities.loader import load_workspace
from entities.memory import InMemoryActionProvider, Record
from entities.metadata import EntityMeta, FieldMeta, Kind, Namespace, OperationMeta, RelationshipMeta
from entities.permissions import RolePolicy
from tools.definition import IdentitySpec, ToolDefinition


logger = logging.getLogger(__name__)

NAMESPACE = "business"
CURRENCIES = [c.value for c in Currency]
INVOICE_STATUSES = ["draft", "sent", "paid"]
TASK_STATUSES = ["todo", "doing", "done"]


# --- Entities ------------------------------------------------------------------
CLIENT = EntityMeta(
    name="Client",
    description="A customer we invoice and run projects for.",
    fields=[
        FieldMeta(name="id", type="string", writable=False),
        FieldMeta(name="name", type="string", allow_nil=False),
        FieldMeta(name="email", type="string"),
        FieldMeta(name="currency", type="string", enum=CURRENCIES),
        FieldMeta(name="default_vat", type="number", description="VAT as a decimal, e.g. 0.2 for 20%."),
        FieldMeta(name="notes", type="string", public=False),
    ],
    relationships=[
        RelationshipMeta(name="invoices", destination="Invoice", source_field="id", destination_field="client_id"),
    ],
    operations=[
        OperationMeta(name="list_clients", kind=Kind.QUERY, description="List clients."),
        OperationMeta(
            name="find_client",
            kind=Kind.CUSTOM,
            description="Find best-matching clients for a free-text query.",
            arguments=[
                FieldMeta(name="query", type="string", allow_nil=False, description="Free text, e.g. 'acme'."),
                FieldMeta(name="top_k", type="integer", default=5),
            ],
            returns="Client",
        ),
    ],
)

INVOICE = EntityMeta(
    name="Invoice",
    description="An invoice issued to a client.",
    fields=[
        FieldMeta(name="id", type="string", writable=False),
        FieldMeta(name="client_id", type="string", allow_nil=False),
        FieldMeta(name="number", type="string", writable=False),
        FieldMeta(name="date", type="date"),
        FieldMeta(name="due_days", type="integer", default=DEFAULT_TERM_DAYS),
        FieldMeta(name="currency", type="string", enum=CURRENCIES),
        FieldMeta(name="vat_rate", type="number"),
        FieldMeta(name="line_items", type="array", items="map", filterable=False, sortable=False),
        FieldMeta(name="subtotal", type="number"),
        FieldMeta(name="vat", type="number"),
        FieldMeta(name="total", type="number"),
        FieldMeta(name="status", type="string", enum=INVOICE_STATUSES, default="draft"),
        FieldMeta(name="notes", type="string", public=False),
    ],
    identities={"number": ["number"]},
    relationships=[
        RelationshipMeta(name="client", destination="Client", source_field="client_id", destination_field="id", many=False),
    ],
    operations=[
        OperationMeta(name="list_invoices", kind=Kind.QUERY, description="List invoices.", default_limit=10),
        OperationMeta(
            name="create_invoice",
            kind=Kind.CUSTOM,
            description="Create a draft invoice for a client. Currency and VAT default from the client.",
            arguments=[
                FieldMeta(name="client_id", type="string", allow_nil=False),
                FieldMeta(name="currency", type="string", enum=CURRENCIES),
                FieldMeta(name="vat_rate", type="number", description="VAT as a decimal, e.g. 0.2 for 20%."),
                FieldMeta(
                    name="line_items",
                    type="array",
                    items="map",
                    allow_nil=False,
                    description="List of {description, qty, unit_price}.",
                ),
                FieldMeta(name="due_days", type="integer", default=DEFAULT_TERM_DAYS),
                FieldMeta(name="notes", type="string"),
                FieldMeta(name="invoice_date", type="date", description="Defaults to today."),
            ],
            returns="Invoice",
        ),
        OperationMeta(
            name="mark_paid",
            kind=Kind.CUSTOM,
            description="Mark an invoice as paid.",
            arguments=[FieldMeta(name="number", type="string", allow_nil=False, description="e.g. INV-2025-079")],
            returns="Invoice",
        ),
        OperationMeta(
            name="chase_late_payers",
            kind=Kind.CUSTOM,
            description="Find overdue invoices and draft polite reminder messages.",
            arguments=[FieldMeta(name="as_of", type="date", description="Defaults to today.")],
            returns="map",
        ),
    ],
)

TASK = EntityMeta(
    name="Task",
    description="A unit of project work.",
    fields=[
        FieldMeta(name="id", type="string", writable=False),
        FieldMeta(name="project", type="string", allow_nil=False),
        FieldMeta(name="title", type="string", allow_nil=False),
        FieldMeta(name="status", type="string", enum=TASK_STATUSES, default="todo"),
        FieldMeta(name="assignee", type="string"),
        FieldMeta(name="due_date", type="date"),
    ],
    operations=[
        OperationMeta(name="list_tasks", kind=Kind.QUERY, description="List tasks."),
        OperationMeta(
            name="list_open_tasks",
            kind=Kind.QUERY,
            description="List tasks that are not done.",
            filter={"status": {"not_eq": "done"}},
        ),
        OperationMeta(
            name="create_task",
            kind=Kind.CREATE,
            description="Create a new task in a project.",
            accept=["project", "title", "status", "assignee", "due_date"],
        ),
        OperationMeta(
            name="move_task",
            kind=Kind.UPDATE,
            description="Move a task to a new status.",
            accept=["status"],
        ),
        OperationMeta(name="delete_task", kind=Kind.DELETE, description="Delete a task."),
    ],
)


def business_namespace() -> Namespace:

    return Namespace(
        name=NAMESPACE,
        entities=(CLIENT, INVOICE, TASK),
        tools=(
            ToolDefinition(name="find_client", entity="Client", operation="find_client"),
            ToolDefinition(name="list_clients", entity="Client", operation="list_clients"),
            ToolDefinition(name="list_invoices", entity="Invoice", operation="list_invoices", load=["client"]),
            ToolDefinition(name="create_invoice", entity="Invoice", operation="create_invoice"),
            ToolDefinition(name="mark_paid", entity="Invoice", operation="mark_paid"),
            ToolDefinition(name="chase_late_payers", entity="Invoice", operation="chase_late_payers"),
            ToolDefinition(name="list_tasks", entity="Task", operation="list_tasks"),
            ToolDefinition(
                name="list_open_tasks",
                entity="Task",
                operation="list_open_tasks",
                action_parameters=["filter", "sort", "limit"],
            ),
            ToolDefinition(name="create_task", entity="Task", operation="create_task"),
            ToolDefinition(name="move_task", entity="Task", operation="move_task", identity=IdentitySpec.default()),
            ToolDefinition(name="delete_task", entity="Task", operation="delete_task"),
        ),
    )


# --- Private helpers -----------------------------------------------------------
def _get_client(provider: InMemoryActionProvider, client_id: str) -> Optional[Record]:

    return next((c for c in provider.records("Client") if c["id"] == client_id), None)

def _next_invoice_suffix(existing_numbers: List[str]) -> int:
    """
    Determine the next invoice suffix from existing invoice numbers.

    We parse numbers like 'INV-2025-081' and take the largest trailing integer,
    then add 1. If none are found, we start at 81 to match sample data.
    """

    best = 0

    for n in existing_numbers:
        m = re.search(r"(\d+)$", n)
        if m:
            best = max(best, int(m.group(1)))

    return best + 1 if best else 81

def _format_invoice_number(today: date, next_suffix: int) -> str:
    """Create the external-facing invoice number, e.g., 'INV-2025-082'."""

    return f"INV-{today.year}-{next_suffix:03d}"

def _compute_totals(line_items: List[Dict[str, Any]], vat_rate: float) -> Dict[str, float]:
    """
    subtotal = sum(qty * unit_price)
    vat      = subtotal * vat_rate
    total    = subtotal + vat
    """

    subtotal = sum(float(li["qty"]) * float(li["unit_price"]) for li in line_items)
    vat = round(subtotal * float(vat_rate), 2)
    total = round(subtotal + vat, 2)

    return {"subtotal": round(subtotal, 2), "vat": vat, "total": total}

def _check_line_items(line_items: List[Any]) -> None:

    errors = []

    for i, li in enumerate(line_items):
        if not isinstance(li, dict):
            errors.append(FieldError("line_items", "must be an object", pointer=f"/input/line_items/{i}"))
            continue
        for key in ("description", "qty", "unit_price"):
            if li.get(key) is None:
                errors.append(FieldError("line_items", f"is missing '{key}'", pointer=f"/input/line_items/{i}", code="required", title="Required"))
        for key in ("qty", "unit_price"):
            value = li.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                errors.append(FieldError("line_items", f"'{key}' must be a number", pointer=f"/input/line_items/{i}"))

    if not line_items:
        errors.append(FieldError("line_items", "needs at least one line item"))

    if errors:
        raise InvalidError(errors)

def overdue_invoices(invoices: List[Record], today: date) -> List[Record]:
    """Naive overdue: date + due_days < today and status != paid."""

    overdue = []

    for inv in invoices:
        due_by = date.fromisoformat(inv["date"]) + timedelta(days=int(inv.get("due_days") or DEFAULT_TERM_DAYS))
        if due_by < today and inv.get("status") != "paid":
            overdue.append(inv)

    return overdue


# --- Handlers ------------------------------------------------------------------
def find_client(provider: InMemoryActionProvider, args: Dict[str, Any], ctx: Any) -> List[Record]:
    """Return up to `top_k` best-matching clients for a free-text query, best first."""

    clients = provider.records("Client")
    names = [c["name"] for c in clients]
    top_k = max(1, args.get("top_k") or 5)

    # matches: [(name, score, index)]
    matches = process.extract(args["query"], names, scorer=fuzz.WRatio, processor=utils.default_process, limit=top_k)

    return [clients[idx] for _name, _score, idx in matches]

def create_invoice(provider: InMemoryActionProvider, args: Dict[str, Any], ctx: Any) -> Record:
    """
    Create a **draft** invoice.

    Steps:
        1) Look up the client and apply its defaults (currency/VAT if missing).
        2) Generate a human-friendly invoice number (e.g., INV-2025-082).
        3) Compute subtotal, VAT, and total from the line items.
        4) Save the invoice.
    """

    client = _get_client(provider, args["client_id"])

    if client is None:
        raise NotFoundError("Client", {"id": args["client_id"]})

    _check_line_items(args["line_items"])

    currency = args.get("currency") or client.get("currency") or Currency.USD.value
    vat_rate = float(args["vat_rate"] if args.get("vat_rate") is not None else client.get("default_vat") or 0.0)
    invoice_date = date.fromisoformat(args["invoice_date"]) if args.get("invoice_date") else date.today()

    invoices = provider.records("Invoice")
    next_suffix = _next_invoice_suffix([inv.get("number") or "" for inv in invoices])

    invoice = {
        "id": f"inv_{invoice_date.year}_{next_suffix:03d}",
        "client_id": client["id"],
        "number": _format_invoice_number(invoice_date, next_suffix),
        "date": invoice_date.isoformat(),
        "due_days": int(args.get("due_days") or DEFAULT_TERM_DAYS),
        "currency": currency,
        "vat_rate": vat_rate,
        "line_items": args["line_items"],
        "status": "draft",
        "notes": args.get("notes"),
        **_compute_totals(args["line_items"], vat_rate),
    }
    invoices.append(invoice)

    logger.info(
        "Draft invoice %s for %s: %s",
        invoice["number"], client["name"], format_money(invoice["total"], Currency(currency)),
    )

    return invoice

def mark_paid(provider: InMemoryActionProvider, args: Dict[str, Any], ctx: Any) -> Record:

    invoice = next((inv for inv in provider.records("Invoice") if inv.get("number") == args["number"]), None)

    if invoice is None:
        raise NotFoundError("Invoice", {"number": args["number"]})

    invoice["status"] = "paid"

    return invoice

def chase_late_payers(provider: InMemoryActionProvider, args: Dict[str, Any], ctx: Any) -> Dict[str, Any]:
    """
    Find overdue invoices and propose polite reminder messages.

    Returns:
        {
          "count_overdue": <int>,
          "reminders": [
             {"client_id", "client_name", "invoice_number", "due_date",
              "amount" (formatted with currency), "message_subject", "message_body"},
             ...
          ]
        }
    """

    today = date.fromisoformat(args["as_of"]) if args.get("as_of") else date.today()
    overdue = overdue_invoices(provider.records("Invoice"), today)

    reminders = []
    for inv in overdue:
        client = _get_client(provider, inv["client_id"]) or {"name": "Unknown client"}
        due_by = date.fromisoformat(inv["date"]) + timedelta(days=int(inv.get("due_days") or DEFAULT_TERM_DAYS))
        amount = format_money(inv["total"], Currency(inv["currency"]))
        body = (
            f"Hi {client['name']},\n\n"
            f"This is a friendly reminder that invoice {inv['number']} "
            f"({amount}) was due on {due_by.isoformat()}.\n\n"
            f"Could you please arrange payment at your earliest convenience? "
            f"Let me know if you need us to resend the invoice.\n\n"
            f"Best regards,\nAccounts"
        )
        reminders.append({
            "client_id": inv["client_id"],
            "client_name": client["name"],
            "invoice_number": inv["number"],
            "due_date": due_by.isoformat(),
            "amount": amount,
            "message_subject": f"Overdue: {inv['number']} ({client['name']})",
            "message_body": body,
        })

    return {"count_overdue": len(overdue), "reminders": reminders}


# --- Public API ----------------------------------------------------------------
def build_provider(records: Optional[Dict[str, List[Record]]] = None, *, policy: Any = None) -> InMemoryActionProvider:
    """
    Provider over the business namespace plus the diagnostic tools.

    Args:
        records: Seed records by entity name (defaults to data/workspace.json).
        policy: Authorization callable (defaults to RolePolicy over ACTION_MATRIX).
    """

    if records is None:
        records = load_workspace().records()

    provider = InMemoryActionProvider(
        [business_namespace(), diagnostics.diagnostics_namespace()],
        records,
        policy=policy or RolePolicy(),
    )
    provider.register_handler("Client", "find_client", find_client)
    provider.register_handler("Invoice", "create_invoice", create_invoice)
    provider.register_handler("Invoice", "mark_paid", mark_paid)
    provider.register_handler("Invoice", "chase_late_payers", chase_late_payers)
    diagnostics.install(provider)

    return provider
