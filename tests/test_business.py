"""
tests/test_business.py

The reference workspace: client search, invoicing, reminders, tasks and roles.
"""


import json
from datetime import date

import pytest

from entities import business
from entities.business import build_provider, overdue_invoices
from entities.loader import load_workspace
from entities.permissions import has_permission, role_of
from tools.registry import ToolSelection, build


OWNER = {"role": "owner"}


@pytest.fixture
def workspace():

    return build_provider()

@pytest.fixture
def owner_tools(workspace):

    return build(workspace, ToolSelection(actor=OWNER)).registry

def call(tools, name, **arguments):

    return tools[name](json.dumps(arguments))


def test_workspace_loads():

    ws = load_workspace()

    assert [c["id"] for c in ws.clients] == ["c_acme", "c_globex", "c_initech", "c_umbrella"]
    assert set(ws.records()) == {"Client", "Invoice", "Task"}

def test_workspace_requires_its_sections(tmp_path):

    path = tmp_path / "workspace.json"
    path.write_text(json.dumps({"clients": [], "invoices": []}), encoding="utf-8")

    with pytest.raises(ValueError, match="tasks"):
        load_workspace(path)

    with pytest.raises(FileNotFoundError):
        load_workspace(tmp_path / "missing.json")


class TestFindClient:

    def test_best_match_first(self, owner_tools):

        result = call(owner_tools, "find_client", input={"query": "acme"})
        clients = json.loads(result.json)

        assert result.ok
        assert clients[0]["id"] == "c_acme"
        assert "notes" not in clients[0]

    def test_top_k(self, owner_tools):

        clients = json.loads(call(owner_tools, "find_client", input={"query": "globex corp", "top_k": 2}).json)

        assert len(clients) == 2
        assert clients[0]["id"] == "c_globex"

    def test_query_is_required(self, owner_tools):

        result = call(owner_tools, "find_client", input={})

        assert not result.ok
        assert result.errors[0]["code"] == "required"
        assert result.errors[0]["source"] == {"pointer": "/input/query"}


class TestCreateInvoice:

    def test_totals_and_numbering(self, workspace, owner_tools):

        result = call(owner_tools, "create_invoice", input={
            "client_id": "c_acme",
            "line_items": [{"description": "Consulting", "qty": 2, "unit_price": 100}],
            "invoice_date": "2025-09-01",
        })
        invoice = json.loads(result.json)

        assert result.ok
        assert invoice["number"] == "INV-2025-082"
        assert invoice["currency"] == "GBP"
        assert (invoice["subtotal"], invoice["vat"], invoice["total"]) == (200.0, 40.0, 240.0)
        assert invoice["status"] == "draft"
        assert "notes" not in invoice
        assert workspace.records("Invoice")[-1]["id"] == "inv_2025_082"

    def test_explicit_vat_and_currency(self, owner_tools):

        invoice = json.loads(call(owner_tools, "create_invoice", input={
            "client_id": "c_acme",
            "currency": "EUR",
            "vat_rate": 0,
            "line_items": [{"description": "Hosting", "qty": 1, "unit_price": 50}],
        }).json)

        assert invoice["currency"] == "EUR"
        assert invoice["total"] == 50.0

    def test_unknown_client(self, owner_tools):

        result = call(owner_tools, "create_invoice", input={
            "client_id": "c_nobody",
            "line_items": [{"description": "x", "qty": 1, "unit_price": 1}],
        })

        assert result.errors[0]["status"] == 404
        assert result.errors[0]["meta"] == {"entity": "Client", "identity": {"id": "c_nobody"}}

    def test_bad_line_items(self, owner_tools):

        result = call(owner_tools, "create_invoice", input={
            "client_id": "c_acme",
            "line_items": [{"description": "ok", "qty": 1, "unit_price": 1}, {"description": "bad", "qty": "two"}],
        })
        pointers = [e["source"]["pointer"] for e in result.errors]

        assert not result.ok
        assert pointers == ["/input/line_items/1", "/input/line_items/1"]

    def test_no_line_items(self, owner_tools):

        result = call(owner_tools, "create_invoice", input={"client_id": "c_acme", "line_items": []})

        assert result.errors[0]["source"] == {"pointer": "/input/line_items"}


class TestLatePayers:

    def test_reminders(self, owner_tools):

        out = json.loads(call(owner_tools, "chase_late_payers", input={"as_of": "2025-09-01"}).json)

        assert out["count_overdue"] == 3
        assert [r["invoice_number"] for r in out["reminders"]] == ["INV-2025-079", "INV-2025-080", "INV-2025-081"]

        first = out["reminders"][0]
        assert first["due_date"] == "2025-07-15"
        assert first["amount"] == "£1,440.00"
        assert first["message_subject"] == "Overdue: INV-2025-079 (Acme Ltd)"
        assert "Hi Acme Ltd" in first["message_body"]

    def test_paid_invoices_are_not_chased(self, owner_tools):

        paid = json.loads(call(owner_tools, "mark_paid", input={"number": "INV-2025-080"}).json)
        out = json.loads(call(owner_tools, "chase_late_payers", input={"as_of": "2025-09-01"}).json)

        assert paid["status"] == "paid"
        assert [r["invoice_number"] for r in out["reminders"]] == ["INV-2025-079", "INV-2025-081"]

    def test_nothing_due_yet(self, owner_tools):

        out = json.loads(call(owner_tools, "chase_late_payers", input={"as_of": "2025-07-10"}).json)

        assert out == {"count_overdue": 0, "reminders": []}

    def test_mark_paid_unknown_number(self, owner_tools):

        result = call(owner_tools, "mark_paid", input={"number": "INV-1999-001"})

        assert result.errors[0]["code"] == "not_found"

    def test_overdue_invoices_helper(self):

        invoices = [
            {"date": "2025-01-01", "due_days": 10, "status": "sent"},
            {"date": "2025-01-01", "due_days": None, "status": "sent"},
            {"date": "2025-01-20", "due_days": 30, "status": "sent"},
        ]

        assert overdue_invoices(invoices, date(2025, 1, 16)) == invoices[:2]


class TestTasksAndInvoicesQueries:

    def test_open_tasks(self, owner_tools):

        tasks = json.loads(call(owner_tools, "list_open_tasks").json)

        assert [t["id"] for t in tasks] == ["t_1", "t_2", "t_4"]

    def test_open_tasks_ignores_offset(self, owner_tools):

        tasks = json.loads(call(owner_tools, "list_open_tasks", offset=2, limit=1).json)

        assert [t["id"] for t in tasks] == ["t_1"]

    def test_move_task(self, owner_tools):

        moved = json.loads(call(owner_tools, "move_task", id="t_1", input={"status": "done"}).json)
        still_open = json.loads(call(owner_tools, "list_open_tasks").json)

        assert moved["status"] == "done"
        assert "t_1" not in [t["id"] for t in still_open]

    def test_create_task_defaults_to_todo(self, owner_tools):

        task = json.loads(call(owner_tools, "create_task", input={"project": "Acme website", "title": "Pick fonts"}).json)

        assert task["status"] == "todo"
        assert task["id"]

    def test_invoices_load_their_client(self, owner_tools):

        invoices = json.loads(call(owner_tools, "list_invoices", sort=[{"field": "number", "direction": "desc"}], limit=1).json)

        assert invoices[0]["number"] == "INV-2025-081"
        assert invoices[0]["client"]["name"] == "Umbrella Studio"
        assert "notes" not in invoices[0]["client"]


class TestRoles:

    @pytest.mark.parametrize("role, visible, hidden", [
        ("owner", {"create_invoice", "delete_task"}, set()),
        ("manager", {"mark_paid", "delete_task"}, set()),
        ("member", {"create_task", "move_task"}, {"create_invoice", "delete_task"}),
        ("viewer", {"list_invoices", "find_client"}, {"create_task", "mark_paid", "chase_late_payers"}),
    ])
    def test_toolkit_follows_the_matrix(self, workspace, role, visible, hidden):

        names = set(build(workspace, ToolSelection(actor={"role": role})).names)

        assert visible <= names
        assert not hidden & names

    def test_role_of(self):

        class User:
            role = "manager"

        assert role_of("viewer") == "viewer"
        assert role_of({"role": "owner"}) == "owner"
        assert role_of(User()) == "manager"
        assert role_of(None) is None

    def test_has_permission(self):

        assert has_permission("manager", "Invoice.mark_paid")
        assert not has_permission("member", "Invoice.mark_paid")
        assert has_permission(None, "Client.list_clients")
        assert not has_permission("owner", "X.y", {"X.y": {"admin"}})


def test_invoice_suffixes():

    assert business._next_invoice_suffix([]) == 81
    assert business._next_invoice_suffix(["INV-2025-079", "INV-2025-102", "junk"]) == 103
