"""
src/entities/loader.py

Seed records for the reference business workspace.
"""


import json
from pathlib import Path
from typing import Any, Dict, List


WORKSPACE_PATH = Path(__file__).resolve().parents[2] / "data" / "workspace.json"


class Workspace:

    def __init__(self, data: Dict[str, Any]):

        self.users = data.get("users", [])
        self.clients = data.get("clients", [])
        self.invoices = data.get("invoices", [])
        self.tasks = data.get("tasks", [])

    def records(self) -> Dict[str, List[Dict[str, Any]]]:
        """Records keyed by entity name, ready for InMemoryActionProvider."""

        return {"Client": self.clients, "Invoice": self.invoices, "Task": self.tasks}


def load_workspace(path: Path = WORKSPACE_PATH) -> Workspace:

    if not path.exists():
        raise FileNotFoundError(f"Workspace file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    # Sanity checks
    required = ["clients", "invoices", "tasks"]

    for key in required:
        if key not in data:
            raise ValueError(f"workspace.json missing '{key}'")

    return Workspace(data)
