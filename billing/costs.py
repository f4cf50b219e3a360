from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path

import yaml

_DEFAULT_COSTS_FILE = Path(__file__).resolve().parent.parent / "config" / "credit_costs.yaml"


@dataclass(frozen=True)
class CreditCost:
    operation: str
    cost: int
    description: str


def _costs_file() -> Path:
    override = os.getenv("CREDIT_COSTS_FILE", "").strip()
    return Path(override).expanduser() if override else _DEFAULT_COSTS_FILE


@lru_cache(maxsize=8)
def _load_file(path: str) -> dict[str, CreditCost]:
    data = yaml.safe_load(Path(path).read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError("Credit cost file must be a mapping")
    operations = data.get("operations") or {}
    if not isinstance(operations, dict):
        raise ValueError("Credit cost 'operations' must be a mapping")

    table: dict[str, CreditCost] = {}
    for name, entry in operations.items():
        key = str(name).upper()
        if isinstance(entry, dict):
            cost = entry.get("cost")
            description = str(entry.get("description") or "")
        else:
            cost = entry
            description = ""
        if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
            raise ValueError(f"Credit cost for {key} must be a positive integer")
        table[key] = CreditCost(operation=key, cost=cost, description=description)
    return table


def _env_override(operation: str) -> int | None:
    raw = os.getenv(f"CREDIT_COST_{operation}", "").strip()
    if not raw:
        return None
    value = int(raw)
    if value <= 0:
        raise ValueError(f"CREDIT_COST_{operation} must be a positive integer")
    return value


def load_cost_table() -> dict[str, CreditCost]:
    table = dict(_load_file(str(_costs_file())))
    for key, entry in table.items():
        override = _env_override(key)
        if override is not None:
            table[key] = CreditCost(operation=key, cost=override, description=entry.description)
    return table


def get_cost(operation: str) -> int:
    """Return the credit cost of a named operation; unknown names raise KeyError."""
    key = operation.upper()
    table = _load_file(str(_costs_file()))
    if key not in table:
        raise KeyError(f"Unknown credit operation: {operation}")
    override = _env_override(key)
    return override if override is not None else table[key].cost


def reload_costs() -> None:
    _load_file.cache_clear()
