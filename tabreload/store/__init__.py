from __future__ import annotations

from ._store import RuleStore, dedupe_rules, validate_rule
from .types import Credential, Rule, StorageChange

__all__ = [
    "Credential",
    "Rule",
    "RuleStore",
    "StorageChange",
    "dedupe_rules",
    "validate_rule",
]
