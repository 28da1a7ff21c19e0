"""
In-memory declarative rule set.
"""

import asyncio
from typing import List, Sequence

from shared.errors import EnforcementError
from shared.logging import get_logger
from ..rules.compiler import DeclarativeRule


class InMemoryDeclarativeRuleSet:
    """Installed redirect records, updated atomically."""

    def __init__(self):
        self.logger = get_logger("redirector.enforcement")
        self._rules: List[DeclarativeRule] = []
        self._lock = asyncio.Lock()

    def get_rules(self) -> List[DeclarativeRule]:
        return list(self._rules)

    def get_rule_ids(self) -> List[int]:
        return [rule.id for rule in self._rules]

    async def update(self, remove_rule_ids: Sequence[int], add_rules: Sequence[DeclarativeRule]) -> None:
        """Remove ``remove_rule_ids`` and add ``add_rules`` in one step.

        Either the whole update applies or nothing changes.
        """
        async with self._lock:
            removed = set(remove_rule_ids)
            surviving = [rule for rule in self._rules if rule.id not in removed]
            taken = {rule.id for rule in surviving}

            for rule in add_rules:
                if rule.id in taken:
                    raise EnforcementError(
                        "Duplicate declarative rule id",
                        {"rule_id": rule.id}
                    )
                taken.add(rule.id)

            self._rules = sorted(surviving + list(add_rules), key=lambda r: r.id)

        self.logger.info(
            "Declarative rules updated",
            removed=len(removed),
            added=len(add_rules),
            installed=len(self._rules)
        )
