from __future__ import annotations

from typing import Protocol

from .errors import RestarterError
from .events import log_event
from .models import FilterConfig, ManagedUnit
from .selectors import LabelSelector, parse_selector


class GroupSelectorSource(Protocol):
    def get_group_selector(self, namespace: str, group_name: str) -> LabelSelector: ...


class FilterMatcher:
    """Decides whether a replica is in scope.

    Both criteria are optional but at least one is configured (FilterConfig
    enforces it). When both are set a replica must satisfy both. A failed
    StatefulSet lookup excludes the replica; it is logged, never raised.
    """

    def __init__(self, config: FilterConfig, source: GroupSelectorSource):
        self.config = config
        self.source = source
        # Parsed once; FilterConfig already rejected malformed text.
        self.selector: LabelSelector | None = parse_selector(config.label_selector) if config.label_selector else None

    def matches(self, unit: ManagedUnit) -> bool:
        if unit.namespace != self.config.namespace:
            return False
        if self.selector is not None and not self.selector.matches(unit.labels):
            return False
        if self.config.group_name and not self._belongs_to_group(unit):
            return False
        return True

    def _belongs_to_group(self, unit: ManagedUnit) -> bool:
        try:
            selector = self.source.get_group_selector(self.config.namespace, self.config.group_name)
        except RestarterError as e:
            log_event(
                "ERROR",
                f"Failed to resolve selector of StatefulSet '{self.config.group_name}': {type(e).__name__}: {e}",
                namespace=unit.namespace,
                pod=unit.name,
            )
            return False
        return selector.matches(unit.labels)
