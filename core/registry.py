"""Plugin registry -- stores and retrieves protocol implementations.

At startup the engine instantiates risk rules and the cache backend from
config and registers them here. Core components query the registry by
protocol type; registration order is preserved, which is also the order the
Risk Engine evaluates rules in.
"""

from __future__ import annotations

import logging
from typing import Any

from core.protocols import Cache, EventBus, RiskRule

logger = logging.getLogger(__name__)

# All supported protocol types
PROTOCOL_TYPES = {
    "event_bus": EventBus,
    "cache": Cache,
    "risk_rule": RiskRule,
}


class PluginRegistry:
    """Central registry for all protocol implementations.

    Usage:
        registry = PluginRegistry()
        registry.register("risk_rule", OrderValueRule(max_order_value=5000))
        registry.register("risk_rule", CashRule(min_cash_reserve=100))

        rules = registry.get_all("risk_rule")  # [order_value, cash]
        cash = registry.get("risk_rule", "cash")
    """

    def __init__(self) -> None:
        self._plugins: dict[str, dict[str, Any]] = {key: {} for key in PROTOCOL_TYPES}

    def register(self, protocol_key: str, instance: Any) -> None:
        """Register a plugin instance under a protocol type.

        The instance must have a `name` property and satisfy the protocol.
        """
        if protocol_key not in PROTOCOL_TYPES:
            raise ValueError(
                f"Unknown protocol key '{protocol_key}'. "
                f"Must be one of: {list(PROTOCOL_TYPES.keys())}"
            )
        if not isinstance(instance, PROTOCOL_TYPES[protocol_key]):
            raise TypeError(
                f"{type(instance).__name__} does not implement the {protocol_key} protocol"
            )

        name = instance.name
        if name in self._plugins[protocol_key]:
            logger.warning(
                "Overwriting existing %s plugin '%s'", protocol_key, name
            )

        self._plugins[protocol_key][name] = instance
        logger.debug("Registered %s plugin: %s", protocol_key, name)

    def get(self, protocol_key: str, name: str) -> Any:
        """Get a specific plugin by protocol type and name.

        Raises KeyError if not found.
        """
        if protocol_key not in self._plugins:
            raise KeyError(f"Unknown protocol key: {protocol_key}")
        if name not in self._plugins[protocol_key]:
            available = list(self._plugins[protocol_key].keys())
            raise KeyError(
                f"No {protocol_key} plugin named '{name}'. "
                f"Available: {available}"
            )
        return self._plugins[protocol_key][name]

    def get_all(self, protocol_key: str) -> list[Any]:
        """Get all plugins registered for a protocol type."""
        if protocol_key not in self._plugins:
            raise KeyError(f"Unknown protocol key: {protocol_key}")
        return list(self._plugins[protocol_key].values())

    def has(self, protocol_key: str, name: str) -> bool:
        """Check if a plugin is registered."""
        return (
            protocol_key in self._plugins
            and name in self._plugins[protocol_key]
        )

    def names(self, protocol_key: str) -> list[str]:
        """List all registered plugin names for a protocol type."""
        if protocol_key not in self._plugins:
            return []
        return list(self._plugins[protocol_key].keys())

    def summary(self) -> dict[str, list[str]]:
        """Return a summary of all registered plugins."""
        return {
            key: list(plugins.keys())
            for key, plugins in self._plugins.items()
            if plugins
        }
