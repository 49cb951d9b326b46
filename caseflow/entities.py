"""Entity reference resolution.

The engines bind execution records to business entities (cases, clients,
invoices...) by type and id only. An :class:`EntityResolver` confirms the
entity exists when a workflow is started; it is not consulted afterwards.
"""

from __future__ import annotations

from typing import Dict, Iterable, Protocol, Set, Tuple


class EntityResolver(Protocol):
    async def exists(self, tenant_id: str, entity_type: str, entity_id: str) -> bool:
        """Return whether the tenant owns an entity of that type and id."""


class AcceptAllResolver(EntityResolver):
    """Resolver that trusts every reference."""

    async def exists(self, tenant_id: str, entity_type: str, entity_id: str) -> bool:
        return True


class RegistryEntityResolver(EntityResolver):
    """In-memory registry of known entities, keyed per tenant."""

    def __init__(self, entities: Iterable[Tuple[str, str, str]] = ()) -> None:
        self._entities: Dict[str, Set[Tuple[str, str]]] = {}
        for tenant_id, entity_type, entity_id in entities:
            self.register(tenant_id, entity_type, entity_id)

    def register(self, tenant_id: str, entity_type: str, entity_id: str) -> None:
        self._entities.setdefault(tenant_id, set()).add((entity_type, entity_id))

    def forget(self, tenant_id: str, entity_type: str, entity_id: str) -> None:
        self._entities.get(tenant_id, set()).discard((entity_type, entity_id))

    async def exists(self, tenant_id: str, entity_type: str, entity_id: str) -> bool:
        return (entity_type, entity_id) in self._entities.get(tenant_id, set())
