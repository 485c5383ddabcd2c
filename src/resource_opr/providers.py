"""Provider adapter boundary.

Each resource kind is served by one adapter implementing ProviderAdapter.
Adapters are registered in a ProviderRegistry; the orchestration core never
switches on kind names. New kinds are added by registering an adapter.

Adapters signal failure by raising ProviderError subclasses:
TransientProviderError (retried), PermanentProviderError (not retried),
PreconditionError and ResourceNotFoundError (both permanent).
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability interface for one resource kind."""

    kind: str
    immutable_attributes: frozenset

    def create(self, attributes: dict) -> dict:
        """Create the resource, return provider-assigned attributes (incl. 'id')."""

    def read(self, resource_id: str) -> dict:
        """Return current provider attributes for the resource."""

    def update(self, resource_id: str, changed: dict) -> dict:
        """Apply changed attributes in place, return provider attributes."""

    def delete(self, resource_id: str) -> None:
        """Delete the resource."""


@dataclass(frozen=True)
class ResourceKind:
    """Static description of a resource kind.

    Attributes:
        name: Kind name as used in declarations (e.g. 'Database')
        collection: REST collection name (e.g. 'databases')
        immutable: Attributes whose change forces a replacement
    """
    name: str
    collection: str
    immutable: frozenset = field(default_factory=frozenset)


BUILTIN_KINDS: dict[str, ResourceKind] = {
    k.name: k for k in (
        ResourceKind('Network', 'networks', frozenset({'cidr_block'})),
        ResourceKind('InternetGateway', 'internet-gateways', frozenset({'network_id'})),
        ResourceKind('Subnet', 'subnets', frozenset({'network_id', 'cidr_block', 'availability_zone'})),
        ResourceKind('RouteTable', 'route-tables', frozenset({'network_id'})),
        ResourceKind('RouteTableAssociation', 'route-table-associations',
                     frozenset({'subnet_id', 'route_table_id'})),
        ResourceKind('SecurityGroup', 'security-groups', frozenset({'network_id', 'name'})),
        ResourceKind('Instance', 'instances', frozenset({'image_id', 'subnet_id', 'availability_zone'})),
        ResourceKind('DBSubnetGroup', 'db-subnet-groups', frozenset({'name'})),
        ResourceKind('Database', 'databases',
                     frozenset({'identifier', 'engine', 'engine_version', 'db_subnet_group'})),
        ResourceKind('Bucket', 'buckets', frozenset({'bucket', 'region'})),
        ResourceKind('BucketPolicy', 'bucket-policies', frozenset({'bucket'})),
    )
}


class ProviderRegistry:
    """Maps resource kinds to their adapters."""

    def __init__(self):
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter for its kind.

        Raises:
            TypeError: If the object does not implement ProviderAdapter
            ValueError: If the kind already has an adapter
        """
        if not isinstance(adapter, ProviderAdapter):
            raise TypeError(f"{adapter!r} does not implement ProviderAdapter")
        if adapter.kind in self._adapters:
            raise ValueError(f"Adapter for kind '{adapter.kind}' already registered")
        self._adapters[adapter.kind] = adapter
        logger.debug(f"Registered adapter for kind '{adapter.kind}'")

    def get(self, kind: str) -> ProviderAdapter:
        """Get the adapter for a kind.

        Raises:
            KeyError: If no adapter is registered for the kind
        """
        try:
            return self._adapters[kind]
        except KeyError:
            raise KeyError(f"No provider adapter registered for kind '{kind}'") from None

    def immutable_attributes(self, kind: str) -> frozenset:
        """Immutable attribute names for a kind (empty if unregistered)."""
        adapter = self._adapters.get(kind)
        return frozenset(adapter.immutable_attributes) if adapter else frozenset()

    @property
    def kinds(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, kind: str) -> bool:
        return kind in self._adapters

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)
