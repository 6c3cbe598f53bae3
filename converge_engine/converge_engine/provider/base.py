"""Abstract interface for resource providers.

A provider performs create/read/update/delete calls for resource types
against some external system and declares static per-attribute metadata
through :meth:`Provider.schema`.  The planner, reconciler, and drift
detector only ever talk to this protocol so they remain backend-agnostic.
"""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel, Field

from converge_engine.models.plan import ReplaceOrder


class AttributeSchema(BaseModel):
    """Static metadata for one attribute of a resource type."""

    force_new: bool = Field(
        default=False,
        description="A change to this attribute cannot be applied in place and forces a replace.",
    )
    computed: bool = Field(
        default=False,
        description="Set by the provider; never compared against desired configuration.",
    )
    default: Any = Field(
        default=None,
        description="Value assumed when the attribute is absent.",
    )
    case_insensitive: bool = Field(
        default=False,
        description="String values compare case-insensitively.",
    )


class ResourceSchema(BaseModel):
    """Static metadata for one resource type."""

    attributes: dict[str, AttributeSchema] = Field(default_factory=dict)
    replace_strategy: ReplaceOrder = Field(
        default=ReplaceOrder.DESTROY_BEFORE_CREATE,
        description="Order of the destroy/create pair used when a replace is required.",
    )

    def normalize(self, attributes: dict[str, Any]) -> dict[str, Any]:
        """Return *attributes* with defaults expanded and case folding applied."""
        normalized = dict(attributes)
        for name, spec in self.attributes.items():
            if normalized.get(name) is None and spec.default is not None:
                normalized[name] = spec.default
            value = normalized.get(name)
            if spec.case_insensitive and isinstance(value, str):
                normalized[name] = value.casefold()
        return normalized

    def is_computed(self, name: str) -> bool:
        spec = self.attributes.get(name)
        return spec is not None and spec.computed

    def forces_replacement(self, name: str) -> bool:
        spec = self.attributes.get(name)
        return spec is not None and spec.force_new

    def declared_attributes(self) -> set[str]:
        """Names of declared, non-computed attributes."""
        return {name for name, spec in self.attributes.items() if not spec.computed}


class Provider(Protocol):
    """Structural interface for resource providers.

    Implementations are **not** required to subclass this protocol; they only
    need to expose methods with matching signatures (duck typing).
    Failures are reported by raising
    :class:`~converge_engine.errors.ProviderError` (with ``retryable`` set
    when the call may succeed if repeated) or
    :class:`~converge_engine.errors.ResourceNotFoundError`.
    """

    def schema(self, resource_type: str) -> ResourceSchema:
        """Return the static metadata for *resource_type*."""
        ...

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource.

        Returns
        -------
        tuple[str, dict[str, Any]]
            The new external id and the provider-observed attributes.
        """
        ...

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """Read the live attributes of a resource.

        Raises
        ------
        ResourceNotFoundError
            If *resource_id* no longer resolves.
        """
        ...

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: dict[str, Any],
    ) -> dict[str, Any]:
        """Update a resource in place and return the observed attributes."""
        ...

    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete a resource."""
        ...
