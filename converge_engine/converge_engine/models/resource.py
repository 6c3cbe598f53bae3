"""Resource models: declared (desired) resources and recorded (observed) ones.

Resources are addressed by a *key* of the form ``type:name``.  The key is
the identity used by the state snapshot, the execution graph, and every
plan action.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, field_validator

KEY_SEPARATOR = ":"


def make_key(resource_type: str, name: str) -> str:
    """Return the canonical ``type:name`` key for a resource."""
    return f"{resource_type}{KEY_SEPARATOR}{name}"


def deposed_key(key: str, resource_id: str) -> str:
    """Return the key an outgoing instance is kept under when its delete fails.

    The deposed record is not desired, so the next plan destroys it.
    """
    return f"{key}#deposed-{resource_id}"


def split_key(key: str) -> tuple[str, str]:
    """Split a ``type:name`` key into its two parts.

    Raises
    ------
    ValueError
        If *key* has no separator or an empty part.
    """
    resource_type, sep, name = key.partition(KEY_SEPARATOR)
    if not sep or not resource_type or not name:
        raise ValueError(f"Invalid resource key {key!r}: expected 'type:name'")
    return resource_type, name


class DesiredResource(BaseModel):
    """A single resource declaration from the desired configuration graph."""

    type: str = Field(..., min_length=1, description="Provider-side resource kind.")
    name: str = Field(..., min_length=1, description="Name unique within its type.")
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Desired attribute values.",
    )
    dependencies: list[str] = Field(
        default_factory=list,
        description="Keys of resources that must be applied before this one.",
    )

    @field_validator("dependencies")
    @classmethod
    def _sort_dependencies(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    @property
    def key(self) -> str:
        return make_key(self.type, self.name)


class ResourceRecord(BaseModel):
    """A managed resource as recorded in the state snapshot.

    ``id`` is populated if and only if the resource has been successfully
    created and not yet destroyed.
    """

    type: str = Field(..., min_length=1, description="Provider-side resource kind.")
    name: str = Field(..., min_length=1, description="Name unique within its type.")
    id: str | None = Field(
        default=None,
        description="Opaque external identifier assigned by the provider on create.",
    )
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-observed attribute values.",
    )
    dependencies: list[str] = Field(
        default_factory=list,
        description="Keys of resources this one was applied after.",
    )

    @field_validator("dependencies")
    @classmethod
    def _sort_dependencies(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    @property
    def key(self) -> str:
        return make_key(self.type, self.name)


DesiredGraph = dict[str, DesiredResource]


def desired_graph_from_mapping(raw: Mapping[str, Mapping[str, Any]]) -> DesiredGraph:
    """Build a desired graph from plain ``{key: {type, attributes, dependencies}}`` data.

    The ``name`` field may be omitted; it is then taken from the key.

    Raises
    ------
    ValueError
        If a key does not match the declared ``type:name``.
    """
    graph: DesiredGraph = {}
    for key in sorted(raw):
        spec = dict(raw[key])
        key_type, key_name = split_key(key)
        spec.setdefault("type", key_type)
        spec.setdefault("name", key_name)
        resource = DesiredResource.model_validate(spec)
        if resource.key != key:
            raise ValueError(f"Resource key {key!r} does not match declared type/name {resource.key!r}")
        graph[key] = resource
    return graph
