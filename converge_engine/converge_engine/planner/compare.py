"""Attribute comparison between desired configuration and a baseline."""

from __future__ import annotations

from typing import Any

from converge_engine.models.plan import AttributeChange
from converge_engine.provider.base import ResourceSchema


def comparable_attributes(desired: dict[str, Any], schema: ResourceSchema) -> list[str]:
    """Names compared for a resource: desired keys plus declared ones, minus computed."""
    names = set(desired) | schema.declared_attributes()
    return sorted(name for name in names if not schema.is_computed(name))


def diff_attributes(
    desired: dict[str, Any],
    baseline: dict[str, Any],
    schema: ResourceSchema,
) -> list[AttributeChange]:
    """Return the attribute-level differences between *desired* and *baseline*.

    Both sides are normalized through *schema* (defaults expanded, case
    folding applied) and then compared for exact equality.  Attributes the
    provider marks ``computed`` are never compared, and baseline-only
    attributes the configuration does not mention are ignored unless the
    schema declares them.

    Returns
    -------
    list[AttributeChange]
        Differences sorted by attribute name; empty when nothing differs.
    """
    want = schema.normalize(desired)
    have = schema.normalize(baseline)

    changes: list[AttributeChange] = []
    for name in comparable_attributes(desired, schema):
        before = have.get(name)
        after = want.get(name)
        if before == after:
            continue
        changes.append(
            AttributeChange(
                name=name,
                before=before,
                after=after,
                requires_replacement=schema.forces_replacement(name),
            )
        )
    return changes


def diff_observed(
    stored: dict[str, Any],
    live: dict[str, Any],
    schema: ResourceSchema,
) -> list[AttributeChange]:
    """Return differences between stored and live attributes of one resource.

    Unlike :func:`diff_attributes` both sides are authoritative, so every
    non-computed name present on either side is compared.  ``before`` is the
    stored value and ``after`` the live one.
    """
    have = schema.normalize(stored)
    seen = schema.normalize(live)

    changes: list[AttributeChange] = []
    for name in sorted(set(have) | set(seen)):
        if schema.is_computed(name):
            continue
        if have.get(name) == seen.get(name):
            continue
        changes.append(
            AttributeChange(
                name=name,
                before=have.get(name),
                after=seen.get(name),
                requires_replacement=schema.forces_replacement(name),
            )
        )
    return changes
