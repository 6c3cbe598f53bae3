"""Shared fixtures for converge_engine tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from converge_engine.models.plan import ReplaceOrder
from converge_engine.provider.base import AttributeSchema, ResourceSchema
from converge_engine.provider.memory import InMemoryProvider
from converge_engine.state.local import LocalStateStore


@pytest.fixture
def schemas() -> dict[str, ResourceSchema]:
    """Schemas for the two resource types used throughout the suite.

    * ``db``: ``engine`` forces a replace, ``size`` defaults to ``"small"``,
      ``endpoint`` is computed by the provider.
    * ``web``: ``region`` forces a replace and compares case-insensitively;
      replacements create the new instance before destroying the old one.
    """
    return {
        "db": ResourceSchema(
            attributes={
                "engine": AttributeSchema(force_new=True),
                "size": AttributeSchema(default="small"),
                "endpoint": AttributeSchema(computed=True),
            },
        ),
        "web": ResourceSchema(
            attributes={
                "image": AttributeSchema(),
                "region": AttributeSchema(force_new=True, case_insensitive=True),
            },
            replace_strategy=ReplaceOrder.CREATE_BEFORE_DESTROY,
        ),
    }


@pytest.fixture
def provider(schemas) -> InMemoryProvider:
    return InMemoryProvider(schemas)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "state.json"


@pytest_asyncio.fixture
async def local_store(state_path):
    store = LocalStateStore(state_path, lock_poll_interval=0.01)
    yield store
    await store.close()
