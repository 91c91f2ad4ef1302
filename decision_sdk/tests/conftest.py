"""
decision_sdk test configuration.

All tests run against in-memory stores and the pass-through renderer; no
external services are required. The clock is frozen per test so frequency
windows and timing conditions are deterministic.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# ── Force in-memory backends for all tests ────────────────────────────────
# These must be set before any decision_sdk modules are imported.

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_NAME", "decision-sdk-test")
os.environ.setdefault("DECISION_STORE_BACKEND", "memory")
os.environ.setdefault("DECISION_RENDERER_BACKEND", "template")
os.environ.setdefault("DECISION_ERROR_BACKEND", "none")
os.environ.setdefault("DECISION_AUDIT_BACKEND", "log")
os.environ.setdefault("DECISION_LOG_LEVEL", "WARNING")

FROZEN_AT = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset cached singletons between tests so no state bleeds across them.
    """
    import decision_sdk.tier1_runtime.clock as _clock
    import decision_sdk.tier2_storage.store as _store
    import decision_sdk.tier3_decisioning.rendering as _rendering
    from decision_sdk.tier0_core.config import _reset_config

    orig_clock = _clock.get_clock()
    orig_stores = _store._stores
    orig_renderer = _rendering._renderer
    _reset_config()

    yield

    _clock.set_clock(orig_clock)
    _store.set_stores(orig_stores)
    _rendering.set_renderer(orig_renderer)
    _reset_config()


@pytest.fixture
def stores():
    """Fresh in-memory stores, installed as the process-wide stores."""
    from decision_sdk.tier2_storage.store import Stores, set_stores

    fresh = Stores.in_memory()
    set_stores(fresh)
    return fresh


@pytest.fixture
def clock():
    """A clock frozen at FROZEN_AT, installed as the global clock."""
    from decision_sdk.tier1_runtime.clock import Clock, set_clock

    frozen = Clock().freeze(FROZEN_AT)
    set_clock(frozen)
    return frozen


@pytest_asyncio.fixture
async def running_test(stores, clock):
    """A running test with a 50/50 control and treatment. Returns (test, control, treatment)."""
    from decision_sdk.tier2_storage.entities import ABTest, StatisticalSettings, Variant

    test = await stores.tests.create(
        ABTest(
            name="checkout-button",
            status="running",
            statistical_settings=StatisticalSettings(minimum_sample_size=10),
        )
    )
    control = await stores.variants.create(
        Variant(ab_test_id=test.id, name="control", is_control=True,
                configuration={"color": "blue"}, created_at=FROZEN_AT)
    )
    treatment = await stores.variants.create(
        Variant(ab_test_id=test.id, name="treatment",
                configuration={"color": "green"},
                created_at=FROZEN_AT.replace(second=1))
    )
    return test, control, treatment

