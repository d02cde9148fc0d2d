import os
import pathlib
import sys
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import titlechain`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from titlechain.registry.config import ConfigManager, RegistryConfig  # noqa: E402
from titlechain.registry.errors import StoreUnavailable  # noqa: E402
from titlechain.registry.identity import Party, Role, StaticIdentityService  # noqa: E402
from titlechain.registry.resilience import RetryPolicy  # noqa: E402
from titlechain.registry.runtime import RegistryRuntime  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless TITLECHAIN_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('TITLECHAIN_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set TITLECHAIN_RUN_SLOW=1 to enable'))


class FakeClock:
    """Monotonic ISO-8601 clock; every call advances by ``step``."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                 step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            self.now = self.now + self.step
            return self.now.isoformat()


PARCEL = {
    "state": "Karnataka",
    "district": "Mysuru",
    "village": "Hootagalli",
    "survey_number": "112/4",
    "area_sqm": "1200",
}


@pytest.fixture(autouse=True)
def _fresh_config():
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity() -> StaticIdentityService:
    return StaticIdentityService([
        Party("seller", "Asha Rao", verified=True),
        Party("buyer", "Vikram Shah", verified=True),
        Party("buyer2", "Meera Iyer", verified=True),
        Party("admin", "Registrar One", role=Role.ADMIN, verified=True),
        Party("admin2", "Registrar Two", role=Role.ADMIN, verified=True),
        Party("unverified", "Nobody Yet"),
    ])


@pytest.fixture
def config() -> RegistryConfig:
    cfg = RegistryConfig()
    cfg.anchor.confirmation_timeout_seconds.set(0.05)
    return cfg


@pytest.fixture
def runtime(config, identity, clock) -> RegistryRuntime:
    rt = RegistryRuntime.in_memory(config, identity=identity, clock=clock)
    rt.minter.retry = RetryPolicy(
        max_attempts=2,
        retryable_exceptions=(StoreUnavailable,),
        sleep=lambda s: None,
    )
    rt.anchor.timeout_grace = 0.5
    return rt


@pytest.fixture
def certified_asset(runtime):
    """Factory: a verified, certified asset held by ``holder``, optionally listed."""
    def make(holder: str = "seller", price: str = "500000", listed: bool = True):
        registrar = runtime.registrar
        asset = registrar.digitize(holder, dict(PARCEL))
        registrar.verify(asset.asset_id, "admin", approve=True)
        registrar.issue_base_certificate(asset.asset_id)
        if listed:
            registrar.list_for_sale(asset.asset_id, holder, price)
        return registrar.get(asset.asset_id)
    return make


@pytest.fixture
def listed_asset(certified_asset):
    return certified_asset()


@pytest.fixture
def under_review(runtime):
    """Factory: open a transfer on ``asset_id`` and move it to UNDER_REVIEW."""
    def make(asset_id: str, buyer: str = "buyer", amount: str = "500000", seller: str = "seller"):
        coordinator = runtime.coordinator
        request = coordinator.open_transfer(asset_id, seller, buyer, Decimal(amount))
        coordinator.submit_documents(request.transfer_id, buyer, [
            {"document_type": "SALE_DEED", "name": "sale-deed.pdf", "content": b"%PDF-1.4 deed"},
        ])
        return coordinator.begin_review(request.transfer_id, "admin")
    return make
