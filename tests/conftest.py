import logging
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import carbonreg`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from carbonreg.auth import SingleAdministrator  # noqa: E402
from carbonreg.config import ConfigManager  # noqa: E402
from carbonreg.events import RegistryEventSink  # noqa: E402
from carbonreg.ledger import InMemoryAssetLedger  # noqa: E402
from carbonreg.lifecycle import LifecycleController  # noqa: E402
from carbonreg.observability import ROOT_LOGGER_NAME  # noqa: E402
from carbonreg.store import CreditAttributes, CreditCategory  # noqa: E402


ADMIN = "registry-admin"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless CARBONREG_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('CARBONREG_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CARBONREG_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test starts from default configuration with no CARBONREG_* overrides
    and leaves no log handler behind."""
    for name in list(os.environ):
        if name.startswith("CARBONREG_") and name != "CARBONREG_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        if not isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)


def _make_attributes(**overrides) -> CreditAttributes:
    fields = dict(
        category=CreditCategory.FIXATION,
        longitude=-122000000,
        latitude=37000000,
        start_date=1000,
        end_date=2000,
        co2_equivalent=50,
    )
    fields.update(overrides)
    return CreditAttributes(**fields)


@pytest.fixture
def make_attributes():
    """Factory for valid attributes; keyword overrides replace single fields."""
    return _make_attributes


@pytest.fixture
def attributes() -> CreditAttributes:
    return _make_attributes()


@pytest.fixture
def admin() -> str:
    return ADMIN


@pytest.fixture
def ledger() -> InMemoryAssetLedger:
    return InMemoryAssetLedger()


@pytest.fixture
def sink() -> RegistryEventSink:
    return RegistryEventSink()


@pytest.fixture
def registry(ledger, sink) -> LifecycleController:
    return LifecycleController(SingleAdministrator(ADMIN), ledger, sink)
