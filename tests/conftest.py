import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import tools`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless METATX_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('METATX_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set METATX_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Every test starts from default configuration with no METATX_* overrides."""
    from tools.metatx.config import ConfigManager

    for name in list(os.environ):
        if name.startswith('METATX_') and name != 'METATX_RUN_SLOW':
            monkeypatch.delenv(name, raising=False)
    ConfigManager._instance = None
    yield
    ConfigManager._instance = None


@pytest.fixture
def ledger():
    from tools.metatx.ledger import Ledger
    return Ledger()


@pytest.fixture(autouse=True)
def _fresh_correlation_id():
    """No correlation id leaks from one test into the next."""
    from tools.metatx.observability import correlation_id_var

    token = correlation_id_var.set('')
    yield
    correlation_id_var.reset(token)


@pytest.fixture
def accounts(ledger):
    """Four funded accounts: deployer, user, receiver, relayer."""
    from eth_account import Account

    named = {}
    for role in ('deployer', 'user', 'receiver', 'relayer'):
        acct = Account.create()
        ledger.fund(acct.address)
        named[role] = acct
    return named
