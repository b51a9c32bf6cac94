import pytest

from fakes import CONTRACTS, STBTC_TOKEN, THRESHOLD, FakeNotifier
from task_tracker import CheckpointStore, CreditLedger, EventPipeline


@pytest.fixture
def ledger(tmp_path):
    store = CreditLedger(str(tmp_path / "credits.db"))
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def checkpoints(tmp_path):
    return CheckpointStore(str(tmp_path / "last_processed_block.txt"))


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_pipeline(ledger, notifier):
    def _make(chain):
        return EventPipeline(
            chain,
            ledger,
            notifier,
            CONTRACTS,
            STBTC_TOKEN,
            threshold=THRESHOLD,
            clock=lambda: 1_700_000_000,
        )

    return _make
