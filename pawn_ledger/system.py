"""
Composition root wiring storage, stores and managers together
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .customers import CustomerStore
from .items import ItemStore, ItemStateMachine
from .loans import LoanManager
from .payments import PaymentLedger
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class PawnLedger:
    """Loan servicing ledger with all components initialized"""

    def __init__(self, storage: StorageInterface, config: LedgerConfig):
        self.config = config
        self.storage = storage

        self.item_store = ItemStore(self.storage)
        self.customer_store = CustomerStore(self.storage)
        self.items = ItemStateMachine(self.item_store)
        self.loans = LoanManager(self.storage, self.item_store, self.customer_store, config)
        self.payments = PaymentLedger(self.storage, self.loans, config)

    def close(self) -> None:
        self.storage.close()


def create_ledger(storage: Optional[StorageInterface] = None,
                  config: Optional[LedgerConfig] = None,
                  use_sqlite: bool = False) -> PawnLedger:
    """
    Build a ledger.

    Without an explicit storage the ledger runs in memory, or on the
    configured SQLite database when use_sqlite is set.
    """
    config = config or get_config()
    if storage is None:
        storage = SQLiteStorage(config.database_path) if use_sqlite else InMemoryStorage()
    return PawnLedger(storage, config)
