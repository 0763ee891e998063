"""
Collateral Item Module

Items are the physical goods that secure loans. Their status follows a fixed
transition table and every status change leaves an ItemHistory record.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import uuid

from .currency import Money, money_from_storage
from .exceptions import ItemNotFoundError, InvalidStatusTransitionError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, persistence_errors, utc_now, parse_datetime


class ItemStatus(Enum):
    """Item lifecycle states"""
    AVAILABLE = "available"
    COLLATERAL = "collateral"
    PAWNED = "collateral"  # legacy name for COLLATERAL
    FOR_SALE = "for_sale"
    SOLD = "sold"
    CONFISCATED = "confiscated"
    TRANSFERRED = "transferred"

    @classmethod
    def _missing_(cls, value):
        if value == "pawned":
            return cls.COLLATERAL
        return None


_TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.AVAILABLE: frozenset({
        ItemStatus.COLLATERAL, ItemStatus.FOR_SALE, ItemStatus.SOLD, ItemStatus.TRANSFERRED,
    }),
    ItemStatus.COLLATERAL: frozenset({ItemStatus.AVAILABLE, ItemStatus.CONFISCATED}),
    ItemStatus.FOR_SALE: frozenset({ItemStatus.SOLD, ItemStatus.AVAILABLE}),
    ItemStatus.SOLD: frozenset(),
    ItemStatus.CONFISCATED: frozenset({ItemStatus.FOR_SALE, ItemStatus.AVAILABLE}),
    ItemStatus.TRANSFERRED: frozenset({ItemStatus.AVAILABLE}),
}

# Adding a status without deciding its transitions must fail loudly
if set(_TRANSITIONS) != set(ItemStatus):
    raise RuntimeError("item transition table is incomplete")


def is_valid_status_transition(from_status: ItemStatus, to_status: ItemStatus) -> bool:
    """True when the transition table allows from_status -> to_status"""
    return to_status in _TRANSITIONS[from_status]


@dataclass
class Item(StorageRecord):
    """Collateral view of an inventory item"""
    branch_id: str
    name: str
    sku: str
    appraised_value: Money
    loan_value: Money  # maximum loan amount this item can secure
    status: ItemStatus = ItemStatus.AVAILABLE
    customer_id: Optional[str] = None  # original owner
    notes: Optional[str] = None
    updated_by: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.status == ItemStatus.AVAILABLE


@dataclass
class ItemHistory:
    """Immutable record of one item status change"""
    id: str
    item_id: str
    action: str
    old_status: ItemStatus
    new_status: ItemStatus
    sequence: int
    created_at: datetime
    notes: str = ""
    created_by: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


class ItemStore:
    """Persistence for items and their status history"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.items_table = "items"
        self.history_table = "item_history"

    def get(self, item_id: str) -> Optional[Item]:
        data = self.storage.load(self.items_table, item_id)
        if not data:
            return None
        return self._item_from_dict(data)

    def save(self, item: Item) -> None:
        with persistence_errors("save item"):
            self.storage.save(self.items_table, item.id, self._item_to_dict(item))

    def update_status(self, item: Item, new_status: ItemStatus, actor: Optional[str] = None,
                      notes: str = "", action: str = "status_change",
                      reference_type: Optional[str] = None,
                      reference_id: Optional[str] = None) -> ItemHistory:
        """Persist a new status and append the matching history record atomically"""
        old_status = item.status
        with self.storage.atomic():
            item.status = new_status
            item.updated_by = actor
            item.updated_at = utc_now()
            with persistence_errors("update item status"):
                self.storage.save(self.items_table, item.id, self._item_to_dict(item))
            entry = ItemHistory(
                id=str(uuid.uuid4()),
                item_id=item.id,
                action=action,
                old_status=old_status,
                new_status=new_status,
                sequence=0,
                created_at=utc_now(),
                notes=notes,
                created_by=actor,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            self.append_history(entry)
        return entry

    def append_history(self, entry: ItemHistory) -> None:
        with persistence_errors("append item history"):
            entry.sequence = self.storage.next_sequence(self.history_table)
            self.storage.save(self.history_table, entry.id, {
                'id': entry.id,
                'item_id': entry.item_id,
                'action': entry.action,
                'old_status': entry.old_status.value,
                'new_status': entry.new_status.value,
                'sequence': entry.sequence,
                'notes': entry.notes,
                'created_by': entry.created_by,
                'reference_type': entry.reference_type,
                'reference_id': entry.reference_id,
                'created_at': entry.created_at.isoformat(),
            })

    def get_history(self, item_id: str) -> List[ItemHistory]:
        records = self.storage.find(self.history_table, {'item_id': item_id})
        history = [
            ItemHistory(
                id=data['id'],
                item_id=data['item_id'],
                action=data['action'],
                old_status=ItemStatus(data['old_status']),
                new_status=ItemStatus(data['new_status']),
                sequence=data['sequence'],
                created_at=parse_datetime(data['created_at']),
                notes=data.get('notes') or "",
                created_by=data.get('created_by'),
                reference_type=data.get('reference_type'),
                reference_id=data.get('reference_id'),
            )
            for data in records
        ]
        return sorted(history, key=lambda h: h.sequence)

    def _item_to_dict(self, item: Item) -> Dict:
        result = item.base_dict()
        result.update({
            'branch_id': item.branch_id,
            'name': item.name,
            'sku': item.sku,
            'appraised_value': str(item.appraised_value.amount),
            'loan_value': str(item.loan_value.amount),
            'currency': item.loan_value.currency.code,
            'status': item.status.value,
            'customer_id': item.customer_id,
            'notes': item.notes,
            'updated_by': item.updated_by,
        })
        return result

    def _item_from_dict(self, data: Dict) -> Item:
        currency_code = data['currency']
        return Item(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            branch_id=data['branch_id'],
            name=data['name'],
            sku=data['sku'],
            appraised_value=money_from_storage(data['appraised_value'], currency_code),
            loan_value=money_from_storage(data['loan_value'], currency_code),
            status=ItemStatus(data['status']),
            customer_id=data.get('customer_id'),
            notes=data.get('notes'),
            updated_by=data.get('updated_by'),
        )


class ItemStateMachine:
    """Validated item status changes with history"""

    def __init__(self, store: ItemStore):
        self.store = store
        self.logger = get_logger("pawn_ledger.items")

    def transition(self, item_id: str, new_status: ItemStatus, actor: Optional[str] = None,
                   notes: str = "", action: str = "status_change",
                   reference_type: Optional[str] = None,
                   reference_id: Optional[str] = None) -> Item:
        """
        Move an item to new_status.

        Raises:
            ItemNotFoundError: If the item does not exist
            InvalidStatusTransitionError: If the table forbids the change
        """
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        if not is_valid_status_transition(item.status, new_status):
            raise InvalidStatusTransitionError(item_id, item.status.value, new_status.value)

        old_status = item.status
        self.store.update_status(
            item, new_status, actor=actor, notes=notes, action=action,
            reference_type=reference_type, reference_id=reference_id,
        )

        log_action(self.logger, "info", f"Item {item_id} moved to {new_status.value}",
                   user_id=actor, action="item_status_change", resource=f"item:{item_id}",
                   extra={"old_status": old_status.value, "new_status": new_status.value})
        return item

    def history(self, item_id: str) -> List[ItemHistory]:
        """Status history for an item, oldest first"""
        return self.store.get_history(item_id)
