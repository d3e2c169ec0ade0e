import enum

class Role(str, enum.Enum):
    admin = "admin"
    operator = "operator"
    viewer = "viewer"

class MovementKind(str, enum.Enum):
    entry = "ENTRY"
    adjustment = "ADJUSTMENT"
    loan_out = "LOAN_OUT"
    loan_return = "LOAN_RETURN"
    transfer_out = "TRANSFER_OUT"
    transfer_in = "TRANSFER_IN"

class LoanStatus(str, enum.Enum):
    open = "OPEN"
    partially_returned = "PARTIALLY_RETURNED"
    returned = "RETURNED"
    overdue = "OVERDUE"
    lost = "LOST"

class TransferStatus(str, enum.Enum):
    pending = "PENDING"
    approved = "APPROVED"
    in_transit = "IN_TRANSIT"
    completed = "COMPLETED"
    cancelled = "CANCELLED"

class EntryStatus(str, enum.Enum):
    pending = "PENDING"
    completed = "COMPLETED"

class ItemCondition(str, enum.Enum):
    new = "NEW"
    used = "USED"
    damaged = "DAMAGED"


LOAN_TERMINAL_STATUSES = frozenset({LoanStatus.returned, LoanStatus.lost})
LOAN_ACTIVE_STATUSES = frozenset({LoanStatus.open, LoanStatus.partially_returned, LoanStatus.overdue})
TRANSFER_TERMINAL_STATUSES = frozenset({TransferStatus.completed, TransferStatus.cancelled})
