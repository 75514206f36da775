"""Domain errors raised by boardlib and mapped to HTTP statuses by the API."""


class NotFoundError(LookupError):
    """A referenced roster slot, person or transaction does not exist."""


class SlotConflictError(ValueError):
    """The target slot is already held or already claimed by a movement."""


class MalformedTransactionError(ValueError):
    """A transaction's records do not form the shape its swap type requires."""

    def __init__(self, transaction_id: str, swap_type: str, record_count: int):
        self.transaction_id = transaction_id
        self.swap_type = swap_type
        self.record_count = record_count
        super().__init__(
            f"Transaction {transaction_id} ({swap_type}) has {record_count} records; "
            f"cannot resolve replacement"
        )
