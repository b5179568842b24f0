"""Transaction grouper: one shared transaction id per unit of work.

The slot lives in ``Session.info`` so concurrent sessions never share it.
The first version written in a transaction claims its own id; later
versions in the same transaction reuse it. The slot is cleared on commit
and on rollback.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

TRANSACTION_KEY = "recordtrail.transaction_id"
WRITTEN_KEY = "recordtrail.written"


class TransactionGrouper:
    def __init__(self, session=None):
        self.info = session.info if session is not None else {}

    @property
    def current(self) -> Optional[int]:
        return self.info.get(TRANSACTION_KEY)

    def begin_if_absent(self, version_id: int, store) -> Optional[int]:
        """Claim ``version_id`` as the transaction id unless one is already set."""
        self.claim(self.tag_if_absent(version_id, store))
        return self.current

    def tag_if_absent(self, version_id: int, store) -> Optional[int]:
        """Tag the row with its own id when it opens a transaction.

        Returns the id to :meth:`claim` once the write is durable, or None
        when the row joins an existing transaction (or cannot be grouped).
        """
        if not store.column_exists("transaction_id"):
            return None
        if self.current is None and store.transaction_context_active():
            store.tag_transaction(version_id, version_id)
            return version_id
        return None

    def claim(self, transaction_id: Optional[int]) -> None:
        if transaction_id is None or self.current is not None:
            return
        self.info[TRANSACTION_KEY] = transaction_id
        logger.debug("Transaction %s started", transaction_id)

    def remember(self, record) -> None:
        """Note a record whose versions were written in this unit of work."""
        written = self.info.setdefault(WRITTEN_KEY, [])
        if not any(r is record for r in written):
            written.append(record)

    def reset(self) -> list:
        """Clear the slot; return the records written during the unit of work."""
        transaction_id = self.info.pop(TRANSACTION_KEY, None)
        written = self.info.pop(WRITTEN_KEY, [])
        if transaction_id is not None:
            logger.debug("Transaction %s closed", transaction_id)
        return written
