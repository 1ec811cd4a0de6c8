import logging

from lending.store import EntityStore

logger = logging.getLogger(__name__)


class InventoryCounter:
    """Adjusts a book's available-copy count through conditional updates only.

    Both operations are a single compare-and-set statement in the store, so two
    callers racing for the last copy can never both win and the count never
    leaves ``[0, total_copies]``. The counter keeps no local copy of the value.
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def try_decrement(self, book_id: int) -> bool:
        """Take one copy. False (and no effect) if none is left."""
        applied = self.store.try_decrement_available(book_id)
        if not applied:
            logger.debug(f"Decrement refused for book {book_id}: no copies left")
        return applied

    def try_increment(self, book_id: int) -> bool:
        """Return one copy. False (and no effect) if the shelf is already full."""
        applied = self.store.try_increment_available(book_id)
        if not applied:
            logger.debug(f"Increment refused for book {book_id}: already at total copies")
        return applied
