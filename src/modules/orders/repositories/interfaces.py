"""Order repository interface.

Extends ``IRepository[Order]`` with what the order aggregate needs:
atomic placement with items, a versioned compare-and-swap commit that
also writes staged audit rows and outbox events, and the queries behind
the expiry sweep and the return pool.

The service layer depends exclusively on this contract.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from modules.orders.models import Order


@dataclass(frozen=True)
class CommitGuard:
    """Extra predicates a commit must satisfy besides the expected version.

    - ``free_slot``: the stored free-pool assignment has no transporter yet.
    - ``live_assignment``: the stored assignment has not expired at commit time.
    - ``unresolved_assignment``: the stored assignment has not been accepted.
    """

    free_slot: bool = False
    live_assignment: bool = False
    unresolved_assignment: bool = False


class IOrderRepository(IRepository["Order"]):
    """Repository contract for the Order aggregate root.

    The aggregate includes items, status history and assignment records.
    """

    @abstractmethod
    def create(self, data: Dict[str, Any]) -> Order:
        """Create an order with its items and staged audit rows atomically.

        ``data`` must include ``family``, ``wholesaler_id``, ``items`` (dicts
        with ``product_ref``, ``quantity``, ``unit_price``, ``total_price``)
        and may include ``retailer_id``, ``supplier_id``, ``total_amount``,
        ``final_amount``, ``notes`` and ``idempotency_key``.
        """

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with items and audit rows prefetched."""

    @abstractmethod
    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Order]:
        """List orders with optional ORM-style filters."""

    @abstractmethod
    def for_participant(
        self,
        actor_id: Optional[str] = None,
        open_offers_as_of: Optional[datetime] = None,
    ) -> Iterable[Order]:
        """Orders ``actor_id`` takes part in, lazily evaluated; all when ``None``.

        With ``open_offers_as_of`` the free-pool offers still open at that
        time are included too.
        """

    @abstractmethod
    def save(self, entity: Order) -> Order:
        """Persist a freshly placed order with its staged audit rows and events."""

    @abstractmethod
    def compare_and_swap(
        self,
        order: Order,
        expected_version: int,
        guard: Optional[CommitGuard] = None,
        as_of: Optional[datetime] = None,
    ) -> bool:
        """Persist the mutable fields of ``order`` if nobody else has.

        Succeeds only when the stored version still equals
        ``expected_version`` and every ``guard`` predicate holds (evaluated
        against ``as_of``).  On success the staged audit rows and domain
        events are written in the same transaction and ``order.version``
        is bumped.  Returns ``False`` without writing anything otherwise.
        """

    @abstractmethod
    def find_expired_assignments(self, now: datetime) -> List[Order]:
        """Orders whose pending assignment expired at or before ``now``."""

    @abstractmethod
    def list_available_returns(self, now: datetime) -> List[Order]:
        """Wholesaler → supplier orders waiting in the open return pool."""

    @abstractmethod
    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        """Retrieve an order by its idempotency key."""
