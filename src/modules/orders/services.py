"""Order service layer (use cases).

The single entry point for every order mutation and query.  Commands
follow the same unit of work:

1. Read the order (no lock).
2. Expire a stale assignment first and commit that on its own, so expiry
   always wins once its deadline has passed.
3. Validate the requested transition for the caller's role, check that the
   caller is a party to the order, and apply the transition's side effects
   (assignment, cancellation, dispute, return) in memory.
4. Commit through the repository's compare-and-swap.  A lost race is
   retried once against a fresh read; a second loss is a ``StoreConflict``.
5. After commit, hand the collected domain events to the event bus.

Domain errors never escape: every command returns an ``OrderResult``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import Avg, Count, Sum
from django.utils import timezone

from modules.orders.assignments import ACCEPT, REJECT, AssignmentCoordinator
from modules.orders.audit import AuditTrailRecorder
from modules.orders.constants import (
    DEFAULT_ASSIGNMENT_TTL_MINUTES,
    DEFAULT_RETURN_POOL_TTL_MINUTES,
    FAMILY_PARTICIPANTS,
    FAMILY_STATUSES,
    STATISTICS_TIMEFRAMES,
    STORE_CONFLICT_ATTEMPTS,
    ActorRole,
    AssignmentMode,
    AssignmentPurpose,
    OrderFamily,
    OrderStatus,
    ReturnAction,
)
from modules.orders.dtos import (
    Actor,
    HandleReturnDTO,
    OrderResult,
    OrderStatisticsDTO,
    PlaceOrderDTO,
    StatusChangeDTO,
)
from modules.orders.events import OrderPlaced, OrderStatusChanged
from modules.orders.exceptions import (
    InvalidTransition,
    NotParticipant,
    OrderDomainError,
    OrderNotFound,
    StoreConflict,
)
from modules.orders.repositories.interfaces import CommitGuard
from modules.orders.returns import ReturnDisputeHandler
from modules.orders.transitions import (
    ACCEPTANCE_STATUSES,
    REJECTION_STATUS,
    Effect,
    TransitionRule,
    validate,
)
from shared.infrastructure.bus import event_bus as default_event_bus

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from shared.domain.bus import IEventBus
    from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)

# (order, now) -> guard for the commit
Operation = Callable[["Order", datetime], Optional[CommitGuard]]


class OrderService:
    """Application service for order use cases.

    Receives its repository (and optionally its collaborators and clock)
    via constructor injection.
    """

    def __init__(
        self,
        order_repository: IOrderRepository,
        *,
        recorder: Optional[AuditTrailRecorder] = None,
        coordinator: Optional[AssignmentCoordinator] = None,
        returns_handler: Optional[ReturnDisputeHandler] = None,
        event_bus: Optional[IEventBus] = None,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self._order_repo = order_repository
        self._event_bus = event_bus or default_event_bus
        self._clock = clock
        self._recorder = recorder or AuditTrailRecorder()
        self._coordinator = coordinator or AssignmentCoordinator(
            self._recorder,
            order_repository,
            assignment_ttl=timedelta(
                minutes=getattr(
                    settings,
                    "ORDER_ASSIGNMENT_TTL_MINUTES",
                    DEFAULT_ASSIGNMENT_TTL_MINUTES,
                )
            ),
            return_pool_ttl=timedelta(
                minutes=getattr(
                    settings,
                    "ORDER_RETURN_POOL_TTL_MINUTES",
                    DEFAULT_RETURN_POOL_TTL_MINUTES,
                )
            ),
            publish=self._publish_after_commit,
        )
        self._returns = returns_handler or ReturnDisputeHandler(
            self._recorder, self._coordinator
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @transaction.atomic
    def place_order(self, actor: Actor, dto: PlaceOrderDTO) -> OrderResult:
        """Create a ``pending`` order on behalf of the buying party.

        The buyer is the retailer for retailer → wholesaler orders and the
        wholesaler for wholesaler → supplier orders.
        """
        log = logger.bind(actor_id=actor.id, family=dto.family)
        log.info("order.placement_started")

        buyer_role = (
            ActorRole.RETAILER
            if dto.family == OrderFamily.RETAILER_WHOLESALER
            else ActorRole.WHOLESALER
        )
        buyer_id = dto.retailer_id if buyer_role == ActorRole.RETAILER else dto.wholesaler_id
        if not actor.is_admin and (actor.role != buyer_role or actor.id != buyer_id):
            exc = NotParticipant(f"Only the {buyer_role} on the order may place it.")
            log.warning("order.operation_denied", code=exc.code, detail=exc.detail)
            return OrderResult.failure(exc)

        if dto.idempotency_key:
            existing = self._order_repo.get_by_idempotency_key(dto.idempotency_key)
            if existing:
                log.info(
                    "order.idempotency_hit",
                    order_id=str(existing.id),
                    key=dto.idempotency_key,
                )
                return OrderResult.success(existing)

        order = self._order_repo.create(
            {
                "family": dto.family,
                "retailer_id": dto.retailer_id,
                "wholesaler_id": dto.wholesaler_id,
                "supplier_id": dto.supplier_id,
                "items": [
                    {
                        "product_ref": item.product_ref,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                        "total_price": item.line_total,
                    }
                    for item in dto.items
                ],
                "total_amount": dto.computed_total,
                "final_amount": dto.final_amount,
                "notes": dto.notes,
                "idempotency_key": dto.idempotency_key,
            }
        )

        self._recorder.record_transition(
            order, None, OrderStatus.PENDING, actor, self._clock(), "Order placed"
        )
        order.add_domain_event(
            OrderPlaced(
                aggregate_id=order.id,
                family=order.family,
                order_number=order.order_number,
                recipients=tuple(p for p in order.participants() if p != actor.id),
            )
        )
        events = order.domain_events
        self._order_repo.save(order)
        self._publish_after_commit(events)

        log.info("order.placed", order_id=str(order.id), order_number=order.order_number)
        return OrderResult.success(self._order_repo.get_by_id(str(order.id)) or order)

    def update_status(
        self, order_id: UUID | str, actor: Actor, dto: StatusChangeDTO
    ) -> OrderResult:
        """Move an order to ``dto.status``.

        Assignment, acceptance, rejection, dispute and return requests that
        arrive as a plain status change are routed to the same code paths
        as their dedicated commands.
        """
        return self._execute(
            "update_status",
            order_id,
            actor,
            partial(self._route_status_change, actor=actor, dto=dto),
            requested_status=dto.status,
        )

    def assign_transporter(
        self,
        order_id: UUID | str,
        actor: Actor,
        mode: str = AssignmentMode.FREE,
        transporter_id: Optional[str] = None,
        notes: str = "",
    ) -> OrderResult:
        def operation(order: Order, now: datetime) -> Optional[CommitGuard]:
            target = (
                OrderStatus.RETURN_REQUESTED
                if order.status == OrderStatus.RETURN_REQUESTED
                else OrderStatus.ASSIGNED_TO_TRANSPORTER
            )
            dto = StatusChangeDTO(
                status=target,
                assignment_type=mode,
                transporter_id=transporter_id,
                notes=notes,
            )
            return self._apply(order, actor, validate(order, actor.role, target), dto, now)

        return self._execute("assign_transporter", order_id, actor, operation)

    def accept_assignment(self, order_id: UUID | str, actor: Actor) -> OrderResult:
        return self._execute(
            "accept_assignment",
            order_id,
            actor,
            partial(self._accept, actor=actor, requested=None),
        )

    def reject_assignment(
        self, order_id: UUID | str, actor: Actor, reason: str = ""
    ) -> OrderResult:
        def operation(order: Order, now: datetime) -> Optional[CommitGuard]:
            dto = StatusChangeDTO(status=REJECTION_STATUS[order.family], reason=reason)
            return self._reject(order, now, actor=actor, dto=dto)

        return self._execute("reject_assignment", order_id, actor, operation)

    def raise_dispute(
        self, order_id: UUID | str, actor: Actor, reason: str = ""
    ) -> OrderResult:
        return self.update_status(
            order_id, actor, StatusChangeDTO(status=OrderStatus.DISPUTED, reason=reason)
        )

    def resolve_dispute(
        self,
        order_id: UUID | str,
        actor: Actor,
        notes: str,
        resolution_type: Optional[str] = None,
        compensation_amount: Optional[Decimal] = None,
    ) -> OrderResult:
        """Wholesaler settles an open dispute and certifies the order."""
        return self.update_status(
            order_id,
            actor,
            StatusChangeDTO(
                status=OrderStatus.CERTIFIED,
                notes=notes,
                resolution_type=resolution_type,
                compensation_amount=compensation_amount,
            ),
        )

    def request_return(
        self, order_id: UUID | str, actor: Actor, reason: str = ""
    ) -> OrderResult:
        return self.update_status(
            order_id,
            actor,
            StatusChangeDTO(status=OrderStatus.RETURN_REQUESTED, reason=reason),
        )

    def handle_return(
        self, order_id: UUID | str, actor: Actor, dto: HandleReturnDTO
    ) -> OrderResult:
        """Wholesaler accepts or rejects goods returned after a dispute."""
        target = (
            OrderStatus.RETURN_ACCEPTED
            if dto.action == ReturnAction.ACCEPT
            else OrderStatus.RETURN_REJECTED
        )
        change = StatusChangeDTO(
            status=target,
            rejection_reason=dto.rejection_reason,
            notes=dto.return_notes,
        )

        def operation(order: Order, now: datetime) -> Optional[CommitGuard]:
            if order.family != OrderFamily.RETAILER_WHOLESALER:
                raise InvalidTransition(
                    "Returns of supplier orders complete on delivery to the supplier.",
                    current_status=order.status,
                    requested_status=target,
                )
            rule = validate(order, actor.role, target, change.payload())
            return self._apply(order, actor, rule, change, now)

        return self._execute(
            "handle_return", order_id, actor, operation, requested_status=target
        )

    def sweep_expired(self) -> List[str]:
        """Expire every stale assignment; returns the ids of expired orders."""
        return self._coordinator.sweep_expired(self._clock())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: UUID | str) -> OrderResult:
        order = self._order_repo.get_by_id(str(order_id))
        if not order:
            return OrderResult.failure(OrderNotFound(f"Order {order_id} not found."))
        return OrderResult.success(order)

    def list_orders(
        self, actor: Actor, filters: Optional[Dict[str, Any]] = None
    ) -> Iterable[Order]:
        """Orders visible to ``actor``: every order for admins, else their own.

        Transporters also see every free-pool offer that is still open.
        """
        if actor.is_admin:
            orders = self._order_repo.for_participant(None)
        elif actor.role == ActorRole.TRANSPORTER:
            orders = self._order_repo.for_participant(
                actor.id, open_offers_as_of=self._clock()
            )
        else:
            orders = self._order_repo.for_participant(actor.id)
        if filters:
            orders = orders.filter(**filters)
        return orders

    def can_view(self, order: Order, actor: Actor) -> bool:
        """Whether ``actor`` may read ``order`` and its timeline."""
        if actor.is_admin or actor.id in order.participants():
            return True
        if actor.role != ActorRole.TRANSPORTER:
            return False
        return order.assignment_transporter_id == actor.id or order.is_open_offer(
            self._clock()
        )

    def statistics(self, actor: Actor, timeframe: str = "all") -> OrderStatisticsDTO:
        """Per-status and per-family counts of the orders ``actor`` takes part in.

        ``timeframe`` is a key of ``STATISTICS_TIMEFRAMES``; only orders
        created inside the window are counted.
        """
        days = STATISTICS_TIMEFRAMES[timeframe]
        since = self._clock() - timedelta(days=days) if days is not None else None

        orders = self._order_repo.for_participant(None if actor.is_admin else actor.id)
        orders = orders.prefetch_related(None).order_by()
        if since is not None:
            orders = orders.filter(created_at__gte=since)

        families = [
            family
            for family, roles in FAMILY_PARTICIPANTS.items()
            if actor.is_admin or actor.role in roles
        ]
        by_status = {
            str(status): 0
            for family in families
            for status in sorted(FAMILY_STATUSES[family])
        }
        by_status.update(orders.values_list("status").annotate(count=Count("id")))
        by_family = {str(family): 0 for family in families}
        by_family.update(orders.values_list("family").annotate(count=Count("id")))

        totals = orders.aggregate(
            total_orders=Count("id"),
            total_amount=Sum("total_amount"),
            average_order_value=Avg("total_amount"),
        )
        cents = Decimal("0.01")
        stats = OrderStatisticsDTO(
            timeframe=timeframe,
            since=since,
            total_orders=totals["total_orders"],
            total_amount=(totals["total_amount"] or Decimal("0")).quantize(cents),
            average_order_value=Decimal(totals["average_order_value"] or 0).quantize(cents),
            by_status=by_status,
            by_family=by_family,
        )
        logger.info(
            "order.statistics_computed",
            actor_id=actor.id,
            timeframe=timeframe,
            total_orders=stats.total_orders,
        )
        return stats

    def available_returns(self) -> List[Order]:
        """Supplier-bound returns still waiting for a transporter."""
        return self._order_repo.list_available_returns(self._clock())

    def timeline(self, order_id: UUID | str) -> OrderResult:
        order = self._order_repo.get_by_id(str(order_id))
        if not order:
            return OrderResult.failure(OrderNotFound(f"Order {order_id} not found."))
        return OrderResult.success(order, timeline=self._recorder.timeline(order))

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _execute(
        self,
        name: str,
        order_id: UUID | str,
        actor: Actor,
        operation: Operation,
        requested_status: Optional[str] = None,
    ) -> OrderResult:
        log = logger.bind(
            operation=name,
            order_id=str(order_id),
            actor_id=actor.id,
            actor_role=actor.role,
            requested_status=requested_status,
        )
        try:
            order = self._commit_with_retry(order_id, operation, log)
        except OrderDomainError as exc:
            log.warning("order.operation_denied", code=exc.code, detail=exc.detail)
            return OrderResult.failure(exc)

        log.info("order.status_updated", status=order.status, version=order.version)
        return OrderResult.success(order)

    def _commit_with_retry(
        self, order_id: UUID | str, operation: Operation, log: Any
    ) -> Order:
        for attempt in range(1, STORE_CONFLICT_ATTEMPTS + 1):
            order = self._order_repo.get_by_id(str(order_id))
            if not order:
                raise OrderNotFound(f"Order {order_id} not found.")

            now = self._clock()
            if not self._commit_expiry(order, now):
                log.info("order.retrying_after_conflict", attempt=attempt)
                continue

            expected_version = order.version
            guard = operation(order, now)
            events = order.domain_events
            if self._order_repo.compare_and_swap(
                order, expected_version, guard=guard, as_of=self._clock()
            ):
                self._publish_after_commit(events)
                return order
            log.info("order.retrying_after_conflict", attempt=attempt)

        raise StoreConflict(
            f"Order {order_id} was modified concurrently; reload and try again."
        )

    def _commit_expiry(self, order: Order, now: datetime) -> bool:
        """Persist a lazy expiry before anything else touches the order."""
        expected_version = order.version
        if not self._coordinator.expire_if_stale(order, now):
            return True
        events = order.domain_events
        committed = self._order_repo.compare_and_swap(
            order,
            expected_version,
            guard=CommitGuard(unresolved_assignment=True),
            as_of=now,
        )
        if committed:
            self._publish_after_commit(events)
        return committed

    def _publish_after_commit(self, events: List[DomainEvent]) -> None:
        if events:
            transaction.on_commit(partial(self._event_bus.publish_all, events))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route_status_change(
        self, order: Order, now: datetime, *, actor: Actor, dto: StatusChangeDTO
    ) -> Optional[CommitGuard]:
        if actor.role == ActorRole.TRANSPORTER:
            if dto.status in ACCEPTANCE_STATUSES[order.family]:
                return self._accept(order, now, actor=actor, requested=dto.status)
            if (
                dto.status == REJECTION_STATUS[order.family]
                and order.status == OrderStatus.ASSIGNED_TO_TRANSPORTER
            ):
                return self._reject(order, now, actor=actor, dto=dto)
        rule = validate(order, actor.role, dto.status, dto.payload())
        return self._apply(order, actor, rule, dto, now)

    def _accept(
        self, order: Order, now: datetime, *, actor: Actor, requested: Optional[str]
    ) -> Optional[CommitGuard]:
        if actor.role != ActorRole.TRANSPORTER:
            raise NotParticipant("Only transporters accept assignments.")
        self._coordinator.ensure_claimable(order, actor.id)
        target = self._coordinator.acceptance_status(order)
        if requested is not None and requested != target:
            raise InvalidTransition(
                f"Accepting this assignment moves the order to '{target}'.",
                current_status=order.status,
                requested_status=requested,
                required_status=target,
                required_role=ActorRole.TRANSPORTER,
                allowed=[target],
            )
        rule = validate(order, actor.role, target)
        return self._apply(order, actor, rule, StatusChangeDTO(status=target), now)

    def _reject(
        self, order: Order, now: datetime, *, actor: Actor, dto: StatusChangeDTO
    ) -> Optional[CommitGuard]:
        if actor.role != ActorRole.TRANSPORTER:
            raise NotParticipant("Only transporters reject assignments.")
        self._coordinator.ensure_claimable(order, actor.id)
        rule = validate(order, actor.role, dto.status, dto.payload())
        return self._apply(order, actor, rule, dto, now)

    # ------------------------------------------------------------------
    # Applying a validated transition
    # ------------------------------------------------------------------

    def _apply(
        self,
        order: Order,
        actor: Actor,
        rule: TransitionRule,
        dto: StatusChangeDTO,
        now: datetime,
    ) -> Optional[CommitGuard]:
        if actor.role != ActorRole.TRANSPORTER and not order.is_participant(
            actor.id, actor.role
        ):
            raise NotParticipant(
                f"Actor {actor.id} is not the {actor.role} on order {order.order_number}."
            )

        old_status = order.status
        guard: Optional[CommitGuard] = None
        effect = rule.effect

        if effect == Effect.ASSIGNMENT:
            self._coordinator.assign(
                order,
                dto.assignment_type or AssignmentMode.FREE,
                dto.transporter_id,
                now,
            )
        elif effect == Effect.ACCEPTANCE:
            guard = self._coordinator.claim_guard(order)
            purpose = order.assignment.purpose
            self._coordinator.resolve(order, actor.id, ACCEPT, now)
            if purpose == AssignmentPurpose.RETURN:
                self._returns.on_return_pickup_accepted(order, now)
        elif effect == Effect.REJECTION:
            guard = self._coordinator.claim_guard(order)
            self._coordinator.resolve(order, actor.id, REJECT, now, reason=dto.reason or "")
        elif effect == Effect.TRANSPORTER_CANCELLATION:
            self._coordinator.cancel_engagement(order, actor.id, dto.reason or "", now)
        elif effect == Effect.CANCELLATION:
            self._recorder.record_cancellation(order, actor, dto.reason or "", old_status, now)
        elif effect == Effect.DISPUTE:
            self._returns.raise_dispute(order, actor, dto.reason or "", now)
        elif effect == Effect.DISPUTE_RESOLUTION:
            self._returns.settle_dispute(
                order,
                actor,
                dto.notes,
                now,
                resolution_type=dto.resolution_type,
                compensation_amount=dto.compensation_amount,
            )
        elif effect == Effect.RETURN_REQUEST:
            self._returns.request_return(order, actor, dto.reason or "", now)
        elif effect == Effect.RETURN_ACCEPTANCE:
            self._returns.accept_return(order, actor, dto.notes, now)
        elif effect == Effect.RETURN_REJECTION:
            self._returns.reject_return(
                order, actor, dto.rejection_reason or "", dto.notes, now
            )
        elif effect == Effect.RETURN_COMPLETION:
            self._ensure_engaged(order, actor)
            self._returns.complete_return(order, now)
        else:
            self._ensure_engaged(order, actor)

        order.status = rule.target
        self._recorder.record_transition(
            order,
            old_status,
            rule.target,
            actor,
            now,
            dto.notes or dto.reason or dto.rejection_reason or "",
        )
        order.add_domain_event(
            OrderStatusChanged(
                aggregate_id=order.id,
                family=order.family,
                order_number=order.order_number,
                old_status=old_status,
                new_status=rule.target,
                actor_id=actor.id,
                actor_role=actor.role,
                recipients=tuple(p for p in order.participants() if p != actor.id),
            )
        )
        logger.info(
            "order.transition_applied",
            order_id=str(order.id),
            old_status=old_status,
            new_status=rule.target,
            effect=effect,
        )
        return guard

    def _ensure_engaged(self, order: Order, actor: Actor) -> None:
        if actor.role == ActorRole.TRANSPORTER and order.transporter_id != actor.id:
            raise NotParticipant(
                f"Transporter {actor.id} is not carrying order {order.order_number}."
            )
