"""Order domain constants.

Status vocabulary for both order families, the actor roles that drive
them, and the enumerations used by transporter assignments.  The
per-role transition table itself lives in ``modules.orders.transitions``.
"""

from django.db import models


class OrderFamily(models.TextChoices):
    RETAILER_WHOLESALER = "retailer_wholesaler", "Retailer → Wholesaler"
    WHOLESALER_SUPPLIER = "wholesaler_supplier", "Wholesaler → Supplier"


class ActorRole(models.TextChoices):
    RETAILER = "retailer", "Retailer"
    WHOLESALER = "wholesaler", "Wholesaler"
    SUPPLIER = "supplier", "Supplier"
    TRANSPORTER = "transporter", "Transporter"
    ADMIN = "admin", "Administrator"


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    # Retailer → Wholesaler
    ACCEPTED = "accepted", "Accepted"
    REJECTED = "rejected", "Rejected"
    PROCESSING = "processing", "Processing"
    # Wholesaler → Supplier
    CONFIRMED = "confirmed", "Confirmed"
    IN_PRODUCTION = "in_production", "In production"
    READY_FOR_DELIVERY = "ready_for_delivery", "Ready for delivery"
    # Transport (both families)
    ASSIGNED_TO_TRANSPORTER = "assigned_to_transporter", "Assigned to transporter"
    ACCEPTED_BY_TRANSPORTER = "accepted_by_transporter", "Accepted by transporter"
    REJECTED_BY_TRANSPORTER = "rejected_by_transporter", "Rejected by transporter"
    CANCELLED_BY_TRANSPORTER = "cancelled_by_transporter", "Cancelled by transporter"
    IN_TRANSIT = "in_transit", "In transit"
    DELIVERED = "delivered", "Delivered"
    CERTIFIED = "certified", "Certified"
    # Disputes and returns
    DISPUTED = "disputed", "Disputed"
    RETURN_TO_WHOLESALER = "return_to_wholesaler", "Returning to wholesaler"
    RETURN_REQUESTED = "return_requested", "Return requested"
    RETURN_ACCEPTED = "return_accepted", "Return accepted"
    RETURN_REJECTED = "return_rejected", "Return rejected"
    RETURN_IN_TRANSIT = "return_in_transit", "Return in transit"
    RETURNED_TO_SUPPLIER = "returned_to_supplier", "Returned to supplier"
    # Cancellations
    CANCELLED = "cancelled", "Cancelled"
    CANCELLED_BY_RETAILER = "cancelled_by_retailer", "Cancelled by retailer"
    CANCELLED_BY_WHOLESALER = "cancelled_by_wholesaler", "Cancelled by wholesaler"


FAMILY_STATUSES: dict[str, frozenset[str]] = {
    OrderFamily.RETAILER_WHOLESALER: frozenset(
        {
            OrderStatus.PENDING,
            OrderStatus.ACCEPTED,
            OrderStatus.REJECTED,
            OrderStatus.PROCESSING,
            OrderStatus.ASSIGNED_TO_TRANSPORTER,
            OrderStatus.ACCEPTED_BY_TRANSPORTER,
            OrderStatus.REJECTED_BY_TRANSPORTER,
            OrderStatus.CANCELLED_BY_TRANSPORTER,
            OrderStatus.IN_TRANSIT,
            OrderStatus.DELIVERED,
            OrderStatus.CERTIFIED,
            OrderStatus.DISPUTED,
            OrderStatus.RETURN_TO_WHOLESALER,
            OrderStatus.RETURN_ACCEPTED,
            OrderStatus.RETURN_REJECTED,
            OrderStatus.CANCELLED_BY_RETAILER,
            OrderStatus.CANCELLED_BY_WHOLESALER,
        }
    ),
    OrderFamily.WHOLESALER_SUPPLIER: frozenset(
        {
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.IN_PRODUCTION,
            OrderStatus.READY_FOR_DELIVERY,
            OrderStatus.ASSIGNED_TO_TRANSPORTER,
            OrderStatus.ACCEPTED_BY_TRANSPORTER,
            OrderStatus.IN_TRANSIT,
            OrderStatus.DELIVERED,
            OrderStatus.CERTIFIED,
            OrderStatus.RETURN_REQUESTED,
            OrderStatus.RETURN_ACCEPTED,
            OrderStatus.RETURN_IN_TRANSIT,
            OrderStatus.RETURNED_TO_SUPPLIER,
            OrderStatus.CANCELLED,
        }
    ),
}

TERMINAL_STATES: dict[str, frozenset[str]] = {
    OrderFamily.RETAILER_WHOLESALER: frozenset(
        {
            OrderStatus.CERTIFIED,
            OrderStatus.REJECTED,
            OrderStatus.CANCELLED_BY_RETAILER,
            OrderStatus.CANCELLED_BY_WHOLESALER,
            OrderStatus.RETURN_ACCEPTED,
        }
    ),
    OrderFamily.WHOLESALER_SUPPLIER: frozenset(
        {
            OrderStatus.CERTIFIED,
            OrderStatus.CANCELLED,
            OrderStatus.RETURNED_TO_SUPPLIER,
        }
    ),
}

# Roles that take part in each family, keyed to the Order field holding the id.
FAMILY_PARTICIPANTS: dict[str, dict[str, str]] = {
    OrderFamily.RETAILER_WHOLESALER: {
        ActorRole.RETAILER: "retailer_id",
        ActorRole.WHOLESALER: "wholesaler_id",
        ActorRole.TRANSPORTER: "transporter_id",
    },
    OrderFamily.WHOLESALER_SUPPLIER: {
        ActorRole.WHOLESALER: "wholesaler_id",
        ActorRole.SUPPLIER: "supplier_id",
        ActorRole.TRANSPORTER: "transporter_id",
    },
}


class AssignmentMode(models.TextChoices):
    SPECIFIC = "specific", "Specific transporter"
    FREE = "free", "Free pool"


class AssignmentPurpose(models.TextChoices):
    DELIVERY = "delivery", "Delivery"
    RETURN = "return", "Return pickup"


class AssignmentOutcome(models.TextChoices):
    ACCEPTED = "accepted", "Accepted"
    REJECTED = "rejected", "Rejected"
    EXPIRED = "expired", "Expired"
    CANCELLED = "cancelled", "Cancelled"


class ReturnAction(models.TextChoices):
    ACCEPT = "accept", "Accept"
    REJECT = "reject", "Reject"


DEFAULT_ASSIGNMENT_TTL_MINUTES = 24 * 60
DEFAULT_RETURN_POOL_TTL_MINUTES = 24 * 60

# A failed compare-and-swap is retried once against a fresh read.
STORE_CONFLICT_ATTEMPTS = 2

ORDER_NUMBER_MAX_RETRIES = 5

# Look-back window of the order statistics, in days (None: all time).
STATISTICS_TIMEFRAMES: dict[str, int | None] = {
    "all": None,
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

ORDER_NUMBER_PREFIXES: dict[str, str] = {
    OrderFamily.RETAILER_WHOLESALER: "RW",
    OrderFamily.WHOLESALER_SUPPLIER: "WS",
}
