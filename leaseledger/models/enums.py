from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    LANDLORD = "landlord"
    PROPERTY_MANAGER = "property_manager"
    TENANT = "tenant"
    VENDOR = "vendor"


# Evaluation order for multi-role principals
ROLE_PRECEDENCE = (Role.ADMIN, Role.LANDLORD, Role.PROPERTY_MANAGER, Role.TENANT, Role.VENDOR)
MANAGER_ROLES = frozenset({Role.LANDLORD, Role.PROPERTY_MANAGER})


class LeaseStatus(str, Enum):
    ACTIVE = "active"
    PENDING_RENEWAL = "pending_renewal"
    RENEWED = "renewed"
    TERMINATED = "terminated"
    EXPIRED = "expired"


LIVE_LEASE_STATUSES = frozenset({LeaseStatus.ACTIVE, LeaseStatus.PENDING_RENEWAL})
TERMINAL_LEASE_STATUSES = frozenset({LeaseStatus.RENEWED, LeaseStatus.TERMINATED, LeaseStatus.EXPIRED})


class RentStatus(str, Enum):
    DUE = "due"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"
    CANCELLED = "cancelled"


# Statuses that still accept payments; "overdue" is never stored
OPEN_RENT_STATUSES = frozenset({RentStatus.DUE, RentStatus.PARTIALLY_PAID})
CLOSED_RENT_STATUSES = frozenset({RentStatus.PAID, RentStatus.WAIVED, RentStatus.CANCELLED})


class Cadence(str, Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    MOBILE_PAYMENT = "mobile_payment"
    OTHER = "other"


class DocumentType(str, Enum):
    LEASE_AGREEMENT = "lease_agreement"
    RENEWAL_NOTICE = "renewal_notice"
    TERMINATION_NOTICE = "termination_notice"
    RENT_REPORT = "rent_report"
    OTHER = "other"


class ActorKind(str, Enum):
    USER = "user"
    VENDOR = "vendor"
    SYSTEM = "system"
