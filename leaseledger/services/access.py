"""
Access resolver: the single authorization decision point.

Every service method calls ``authorize`` (or ``scope`` for list queries)
before touching state. Roles are evaluated in precedence order
admin → landlord → property_manager → tenant → vendor and the first role that
allows the intent wins.

Denials come in two flavours:
  * forbidden: the caller can see the target but not perform the intent
               (e.g. a tenant editing their own rent record) → 403
  * concealed: the target is outside the caller's scope → rendered as 404
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import false, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.errors import AccessDenied
from leaseledger.models.enums import MANAGER_ROLES, ROLE_PRECEDENCE, ActorKind, Role
from leaseledger.models.property import PropertyUser
from leaseledger.models.rental import Lease

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: Role
    is_active: bool = True
    email: str | None = None
    ip: str | None = None

    @property
    def actor_kind(self) -> ActorKind:
        return ActorKind.VENDOR if self.role == Role.VENDOR else ActorKind.USER


class Intent(str, Enum):
    READ = "read"
    MUTATE = "mutate"
    RECORD_PAYMENT = "record_payment"
    GENERATE = "generate"
    DELETE = "delete"


class EntityKind(str, Enum):
    PROPERTY = "property"
    UNIT = "unit"
    LEASE = "lease"
    RENT_SCHEDULE = "rent_schedule"
    RENT_RECORD = "rent_record"
    ASSOCIATION = "association"
    MAINTENANCE = "maintenance"


_LABELS = {
    EntityKind.PROPERTY: "Property",
    EntityKind.UNIT: "Unit",
    EntityKind.LEASE: "Lease",
    EntityKind.RENT_SCHEDULE: "Rent schedule",
    EntityKind.RENT_RECORD: "Rent record",
    EntityKind.ASSOCIATION: "Association",
    EntityKind.MAINTENANCE: "Maintenance request",
}

# Entities reachable through a property for landlords / managers
_PROPERTY_SCOPED = frozenset({
    EntityKind.PROPERTY,
    EntityKind.UNIT,
    EntityKind.LEASE,
    EntityKind.RENT_SCHEDULE,
    EntityKind.RENT_RECORD,
    EntityKind.ASSOCIATION,
})
_TENANT_INTENTS = frozenset({Intent.READ, Intent.RECORD_PAYMENT})


@dataclass(frozen=True)
class Target:
    kind: EntityKind
    id: uuid.UUID | None = None
    property_id: uuid.UUID | None = None
    tenant_id: uuid.UUID | None = None  # tenant of the lease the target hangs off
    user_id: uuid.UUID | None = None    # owner of an association

    @property
    def label(self) -> str:
        return _LABELS[self.kind]

    @classmethod
    def lease(cls, lease: Lease) -> "Target":
        return cls(EntityKind.LEASE, lease.id, lease.property_id, lease.tenant_id)

    @classmethod
    def rent_record(cls, record_id: uuid.UUID, lease: Lease) -> "Target":
        return cls(EntityKind.RENT_RECORD, record_id, lease.property_id, lease.tenant_id)

    @classmethod
    def schedule(cls, schedule_id: uuid.UUID | None, lease: Lease) -> "Target":
        return cls(EntityKind.RENT_SCHEDULE, schedule_id, lease.property_id, lease.tenant_id)

    @classmethod
    def for_property(cls, property_id: uuid.UUID) -> "Target":
        return cls(EntityKind.PROPERTY, property_id, property_id)

    @classmethod
    def association(cls, assoc: PropertyUser) -> "Target":
        return cls(EntityKind.ASSOCIATION, assoc.id, assoc.property_id, user_id=assoc.user_id)


@dataclass(frozen=True)
class Scope:
    """What a principal may see in list queries."""
    all: bool = False
    property_ids: frozenset = field(default_factory=frozenset)
    tenant_id: uuid.UUID | None = None

    def lease_clause(self):
        """SQL filter over ``Lease`` rows visible in this scope."""
        if self.all:
            return None
        clauses = []
        if self.property_ids:
            clauses.append(Lease.property_id.in_(list(self.property_ids)))
        if self.tenant_id is not None:
            clauses.append(Lease.tenant_id == self.tenant_id)
        return or_(*clauses) if clauses else false()


def role_allows(role: Role, principal: Principal, intent: Intent, target: Target,
                managed: frozenset) -> bool:
    """Pure decision for one role. ``managed`` is the landlord/manager scope."""
    if role == Role.ADMIN:
        return principal.role == Role.ADMIN
    if role in MANAGER_ROLES:
        return target.kind in _PROPERTY_SCOPED and target.property_id in managed
    if role == Role.TENANT:
        if intent not in _TENANT_INTENTS:
            return False
        if target.kind in (EntityKind.LEASE, EntityKind.RENT_RECORD):
            return target.tenant_id == principal.id
        if target.kind == EntityKind.ASSOCIATION:
            return intent == Intent.READ and target.user_id == principal.id
        return False
    if role == Role.VENDOR:
        return target.kind == EntityKind.MAINTENANCE
    return False


class AccessResolver:
    """Request-scoped; association lookups are cached per principal."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._associations: dict[uuid.UUID, list[tuple[uuid.UUID, list]]] = {}

    async def _active_associations(self, principal: Principal) -> list[tuple[uuid.UUID, list]]:
        """(property_id, roles) pairs for the principal's active associations."""
        if principal.id not in self._associations:
            result = await self.db.execute(
                select(PropertyUser.property_id, PropertyUser.roles).where(
                    PropertyUser.user_id == principal.id,
                    PropertyUser.is_active == True,  # noqa: E712
                )
            )
            self._associations[principal.id] = [(pid, roles or []) for pid, roles in result.all()]
        return self._associations[principal.id]

    async def roles_for(self, principal: Principal) -> list[Role]:
        """Global role plus every scoped role, in precedence order."""
        held = {principal.role}
        for _, roles in await self._active_associations(principal):
            for r in roles:
                held.add(Role(r))
        return [r for r in ROLE_PRECEDENCE if r in held]

    async def managed_property_ids(self, principal: Principal) -> frozenset:
        manager_values = {r.value for r in MANAGER_ROLES}
        return frozenset(
            pid
            for pid, roles in await self._active_associations(principal)
            if manager_values.intersection(roles)
        )

    async def authorize(self, principal: Principal, intent: Intent, target: Target) -> Role:
        """Return the role that allowed the intent, or raise ``AccessDenied``."""
        if not principal.is_active:
            raise AccessDenied("Account is inactive")

        roles = await self.roles_for(principal)
        managed = await self.managed_property_ids(principal)
        for role in roles:
            if role_allows(role, principal, intent, target, managed):
                return role

        logger.warning(
            "Access denied: principal=%s intent=%s target=%s:%s",
            principal.id, intent.value, target.kind.value, target.id,
        )
        if intent != Intent.READ and any(
            role_allows(role, principal, Intent.READ, target, managed) for role in roles
        ):
            raise AccessDenied(f"Not permitted to {intent.value.replace('_', ' ')} this {target.label.lower()}")
        raise AccessDenied(conceal=True, entity=target.label)

    async def can(self, principal: Principal, intent: Intent, target: Target) -> bool:
        try:
            await self.authorize(principal, intent, target)
        except AccessDenied:
            return False
        return True

    async def scope(self, principal: Principal) -> Scope:
        """Visibility for lease / rent list queries."""
        if not principal.is_active:
            raise AccessDenied("Account is inactive")
        roles = await self.roles_for(principal)
        if Role.ADMIN in roles:
            return Scope(all=True)
        if not any(r in roles for r in (Role.LANDLORD, Role.PROPERTY_MANAGER, Role.TENANT)):
            raise AccessDenied("Not permitted to view leases or rent records")
        property_ids = await self.managed_property_ids(principal)
        tenant_id = principal.id if Role.TENANT in roles else None
        return Scope(property_ids=property_ids, tenant_id=tenant_id)

    async def authorize_generate(self, principal: Principal) -> Scope:
        """Generation is open to admins and to managers over their own properties."""
        if not principal.is_active:
            raise AccessDenied("Account is inactive")
        roles = await self.roles_for(principal)
        if Role.ADMIN in roles:
            return Scope(all=True)
        managed = await self.managed_property_ids(principal)
        if any(r in MANAGER_ROLES for r in roles) and managed:
            return Scope(property_ids=managed)
        raise AccessDenied("Not permitted to generate rent records")
