"""FastAPI dependencies for the KeyHive API.

Provides dependency injection for:
- Database sessions
- Managers (Assignment, Hive, Key)
- Services (Disputes, Magic links, Tokens)
- Actor identity
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keyhive.config import get_settings
from keyhive.db.session import get_session_dependency
from keyhive.errors import UnauthenticatedError, ValidationError
from keyhive.identity import SYSTEM_ACTOR, Actor, ActorRole
from keyhive.managers.assignment import AssignmentManager
from keyhive.managers.hive import HiveRegistry
from keyhive.managers.key import KeyManager
from keyhive.services.audit import AuditLogger
from keyhive.services.disputes import DisputeService
from keyhive.services.magic_link import MagicLinkService
from keyhive.services.tokens import AccessTokenValidator

logger = structlog.get_logger()


def get_audit_logger(request: Request) -> AuditLogger:
    """Audit logger configured at startup, or a log-only one."""
    return getattr(request.app.state, "audit", None) or AuditLogger()


SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]
AuditDep = Annotated[AuditLogger, Depends(get_audit_logger)]


async def get_key_manager(session: SessionDep, audit: AuditDep) -> KeyManager:
    return KeyManager(session, audit)


async def get_hive_registry(session: SessionDep, audit: AuditDep) -> HiveRegistry:
    return HiveRegistry(session, audit)


async def get_assignment_manager(session: SessionDep, audit: AuditDep) -> AssignmentManager:
    return AssignmentManager(session, audit=audit)


AssignmentManagerDep = Annotated[AssignmentManager, Depends(get_assignment_manager)]


async def get_dispute_service(
    session: SessionDep,
    assignments: AssignmentManagerDep,
    audit: AuditDep,
) -> DisputeService:
    return DisputeService(session, assignments, audit)


async def get_magic_link_service(
    session: SessionDep,
    assignments: AssignmentManagerDep,
    audit: AuditDep,
) -> MagicLinkService:
    return MagicLinkService(session, assignments, audit=audit)


async def get_token_validator(session: SessionDep) -> AccessTokenValidator:
    return AccessTokenValidator(session)


def get_actor(request: Request) -> Actor:
    """Resolve the acting identity from trusted upstream headers.

    Flow:
    1. X-Actor-Id and X-Actor-Role both present → that actor
    2. Only one of them → 401
    3. Neither and allow_anonymous → system admin actor
    4. Otherwise → 401

    Raises:
        UnauthenticatedError: Identity missing or incomplete
        ValidationError: Unknown role
    """
    actor_id = request.headers.get("X-Actor-Id")
    role = request.headers.get("X-Actor-Role")

    if actor_id and role:
        try:
            return Actor(id=actor_id, role=ActorRole(role.strip().lower()))
        except ValueError:
            raise ValidationError(
                f"Unknown actor role: {role}",
                details={"allowed": [r.value for r in ActorRole]},
            ) from None

    if actor_id or role:
        raise UnauthenticatedError("Both X-Actor-Id and X-Actor-Role are required")

    if get_settings().security.allow_anonymous:
        logger.debug("auth.anonymous")
        return SYSTEM_ACTOR

    raise UnauthenticatedError()


# Type aliases for cleaner dependency injection
ActorDep = Annotated[Actor, Depends(get_actor)]
KeyManagerDep = Annotated[KeyManager, Depends(get_key_manager)]
HiveRegistryDep = Annotated[HiveRegistry, Depends(get_hive_registry)]
DisputeServiceDep = Annotated[DisputeService, Depends(get_dispute_service)]
MagicLinkServiceDep = Annotated[MagicLinkService, Depends(get_magic_link_service)]
TokenValidatorDep = Annotated[AccessTokenValidator, Depends(get_token_validator)]
