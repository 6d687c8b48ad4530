"""Access token validator.

Issues, validates and consumes the hashed one-time tokens derived from
assignment codes. Methods never commit: they run inside the caller's
transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.config import Settings, get_settings
from keyhive.errors import AlreadyUsedError, CodeExpiredError, NotFoundError
from keyhive.models.access_token import AccessToken, TokenPurpose, TokenType
from keyhive.models.types import new_id
from keyhive.services.codes import hash_code
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()


class AccessTokenValidator:
    """Lifecycle of AccessToken rows."""

    def __init__(self, db_session: AsyncSession, settings: Settings | None = None) -> None:
        self._db = db_session
        self._settings = settings or get_settings()
        self._log = logger.bind(service="tokens")

    def default_ttl(self, purpose: TokenPurpose) -> timedelta:
        codes = self._settings.codes
        if TokenPurpose(purpose) == TokenPurpose.DROP_OFF:
            return timedelta(hours=codes.drop_off_ttl_hours)
        return timedelta(hours=codes.pickup_ttl_hours)

    async def issue(
        self,
        assignment_id: str,
        code: str,
        purpose: TokenPurpose,
        *,
        token_type: TokenType = TokenType.OTP,
        created_by: str | None = None,
        now: datetime | None = None,
    ) -> AccessToken:
        """Record a token for ``code``; only its hash is stored."""
        now = now or utcnow()
        token = AccessToken(
            id=new_id("tok"),
            key_assignment_id=assignment_id,
            token_type=token_type,
            purpose=purpose,
            token_hash=hash_code(code),
            expires_at=now + self.default_ttl(purpose),
            created_by=created_by,
            created_at=now,
        )
        self._db.add(token)
        await self._db.flush()

        self._log.info(
            "token.issue",
            token_id=token.id,
            assignment_id=assignment_id,
            purpose=token.purpose.value,
            expires_at=token.expires_at.isoformat(),
        )
        return token

    async def get_for_assignment(
        self,
        assignment_id: str,
        purpose: TokenPurpose,
    ) -> AccessToken | None:
        """Most recent token of ``purpose`` for an assignment."""
        result = await self._db.execute(
            select(AccessToken)
            .where(
                AccessToken.key_assignment_id == assignment_id,
                AccessToken.purpose == purpose,
            )
            .order_by(AccessToken.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    def check(self, token: AccessToken, *, now: datetime | None = None) -> None:
        """Raise if the token can no longer be used.

        Raises:
            CodeExpiredError: Past expires_at, or revoked
            AlreadyUsedError: Already consumed
        """
        if token.revoked_at is not None:
            raise CodeExpiredError(
                "This code has been revoked",
                details={"token_id": token.id, "reason": "revoked"},
            )
        if token.is_expired(now):
            raise CodeExpiredError(
                details={
                    "token_id": token.id,
                    "reason": "expired",
                    "expires_at": token.expires_at.isoformat(),
                }
            )
        if token.used_at is not None:
            raise AlreadyUsedError(details={"token_id": token.id})

    async def consume(self, token: AccessToken, *, now: datetime | None = None) -> None:
        """Mark a token used, exactly once.

        Conditional on ``used_at IS NULL`` so a concurrent consumer loses.

        Raises:
            AlreadyUsedError: Another request consumed it first
        """
        now = now or utcnow()
        result = await self._db.execute(
            update(AccessToken)
            .where(AccessToken.id == token.id, AccessToken.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise AlreadyUsedError(details={"token_id": token.id})
        self._log.info("token.consume", token_id=token.id)

    async def lookup(self, token_value: str, token_type: TokenType) -> AccessToken:
        """Find the most recent token matching a presented value.

        Raises:
            NotFoundError: No token with this value and type
        """
        result = await self._db.execute(
            select(AccessToken)
            .where(
                AccessToken.token_hash == hash_code(token_value),
                AccessToken.token_type == token_type,
            )
            .order_by(AccessToken.created_at.desc())
            .limit(1)
        )
        token = result.scalars().first()
        if token is None:
            raise NotFoundError("Token not found")
        return token

    async def validate(
        self,
        token_value: str,
        token_type: TokenType,
        *,
        now: datetime | None = None,
    ) -> str:
        """Check a presented token and return its assignment id.

        Never consumes: pickup and drop-off tokens are consumed only by the
        assignment transition they unlock (see
        ``AssignmentManager.redeem_token``).

        Raises:
            NotFoundError: No token with this value and type
            CodeExpiredError: Past expiry or revoked
            AlreadyUsedError: Already consumed
        """
        token = await self.lookup(token_value, token_type)
        self.check(token, now=now)
        return token.key_assignment_id

    async def revoke_outstanding(
        self,
        assignment_id: str,
        *,
        now: datetime | None = None,
    ) -> int:
        """Revoke every unused, unrevoked token of an assignment."""
        result = await self._db.execute(
            update(AccessToken)
            .where(
                AccessToken.key_assignment_id == assignment_id,
                AccessToken.used_at.is_(None),
                AccessToken.revoked_at.is_(None),
            )
            .values(revoked_at=now or utcnow())
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount:
            self._log.info(
                "token.revoke_outstanding",
                assignment_id=assignment_id,
                count=result.rowcount,
            )
        return result.rowcount
