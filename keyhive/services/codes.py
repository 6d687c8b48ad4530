"""Code and token generation.

Handles drop-off/pickup code generation, code hashing and comparison, and
signed magic-link tokens.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.config import CodeConfig, MagicLinkConfig, Settings, get_settings
from keyhive.errors import CodeExpiredError, InvalidCodeError, StorageError
from keyhive.models.assignment import KeyAssignment
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()

# Link format: {assignment_id}.{expires_epoch}.{signature}
_LINK_SEPARATOR = "."


def _epoch(value: datetime) -> int:
    """Unix seconds for a naive UTC datetime."""
    return int(value.replace(tzinfo=UTC).timestamp())


def normalize_code(code: str) -> str:
    """Canonical form of a user-typed code (whitespace and case ignored)."""
    return "".join(code.split()).upper()


def hash_code(code: str) -> str:
    """SHA-256 hex digest of the normalized code."""
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def codes_match(presented: str, expected: str) -> bool:
    """Constant-time comparison of two codes."""
    return hmac.compare_digest(
        normalize_code(presented).encode(),
        normalize_code(expected).encode(),
    )


class CodeGenerator:
    """Generates assignment codes and signs magic-link tokens."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._codes: CodeConfig = settings.codes
        self._links: MagicLinkConfig = settings.magic_link

    def generate(self, length: int) -> str:
        """Random code over the configured alphabet."""
        alphabet = self._codes.alphabet
        return "".join(secrets.choice(alphabet) for _ in range(length))

    async def generate_unique(
        self,
        session: AsyncSession,
        column,
        length: int,
    ) -> str:
        """Generate a code not yet present in ``column``.

        The unique constraint on the column is the final guard; this check
        keeps collisions from surfacing as integrity errors.

        Raises:
            StorageError: If every attempt collided
        """
        for attempt in range(1, self._codes.max_generation_attempts + 1):
            code = self.generate(length)
            result = await session.execute(select(column).where(column == code).limit(1))
            if result.first() is None:
                return code
            logger.warning("codes.collision", column=str(column), attempt=attempt)

        raise StorageError(
            "Could not generate a unique code",
            details={"attempts": self._codes.max_generation_attempts},
        )

    async def drop_off_code(self, session: AsyncSession) -> str:
        return await self.generate_unique(
            session, KeyAssignment.drop_off_code, self._codes.drop_off_length
        )

    async def pickup_code(self, session: AsyncSession) -> str:
        return await self.generate_unique(
            session, KeyAssignment.pickup_code, self._codes.pickup_length
        )

    # -- magic links -------------------------------------------------------

    def _signature(self, payload: str) -> str:
        digest = hmac.new(
            self._links.secret.encode(),
            payload.encode(),
            hashlib.sha256,
        ).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

    def sign_link(self, assignment_id: str, expires_at: datetime) -> str:
        """Create a signed, expiring reference to an assignment."""
        payload = f"{assignment_id}{_LINK_SEPARATOR}{_epoch(expires_at)}"
        return f"{payload}{_LINK_SEPARATOR}{self._signature(payload)}"

    def verify_link(self, token: str, *, now: datetime | None = None) -> str:
        """Verify a magic-link token and return its assignment id.

        Raises:
            InvalidCodeError: Malformed token or bad signature
            CodeExpiredError: Signature is valid but the link has expired
        """
        parts = token.rsplit(_LINK_SEPARATOR, 2)
        if len(parts) != 3:
            raise InvalidCodeError("Malformed link")

        assignment_id, expires_raw, signature = parts
        payload = f"{assignment_id}{_LINK_SEPARATOR}{expires_raw}"
        if not hmac.compare_digest(signature.encode(), self._signature(payload).encode()):
            raise InvalidCodeError("Invalid link signature")

        try:
            expires_epoch = int(expires_raw)
        except ValueError:
            raise InvalidCodeError("Malformed link") from None

        if _epoch(now or utcnow()) > expires_epoch:
            raise CodeExpiredError(
                "This link has expired",
                details={"assignment_id": assignment_id},
            )
        return assignment_id
