"""Verification code manager — issue, rate-limit, verify, and expire codes.

Codes are scoped to (identifier, auth method, purpose). A code issued for
registration can never satisfy a login or binding check, even with identical
digits and identifier.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from multiauth.config import CodeSettings
from multiauth.delivery.base import Deliverer
from multiauth.errors import InvalidInputError, InvalidVerificationCodeError, RateLimitedError
from multiauth.methods import get_method
from multiauth.models.identity import AuthMethod
from multiauth.models.verification import CodePurpose, VerificationCode
from multiauth.storage.base import IdentityRepository
from multiauth.util import Clock, gen_id, utcnow

logger = logging.getLogger(__name__)


def _purpose(value: CodePurpose | str) -> CodePurpose:
    try:
        return CodePurpose(value)
    except ValueError:
        raise InvalidInputError(f"Unknown code purpose: {value!r}") from None


class VerificationCodeManager:
    def __init__(
        self,
        repository: IdentityRepository,
        settings: CodeSettings | None = None,
        deliverer: Deliverer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings or CodeSettings()
        self._deliverer = deliverer
        self._clock = clock

    def generate_code(self) -> str:
        """Uniform random numeric code with no leading zero (100000-999999 by default)."""
        low = 10 ** (self._settings.length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def issue(
        self,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
        metadata: dict | None = None,
        contact: str | None = None,
    ) -> VerificationCode:
        """Create and persist a new code.

        Raises RateLimitedError when the identifier already received
        ``rate_limit_max`` codes for this method inside the window. The count
        and the insert happen as one conditional write in the repository.
        """
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        now = self._clock()
        code = VerificationCode(
            id=gen_id("code"),
            code=self.generate_code(),
            identifier=normalized,
            auth_method=method.auth_method,
            purpose=_purpose(purpose),
            contact=contact,
            metadata=metadata or {},
            expires_at=now + timedelta(seconds=self._settings.ttl_seconds),
            created_at=now,
        )
        window = self._settings.rate_limit_window_seconds
        allowed = await self._repository.insert_code_if_allowed(
            code,
            window_start=now - timedelta(seconds=window),
            limit=self._settings.rate_limit_max,
        )
        if not allowed:
            logger.warning("Code rate limit reached for %s %s", method.auth_method, normalized)
            raise RateLimitedError(retry_after=window)

        logger.info("Issued %s code for %s %s", code.purpose, method.auth_method, normalized)
        return code

    async def issue_and_deliver(
        self,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
        metadata: dict | None = None,
        contact: str | None = None,
    ) -> tuple[VerificationCode, bool]:
        """Issue a code and hand it to the method's delivery channel.

        Returns the code and whether delivery reported success. Methods with
        no channel (external providers) or an engine without a deliverer
        yield ``False``.
        """
        code = await self.issue(identifier, auth_method, purpose, metadata, contact)
        channel = get_method(auth_method).delivery_channel
        if self._deliverer is None or channel is None:
            return code, False

        payload = {
            "code": code.code,
            "purpose": code.purpose.value,
            "expires_at": code.expires_at.isoformat(),
        }
        try:
            delivered = await self._deliverer.deliver(
                channel, code.contact or code.identifier, payload
            )
        except Exception:
            logger.exception("Delivery via %s failed for %s", channel, code.identifier)
            delivered = False
        if not delivered:
            logger.warning("Code for %s was not delivered via %s", code.identifier, channel)
        return code, delivered

    async def verify(
        self,
        code: str,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
    ) -> bool:
        """Consume a matching unused, unexpired code. Fails closed.

        The used flag flips through a compare-and-set write, so of two
        concurrent calls with the same code at most one returns True.
        """
        method = get_method(auth_method)
        try:
            normalized = method.normalize(identifier)
        except InvalidInputError:
            return False
        candidate = (code or "").strip()
        if not candidate.isdigit():
            return False

        record = await self._repository.find_unused_code(
            candidate, normalized, method.auth_method, _purpose(purpose)
        )
        if record is None:
            return False
        if record.is_expired(self._clock()):
            return False
        return await self._repository.mark_code_used(record.id)

    async def require(
        self,
        code: str,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
    ) -> None:
        """Like ``verify`` but raises InvalidVerificationCodeError on failure."""
        if not await self.verify(code, identifier, auth_method, purpose):
            raise InvalidVerificationCodeError()

    async def count_recent(self, identifier: str, auth_method: AuthMethod | str) -> int:
        method = get_method(auth_method)
        since = self._clock() - timedelta(seconds=self._settings.rate_limit_window_seconds)
        return await self._repository.count_recent_codes(
            method.normalize(identifier), method.auth_method, since
        )
