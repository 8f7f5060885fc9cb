"""
auth/revocation.py -- Explicit revocation and the periodic expiry sweep.

Logout is idempotent from the client's side: revoking an unknown, expired or
already revoked token succeeds silently. Store outages are the one exception --
StoreUnavailableError propagates so an operator sees an outage, not a
successful logout that did nothing.

Sweep safety:
  sweep() purges revoked tokens and tokens whose expires_at is at or before
  now - grace. A token being issued concurrently is neither revoked nor
  expired, and "expires_at is in the past" cannot become false later, so the
  sweep can never delete a token that is still usable.

run_sweeper() is the background loop started by the API lifespan. Each pass
runs in a worker thread via asyncio.to_thread so a slow purge never blocks the
event loop. Cancelling the task during shutdown unwinds the loop, but a pass
already in its worker thread cannot be interrupted: the task waits for that
pass to finish before re-raising CancelledError, so once the task is done no
sweep is touching the store.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from auth.errors import StoreUnavailableError
from auth.models import TokenType
from auth.tokens import Clock, hash_token, utcnow

if TYPE_CHECKING:
    from auth.token_store import TokenStore

logger = logging.getLogger("doorpro.auth.revocation")


class RevocationService:
    def __init__(
        self,
        store: TokenStore,
        secret_key: str,
        grace: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.secret_key = secret_key
        self.grace = grace
        self.clock = clock

    def logout(self, token_value: str) -> None:
        """Revoke a single token. Never fails for an invalid token."""
        if not token_value:
            return
        token_hash = hash_token(token_value, self.secret_key)
        if self.store.revoke(token_hash):
            logger.info("Token %s... revoked on logout", token_hash[:8])
        else:
            logger.debug("Logout for unknown or already revoked token %s...", token_hash[:8])

    def revoke_all_for_user(self, user_id: int, token_type: TokenType | None = None) -> int:
        """Revoke every live token of a user, optionally only one type.

        Used on password change, password reset, and superseding issuance of
        single-use tokens. Returns how many tokens this call revoked.
        """
        revoked = 0
        for token in self.store.list_by_user(user_id):
            if token.revoked:
                continue
            if token_type is not None and token.token_type != token_type:
                continue
            if self.store.revoke(token.token_hash):
                revoked += 1
        if revoked:
            logger.info(
                "Revoked %d %s token(s) for user_id=%s",
                revoked,
                token_type.value if token_type else "all",
                user_id,
            )
        return revoked

    def sweep(self) -> int:
        """Purge revoked tokens and tokens expired for longer than the grace window."""
        cutoff = self.clock() - self.grace
        removed = self.store.purge(cutoff)
        if removed:
            logger.info("Token sweep removed %d record(s) (cutoff %s)", removed, cutoff.isoformat())
        return removed


async def run_sweeper(revocation: RevocationService, interval_seconds: float) -> None:
    """Run revocation.sweep() every interval_seconds until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        sweep = asyncio.ensure_future(asyncio.to_thread(revocation.sweep))
        try:
            await asyncio.shield(sweep)
        except StoreUnavailableError as exc:
            # Next pass retries; expired tokens are already rejected at verify time.
            logger.error("Token sweep skipped: %s", exc)
        except asyncio.CancelledError:
            await asyncio.gather(sweep, return_exceptions=True)
            raise
