"""
Request/Vote/Payment ledger.

The votes and payments tables are the source of truth. The cached
requests.vote_count is always recomputed from them:

    tally = (up votes - down votes) + sum(payments.boost)

Cross-request invariants live in the database, not here:
- votes has UNIQUE (request_id, voter_tg_id)
- payments has UNIQUE (charge_id)

A unique violation (Postgres 23505) on insert means a concurrent writer got
there first; we re-read and continue as if the row had been there all along.

All methods are synchronous (supabase-py is); bot handlers run them via
asyncio.to_thread.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from postgrest.exceptions import APIError

from ideabot.config import Settings, get_settings
from ideabot.errors import AlreadyProcessed, DuplicateVote, NotFound, ValidationError
from ideabot.schemas import FeatureRequest, PaymentKind, VoteDirection
from ideabot.supabase_client import get_supabase_admin

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

PRIORITY_KIND = "priority"


def is_unique_violation(error: APIError) -> bool:
    return str(getattr(error, "code", "")) == UNIQUE_VIOLATION


def build_payment_kinds(settings: Settings) -> dict[str, PaymentKind]:
    """Purchasable boosts, keyed by the kind stored in payments.kind."""
    return {
        PRIORITY_KIND: PaymentKind(
            name=PRIORITY_KIND,
            title="Клинический приоритет",
            description=f"Поднять идею в приоритет и получить +{settings.priority_boost_votes} голосов сразу",
            price=settings.priority_price_stars,
            boost=settings.priority_boost_votes,
        ),
    }


def parse_direction(direction: str | VoteDirection) -> VoteDirection:
    try:
        return VoteDirection(direction)
    except ValueError:
        raise ValidationError(f"Unknown vote direction: {direction!r}", field="direction")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerService:
    """Vote registrar and payment reconciler over the Supabase tables."""

    def __init__(self, supabase=None, settings: Optional[Settings] = None):
        self.supabase = supabase if supabase is not None else get_supabase_admin()
        self.settings = settings or get_settings()
        self.payment_kinds = build_payment_kinds(self.settings)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: int) -> FeatureRequest:
        result = self.supabase.table("requests").select("*").eq(
            "id", request_id
        ).limit(1).execute()

        if not result.data:
            raise NotFound(f"Request {request_id} not found")

        return FeatureRequest.model_validate(result.data[0])

    def current_tally(self, request_id: int) -> int:
        return self.get_request(request_id).vote_count

    def get_payment_kind(self, kind: str) -> PaymentKind:
        payment_kind = self.payment_kinds.get(kind)
        if payment_kind is None:
            raise ValidationError(f"Unknown payment kind: {kind!r}", field="kind")
        return payment_kind

    def _get_vote(self, request_id: int, voter_id: int) -> Optional[dict]:
        result = self.supabase.table("votes").select("request_id, voter_tg_id, direction").eq(
            "request_id", request_id
        ).eq("voter_tg_id", voter_id).limit(1).execute()
        return result.data[0] if result.data else None

    def _get_payment(self, charge_id: str) -> Optional[dict]:
        result = self.supabase.table("payments").select("*").eq(
            "charge_id", charge_id
        ).limit(1).execute()
        return result.data[0] if result.data else None

    def _count_votes(self, request_id: int, direction: VoteDirection) -> int:
        result = self.supabase.table("votes").select("voter_tg_id", count="exact").eq(
            "request_id", request_id
        ).eq("direction", direction.value).execute()
        return result.count or 0

    def _total_boost(self, request_id: int) -> int:
        result = self.supabase.table("payments").select("boost").eq(
            "request_id", request_id
        ).execute()
        return sum(int(row.get("boost") or 0) for row in result.data or [])

    # ------------------------------------------------------------------
    # Tally
    # ------------------------------------------------------------------

    def recompute_tally(self, request_id: int) -> int:
        """Recompute the displayed tally from vote and payment facts and cache it."""
        up = self._count_votes(request_id, VoteDirection.UP)
        down = self._count_votes(request_id, VoteDirection.DOWN)
        boost = self._total_boost(request_id)
        tally = up - down + boost

        self.supabase.table("requests").update({
            "vote_count": tally,
            "priority_boost": boost,
            "has_priority": boost > 0,
        }).eq("id", request_id).execute()

        logger.debug(f"Tally for request {request_id}: up={up} down={down} boost={boost} -> {tally}")
        return tally

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def cast_vote(self, request_id: int, voter_id: int, direction: str | VoteDirection) -> int:
        """
        Record a vote and return the new tally.

        Raises:
            NotFound: request does not exist
            ValidationError: direction is not up/down
            DuplicateVote: the voter already voted this way (tally unchanged)
        """
        direction = parse_direction(direction)
        self.get_request(request_id)

        existing = self._get_vote(request_id, voter_id)

        if existing is None:
            try:
                self.supabase.table("votes").insert({
                    "request_id": request_id,
                    "voter_tg_id": voter_id,
                    "direction": direction.value,
                }).execute()
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                logger.info(f"Concurrent vote for request={request_id} voter={voter_id}, re-reading")
                existing = self._get_vote(request_id, voter_id)
                if existing is None:
                    raise
            else:
                logger.info(f"Vote {direction.value} recorded: request={request_id} voter={voter_id}")
                return self.recompute_tally(request_id)

        if existing["direction"] == direction.value:
            # Recount from facts: an earlier attempt may have stored the vote without caching the tally
            raise DuplicateVote(self.recompute_tally(request_id))

        # Flip in place: one row per (request, voter) at all times
        self.supabase.table("votes").update({
            "direction": direction.value,
            "updated_at": _now(),
        }).eq("request_id", request_id).eq("voter_tg_id", voter_id).execute()

        logger.info(f"Vote flipped to {direction.value}: request={request_id} voter={voter_id}")
        return self.recompute_tally(request_id)

    def remove_vote(self, request_id: int, voter_id: int) -> int:
        """Delete the voter's vote if any. Idempotent."""
        self.get_request(request_id)

        self.supabase.table("votes").delete().eq(
            "request_id", request_id
        ).eq("voter_tg_id", voter_id).execute()

        logger.info(f"Vote removed (if present): request={request_id} voter={voter_id}")
        return self.recompute_tally(request_id)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _record_payment(
        self,
        charge_id: str,
        request_id: int,
        payer_id: int,
        amount: int,
        kind: PaymentKind,
        currency: str,
        provider_charge_id: Optional[str],
    ) -> None:
        """
        Insert the payment fact unless it exists.

        Raises AlreadyProcessed when the charge was fully applied before.
        An existing row whose boost step never completed is returned to the
        caller silently, so the boost can be finished.
        """
        existing = self._get_payment(charge_id)

        if existing is None:
            try:
                self.supabase.table("payments").insert({
                    "charge_id": charge_id,
                    "request_id": request_id,
                    "payer_tg_id": payer_id,
                    "amount": amount,
                    "currency": currency,
                    "kind": kind.name,
                    "boost": kind.boost,
                    "boost_applied": False,
                    "provider_charge_id": provider_charge_id,
                }).execute()
                logger.info(f"Payment recorded: charge={charge_id} request={request_id} amount={amount}")
                return
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                existing = self._get_payment(charge_id)
                if existing is None:
                    raise

        if existing.get("boost_applied"):
            raise AlreadyProcessed(self.current_tally(int(existing["request_id"])))

        logger.warning(f"Payment {charge_id} recorded earlier without boost, resuming")

    def apply_payment(
        self,
        charge_id: str,
        request_id: int,
        payer_id: int,
        amount: int,
        kind: str = PRIORITY_KIND,
        currency: str = "XTR",
        provider_charge_id: Optional[str] = None,
    ) -> int:
        """
        Credit a completed charge exactly once and return the new tally.

        Redelivery of the same charge_id returns the current tally unchanged.
        If a previous attempt stored the payment but failed before finishing
        the boost, this call finishes it.
        """
        if not charge_id:
            raise ValidationError("charge_id is required", field="charge_id")

        payment_kind = self.get_payment_kind(kind)
        self.get_request(request_id)

        try:
            self._record_payment(
                charge_id, request_id, payer_id, amount,
                payment_kind, currency, provider_charge_id
            )
        except AlreadyProcessed as e:
            logger.info(f"Payment {charge_id} already processed, tally={e.tally}")
            return e.tally

        # Boost step. Every write here is idempotent, a retry repeats it safely.
        tally = self.recompute_tally(request_id)

        self.supabase.table("requests").update({
            "payment_status": "paid",
        }).eq("id", request_id).execute()

        self.supabase.table("payments").update({
            "boost_applied": True,
        }).eq("charge_id", charge_id).execute()

        logger.info(f"Boost applied: charge={charge_id} request={request_id} tally={tally}")
        return tally


# Singleton instance
_ledger_service: Optional[LedgerService] = None


def get_ledger_service() -> LedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = LedgerService()
    return _ledger_service
