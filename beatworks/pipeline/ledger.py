"""
Credit Ledger.

Credits move through three buckets per account:

    available ──reserve/hold──▶ held ──settle──▶ spent
        ▲                         │
        └─────────refund──────────┘

A Reservation belongs to one production and holds one CreditHold per clip
attempt. Every hold is closed exactly once, by settle or refund, so for a
closed reservation `reserved == settled + refunded`.

Two backends share the bookkeeping below:
  - InMemoryCreditLedger — dicts under a threading.Lock
  - RedisCreditLedger    — WATCH/MULTI transactions over
      credits:account:{account_id}          (JSON CreditAccount)
      credits:reservation:{reservation_id}  (JSON Reservation)
"""

import abc
import logging
import threading
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from .errors import InsufficientCreditsError, LedgerError
from .models import new_id, now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCOUNT_PREFIX = "credits:account:"
RESERVATION_PREFIX = "credits:reservation:"


# ── Ledger Records ───────────────────────────────────────────────────────────

class CreditAccount(BaseModel):
    account_id: str
    available: int = 0
    held: int = 0
    spent: int = 0


class CreditHold(BaseModel):
    clip_index: int
    amount: int
    settled: int = 0
    refunded: int = 0
    closed: bool = False
    created_at: str = Field(default_factory=now_iso)

    @property
    def remaining(self) -> int:
        return self.amount - self.settled - self.refunded


class Reservation(BaseModel):
    id: str
    account_id: str
    production_id: Optional[str] = None
    holds: list[CreditHold] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)

    @property
    def reserved(self) -> int:
        return sum(h.amount for h in self.holds)

    @property
    def settled(self) -> int:
        return sum(h.settled for h in self.holds)

    @property
    def refunded(self) -> int:
        return sum(h.refunded for h in self.holds)

    @property
    def outstanding(self) -> int:
        return sum(h.remaining for h in self.holds if not h.closed)

    @property
    def is_balanced(self) -> bool:
        return self.reserved == self.settled + self.refunded

    def open_hold(self, clip_index: int) -> Optional[CreditHold]:
        for hold in self.holds:
            if hold.clip_index == clip_index and not hold.closed:
                return hold
        return None

    def last_hold(self, clip_index: int) -> Optional[CreditHold]:
        for hold in reversed(self.holds):
            if hold.clip_index == clip_index:
                return hold
        return None


# ── Bookkeeping (pure, operates on copies) ───────────────────────────────────

def _take(account: CreditAccount, amount: int):
    if amount < 0:
        raise LedgerError(f"Negative credit amount {amount}")
    if account.available < amount:
        raise InsufficientCreditsError(account.account_id, amount, account.available)
    account.available -= amount
    account.held += amount


def _require_open_hold(reservation: Reservation, clip_index: int) -> CreditHold:
    hold = reservation.open_hold(clip_index)
    if hold is None:
        raise LedgerError(
            f"Reservation {reservation.id} has no open hold for clip {clip_index}"
        )
    return hold


def _settle(account: CreditAccount, reservation: Reservation, clip_index: int, actual_cost: int) -> int:
    hold = _require_open_hold(reservation, clip_index)
    if actual_cost < 0 or actual_cost > hold.remaining:
        raise LedgerError(
            f"Cannot settle {actual_cost} against clip {clip_index} hold "
            f"with {hold.remaining} remaining"
        )
    leftover = hold.remaining - actual_cost
    hold.settled += actual_cost
    hold.refunded += leftover
    hold.closed = True
    account.held -= actual_cost + leftover
    account.spent += actual_cost
    account.available += leftover
    return leftover


def _refund(account: CreditAccount, reservation: Reservation, clip_index: int, amount: Optional[int]) -> int:
    hold = _require_open_hold(reservation, clip_index)
    amount = hold.remaining if amount is None else amount
    if amount < 0 or amount > hold.remaining:
        raise LedgerError(
            f"Cannot refund {amount} against clip {clip_index} hold "
            f"with {hold.remaining} remaining"
        )
    hold.refunded += amount
    if hold.remaining == 0:
        hold.closed = True
    account.held -= amount
    account.available += amount
    return amount


def _reconcile(account: CreditAccount, reservation: Reservation, clip_index: int, actual_cost: int):
    hold = reservation.last_hold(clip_index)
    if hold is None or not hold.closed:
        raise LedgerError(f"Clip {clip_index} has no closed hold to reconcile")
    if actual_cost < 0 or actual_cost > hold.refunded:
        raise LedgerError(
            f"Cannot reconcile {actual_cost} against clip {clip_index}: "
            f"only {hold.refunded} was refunded"
        )
    hold.refunded -= actual_cost
    hold.settled += actual_cost
    account.available -= actual_cost
    account.spent += actual_cost


# ── Ledger Interface ─────────────────────────────────────────────────────────

class CreditLedger(abc.ABC):
    """Atomic reserve / settle / refund over an account balance."""

    @abc.abstractmethod
    def _transact(
        self,
        account_id: str,
        reservation_id: Optional[str],
        fn: Callable[[CreditAccount, Optional[Reservation]], T],
        create_reservation: Optional[Reservation] = None,
    ) -> T:
        """
        Load the account (and reservation), run `fn` on copies, and commit both
        atomically. If `fn` raises, nothing is written.
        """

    @abc.abstractmethod
    def _load_reservation(self, reservation_id: str) -> Optional[Reservation]:
        ...

    @abc.abstractmethod
    def _load_account(self, account_id: str) -> Optional[CreditAccount]:
        ...

    # ── Accounts ─────────────────────────────────────────────────────────

    def deposit(self, account_id: str, amount: int) -> CreditAccount:
        """Grant credits to an account (purchase, subscription, signup bonus)."""
        if amount <= 0:
            raise LedgerError(f"Deposit must be positive, got {amount}")

        def apply(account: CreditAccount, _reservation):
            account.available += amount
            return account.model_copy()

        account = self._transact(account_id, None, apply)
        logger.info(f"Account {account_id}: +{amount} credits (available={account.available})")
        return account

    def get_account(self, account_id: str) -> CreditAccount:
        return self._load_account(account_id) or CreditAccount(account_id=account_id)

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._load_reservation(reservation_id)
        if reservation is None:
            raise LedgerError(f"Reservation {reservation_id} not found")
        return reservation

    # ── Reservations ─────────────────────────────────────────────────────

    def reserve(
        self,
        account_id: str,
        amount: int,
        *,
        production_id: Optional[str] = None,
        allocations: Optional[dict[int, int]] = None,
    ) -> str:
        """
        Reserve `amount` credits from the account's available balance.

        Args:
            allocations: clip_index → credits. Must sum to `amount`. Without
                         allocations the whole amount is held as clip 0.

        Raises:
            InsufficientCreditsError: available balance < amount.
        """
        allocations = dict(allocations) if allocations is not None else {0: amount}
        if sum(allocations.values()) != amount:
            raise LedgerError(f"Allocations {allocations} do not sum to {amount}")

        reservation = Reservation(
            id=new_id("resv"),
            account_id=account_id,
            production_id=production_id,
            holds=[
                CreditHold(clip_index=idx, amount=credits)
                for idx, credits in sorted(allocations.items())
            ],
        )

        def apply(account: CreditAccount, _reservation):
            _take(account, amount)

        self._transact(account_id, reservation.id, apply, create_reservation=reservation)
        logger.info(
            f"Reserved {amount} credits for account {account_id} "
            f"(reservation={reservation.id}, production={production_id})"
        )
        return reservation.id

    def hold(self, reservation_id: str, clip_index: int, amount: int) -> CreditHold:
        """Open a new hold for a clip whose previous holds are all closed (regeneration)."""
        def apply(account: CreditAccount, reservation: Reservation):
            if reservation.open_hold(clip_index) is not None:
                raise LedgerError(
                    f"Reservation {reservation_id} already holds credits for clip {clip_index}"
                )
            _take(account, amount)
            hold = CreditHold(clip_index=clip_index, amount=amount)
            reservation.holds.append(hold)
            return hold.model_copy()

        return self._transact_reservation(reservation_id, apply)

    def settle(self, reservation_id: str, clip_index: int, actual_cost: int) -> int:
        """
        Move `actual_cost` from the clip's hold to spent and close the hold.
        Any unused remainder is refunded. Returns the refunded remainder.
        """
        leftover = self._transact_reservation(
            reservation_id, lambda acct, resv: _settle(acct, resv, clip_index, actual_cost)
        )
        logger.info(
            f"Settled {actual_cost} credits for clip {clip_index} "
            f"(reservation={reservation_id}, remainder refunded={leftover})"
        )
        return leftover

    def refund(self, reservation_id: str, clip_index: int, amount: Optional[int] = None) -> int:
        """Return `amount` (default: the whole remaining hold) to the available balance."""
        refunded = self._transact_reservation(
            reservation_id, lambda acct, resv: _refund(acct, resv, clip_index, amount)
        )
        logger.info(
            f"Refunded {refunded} credits for clip {clip_index} (reservation={reservation_id})"
        )
        return refunded

    def reconcile(self, reservation_id: str, clip_index: int, actual_cost: int) -> CreditAccount:
        """
        Charge a clip whose hold was refunded optimistically (cancellation) but
        whose provider job later succeeded. The account may go negative.
        """
        def apply(account: CreditAccount, reservation: Reservation):
            _reconcile(account, reservation, clip_index, actual_cost)
            return account.model_copy()

        account = self._transact_reservation(reservation_id, apply)
        if account.available < 0:
            logger.warning(
                f"Account {account.account_id} overdrawn by {-account.available} credits "
                f"after reconciling clip {clip_index} (reservation={reservation_id})"
            )
        else:
            logger.info(
                f"Reconciled {actual_cost} credits for clip {clip_index} (reservation={reservation_id})"
            )
        return account

    def _transact_reservation(
        self,
        reservation_id: str,
        fn: Callable[[CreditAccount, Reservation], T],
    ) -> T:
        reservation = self._load_reservation(reservation_id)
        if reservation is None:
            raise LedgerError(f"Reservation {reservation_id} not found")
        return self._transact(reservation.account_id, reservation_id, fn)


# ── In-memory Backend ────────────────────────────────────────────────────────

class InMemoryCreditLedger(CreditLedger):
    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: dict[str, CreditAccount] = {}
        self._reservations: dict[str, Reservation] = {}

    def _load_account(self, account_id: str) -> Optional[CreditAccount]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy() if account else None

    def _load_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            return reservation.model_copy(deep=True) if reservation else None

    def _transact(self, account_id, reservation_id, fn, create_reservation=None):
        with self._lock:
            account = self._accounts.get(account_id) or CreditAccount(account_id=account_id)
            account = account.model_copy()
            if create_reservation is not None:
                reservation = create_reservation.model_copy(deep=True)
            elif reservation_id is not None:
                stored = self._reservations.get(reservation_id)
                if stored is None:
                    raise LedgerError(f"Reservation {reservation_id} not found")
                reservation = stored.model_copy(deep=True)
            else:
                reservation = None

            result = fn(account, reservation)

            self._accounts[account_id] = account
            if reservation is not None:
                self._reservations[reservation.id] = reservation
            return result


# ── Redis Backend ────────────────────────────────────────────────────────────

class RedisCreditLedger(CreditLedger):
    """
    Ledger shared across worker replicas.

    Each operation WATCHes the account and reservation keys, computes the new
    records, and writes both in one MULTI/EXEC. A concurrent writer makes EXEC
    fail and redis-py's `transaction()` helper re-runs the whole step.
    """

    def __init__(self, redis_client):
        self._redis = redis_client

    @staticmethod
    def _decode(raw) -> Optional[str]:
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    def _load_account(self, account_id: str) -> Optional[CreditAccount]:
        raw = self._decode(self._redis.get(f"{ACCOUNT_PREFIX}{account_id}"))
        return CreditAccount.model_validate_json(raw) if raw else None

    def _load_reservation(self, reservation_id: str) -> Optional[Reservation]:
        raw = self._decode(self._redis.get(f"{RESERVATION_PREFIX}{reservation_id}"))
        return Reservation.model_validate_json(raw) if raw else None

    def _transact(self, account_id, reservation_id, fn, create_reservation=None):
        account_key = f"{ACCOUNT_PREFIX}{account_id}"
        keys = [account_key]
        reservation_key = None
        if reservation_id is not None:
            reservation_key = f"{RESERVATION_PREFIX}{reservation_id}"
            keys.append(reservation_key)

        def step(pipe):
            raw_account = self._decode(pipe.get(account_key))
            account = (
                CreditAccount.model_validate_json(raw_account)
                if raw_account else CreditAccount(account_id=account_id)
            )
            if create_reservation is not None:
                if pipe.exists(reservation_key):
                    raise LedgerError(f"Reservation {reservation_id} already exists")
                reservation = create_reservation.model_copy(deep=True)
            elif reservation_key is not None:
                raw_reservation = self._decode(pipe.get(reservation_key))
                if raw_reservation is None:
                    raise LedgerError(f"Reservation {reservation_id} not found")
                reservation = Reservation.model_validate_json(raw_reservation)
            else:
                reservation = None

            result = fn(account, reservation)

            pipe.multi()
            pipe.set(account_key, account.model_dump_json())
            if reservation is not None:
                pipe.set(reservation_key, reservation.model_dump_json())
            return result

        return self._redis.transaction(step, *keys, value_from_callable=True)
