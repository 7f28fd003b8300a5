"""
Cached wallet view for one player session.

The store owns the real balance. The session keeps a copy that it mutates
optimistically while a round runs and overwrites with the store's value once
the round has settled. Only the round orchestrator writes to it.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.core.exceptions import InsufficientBalanceError
from app.core.odds import settle_amount


@dataclass
class WalletSnapshot:
    user_id: str
    buckets: Dict[str, float] = field(default_factory=dict)
    stale: bool = False

    @property
    def balance(self) -> float:
        return sum(self.buckets.values())

    @classmethod
    def from_row(cls, row: Dict, bucket_names: List[str]) -> "WalletSnapshot":
        return cls(
            user_id=row["user_id"],
            buckets={name: float(row.get(name) or 0.0) for name in bucket_names},
        )

    def to_dict(self, precision: int = 2) -> dict:
        return {
            "user_id": self.user_id,
            "balance": settle_amount(self.balance, precision),
            "buckets": {k: settle_amount(v, precision) for k, v in self.buckets.items()},
            "stale": self.stale,
        }


@dataclass(frozen=True)
class PendingDebit:
    """An optimistic debit that has not been confirmed by the store."""

    bucket: str
    amount: float


class WalletCache:
    def __init__(self, user_id: str, stake_buckets: List[str], payout_bucket: str):
        self.user_id = user_id
        self.stake_buckets = list(stake_buckets)
        self.payout_bucket = payout_bucket
        self.snapshot: Optional[WalletSnapshot] = None

    @property
    def bucket_names(self) -> List[str]:
        names = list(self.stake_buckets)
        if self.payout_bucket not in names:
            names.append(self.payout_bucket)
        return names

    @property
    def loaded(self) -> bool:
        return self.snapshot is not None

    @property
    def balance(self) -> float:
        return self.snapshot.balance if self.snapshot else 0.0

    def reconcile(self, row: Dict) -> WalletSnapshot:
        """Replace the cached view with the store's authoritative row."""
        self.snapshot = WalletSnapshot.from_row(row, self.bucket_names)
        return self.snapshot

    def mark_stale(self):
        if self.snapshot:
            self.snapshot.stale = True

    def pick_stake_bucket(self, amount: float) -> str:
        """First bucket, in priority order, that covers the whole stake."""
        if amount > self.balance + 1e-9:
            raise InsufficientBalanceError(
                f"Bet {amount:.2f} exceeds balance {self.balance:.2f}"
            )
        for bucket in self.stake_buckets:
            if self.snapshot.buckets.get(bucket, 0.0) + 1e-9 >= amount:
                return bucket
        raise InsufficientBalanceError("No single wallet covers this bet")

    def apply_debit(self, bucket: str, amount: float) -> PendingDebit:
        self.snapshot.buckets[bucket] = self.snapshot.buckets.get(bucket, 0.0) - amount
        return PendingDebit(bucket=bucket, amount=amount)

    def rollback(self, debit: PendingDebit):
        self.snapshot.buckets[debit.bucket] = self.snapshot.buckets.get(debit.bucket, 0.0) + debit.amount

    def apply_credit(self, amount: float):
        bucket = self.payout_bucket
        self.snapshot.buckets[bucket] = self.snapshot.buckets.get(bucket, 0.0) + amount
