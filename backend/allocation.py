"""
Turns a bill total and per-person amounts into ledger transactions.

Two shapes are produced:
  * group mode: one transaction, the payer pays the whole bill and every
    resolved member owes their amount;
  * friends mode: one two-person transaction per resolved friend.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from identity import Identity, resolve

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class ShareTotalCheck(str, Enum):
    OFF = "off"
    NOT_ABOVE = "not_above"
    EXACT = "exact"


class ShareTotalError(ValueError):
    pass


def to_money(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    if isinstance(value, (int, float, str)):
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    raise ValueError("Cannot convert value to Decimal")


def format_money(value: Any) -> str:
    return str(to_money(value))


def ledger_date(today: Optional[date] = None) -> str:
    return (today or datetime.now(timezone.utc).date()).isoformat()


@dataclass(frozen=True)
class BillTotal:
    amount: Decimal
    description: str

    def __post_init__(self):
        object.__setattr__(self, "amount", to_money(self.amount))


@dataclass(frozen=True)
class ShareRequest:
    name: str
    amount: Decimal

    def __post_init__(self):
        amount = to_money(self.amount)
        if amount < ZERO:
            raise ValueError(f"Share for {self.name!r} must not be negative")
        object.__setattr__(self, "amount", amount)


@dataclass
class SplitEntry:
    identity: Identity
    paid_share: Decimal
    owed_share: Decimal

    def as_payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.identity.id,
            "paid_share": format_money(self.paid_share),
            "owed_share": format_money(self.owed_share),
        }


@dataclass
class ExpenseDraft:
    """A transaction ready to be sent to the ledger."""

    cost: Decimal
    description: str
    date: str
    splits: List[SplitEntry] = field(default_factory=list)
    group_id: Optional[int] = None
    currency_code: Optional[str] = None

    @property
    def paid_total(self) -> Decimal:
        return sum((s.paid_share for s in self.splits), ZERO)

    @property
    def owed_total(self) -> Decimal:
        return sum((s.owed_share for s in self.splits), ZERO)

    @property
    def is_group_expense(self) -> bool:
        return self.group_id is not None

    def to_group_form(self) -> Dict[str, Any]:
        # The ledger expects indexed, flattened keys for form-encoded users.
        form: Dict[str, Any] = {
            "cost": format_money(self.cost),
            "description": self.description,
            "date": self.date,
            "group_id": self.group_id,
            "currency_code": self.currency_code,
        }
        for index, split in enumerate(self.splits):
            for key, value in split.as_payload().items():
                form[f"users__{index}__{key}"] = value
        return form

    def to_pair_payload(self) -> Dict[str, Any]:
        return {
            "cost": format_money(self.cost),
            "description": self.description,
            "date": self.date,
            "users": [split.as_payload() for split in self.splits],
        }


@dataclass
class GroupAllocation:
    draft: ExpenseDraft
    resolved: List[ShareRequest] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)


@dataclass
class FriendShare:
    """One request line; friend and draft are None when the name did not resolve."""

    request: ShareRequest
    friend: Optional[Identity] = None
    draft: Optional[ExpenseDraft] = None


@dataclass
class FriendAllocation:
    entries: List[FriendShare] = field(default_factory=list)

    @property
    def shares(self) -> List[FriendShare]:
        return [entry for entry in self.entries if entry.draft is not None]

    @property
    def unresolved(self) -> List[str]:
        return [entry.request.name for entry in self.entries if entry.draft is None]


def check_share_total(draft: ExpenseDraft, check: ShareTotalCheck) -> None:
    if check == ShareTotalCheck.OFF:
        return
    owed_total = draft.owed_total
    if check == ShareTotalCheck.NOT_ABOVE and owed_total > draft.cost:
        raise ShareTotalError(f"Owed shares add up to {owed_total}, more than the bill total {to_money(draft.cost)}")
    if check == ShareTotalCheck.EXACT and owed_total != draft.cost:
        raise ShareTotalError(f"Owed shares add up to {owed_total}, bill total is {to_money(draft.cost)}")


def allocate_group_expense(
    total: BillTotal,
    payer: Identity,
    requests: Sequence[ShareRequest],
    roster: Mapping[str, Identity],
    group_id: Optional[int] = None,
    currency_code: Optional[str] = None,
    today: Optional[date] = None,
    share_check: ShareTotalCheck = ShareTotalCheck.OFF,
) -> GroupAllocation:
    """
    Build the single group transaction. The payer pays the whole total; a
    request line naming the payer sets their owed share. If the payer is
    named more than once the last line wins and the replacement is logged.
    """
    payer_entry = SplitEntry(identity=payer, paid_share=total.amount, owed_share=ZERO)
    draft = ExpenseDraft(
        cost=total.amount,
        description=total.description,
        date=ledger_date(today),
        splits=[payer_entry],
        group_id=group_id,
        currency_code=currency_code,
    )
    allocation = GroupAllocation(draft=draft)
    payer_share_set = False

    for request in requests:
        member = resolve(request.name, roster)
        if member is None:
            logger.warning("Member not found: %s", request.name)
            allocation.unresolved.append(request.name)
            continue
        allocation.resolved.append(request)
        if member.id == payer.id:
            # The payer ate too; their own share goes on the payer row.
            if payer_share_set:
                logger.warning(
                    "Payer share for %s replaced: %s -> %s", request.name, payer_entry.owed_share, request.amount
                )
            payer_entry.owed_share = request.amount
            payer_share_set = True
            continue
        draft.splits.append(SplitEntry(identity=member, paid_share=ZERO, owed_share=request.amount))

    check_share_total(draft, share_check)
    return allocation


def allocate_friend_expenses(
    description: str,
    payer: Identity,
    requests: Sequence[ShareRequest],
    roster: Mapping[str, Identity],
    today: Optional[date] = None,
) -> FriendAllocation:
    allocation = FriendAllocation()
    on_date = ledger_date(today)

    for request in requests:
        friend = resolve(request.name, roster)
        if friend is None:
            logger.warning("Friend not found: %s", request.name)
            allocation.entries.append(FriendShare(request=request))
            continue
        draft = ExpenseDraft(
            cost=request.amount,
            description=f"{description} - {request.name}'s share",
            date=on_date,
            splits=[
                SplitEntry(identity=payer, paid_share=request.amount, owed_share=ZERO),
                SplitEntry(identity=friend, paid_share=ZERO, owed_share=request.amount),
            ],
        )
        allocation.entries.append(FriendShare(request=request, friend=friend, draft=draft))

    return allocation

