"""
Posting orchestration: fetch who we are and who we split with, allocate,
then submit transactions to the ledger one at a time.

Group mode posts a single transaction, so any ledger failure fails the
request. Friends mode posts one transaction per person and keeps going
after a failure; each request line ends up tagged as posted, not_found or
failed in the returned outcome.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from allocation import (
    BillTotal,
    ShareRequest,
    ShareTotalCheck,
    ShareTotalError,
    allocate_friend_expenses,
    allocate_group_expense,
)
from identity import Identity, build_roster
from ledger_client import LedgerError

logger = logging.getLogger(__name__)


class PostingMode(str, Enum):
    GROUP = "group"
    FRIENDS = "friends"


class ItemStatus(str, Enum):
    POSTED = "posted"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class PostingError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Ledger(Protocol):
    def get_current_user(self) -> Identity: ...

    def get_group_members(self, group_id: int) -> List[Identity]: ...

    def get_friends(self) -> List[Identity]: ...

    def create_expense(self, draft: Any) -> Dict[str, Any]: ...


@dataclass
class ItemResult:
    name: str
    amount: Decimal
    status: ItemStatus
    transaction_ref: Any = None
    error: Optional[str] = None


@dataclass
class AllocationOutcome:
    mode: PostingMode
    results: List[ItemResult] = field(default_factory=list)
    expense: Optional[Dict[str, Any]] = None

    def results_with(self, status: ItemStatus) -> List[ItemResult]:
        return [r for r in self.results if r.status == status]

    @property
    def posted(self) -> List[Dict[str, Any]]:
        return [{"name": r.name, "transactionRef": r.transaction_ref} for r in self.results_with(ItemStatus.POSTED)]

    @property
    def unresolved(self) -> List[str]:
        return [r.name for r in self.results_with(ItemStatus.NOT_FOUND)]

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [{"name": r.name, "message": r.error} for r in self.results_with(ItemStatus.FAILED)]

    def summary_message(self) -> str:
        posted_count = len(self.results_with(ItemStatus.POSTED))
        if self.mode == PostingMode.GROUP:
            message = f"Expense added to group for {posted_count} participant(s)"
            roster_label = "group"
        else:
            attempted = posted_count + len(self.errors)
            message = f"Added {posted_count} of {attempted} expense(s)"
            roster_label = "friends"
        if self.errors:
            message += f"\n\nFailed: {', '.join(e['name'] for e in self.errors)}"
        if self.unresolved:
            message += f"\n\nNot found in {roster_label}: {', '.join(self.unresolved)}"
        return message


def _fetch_current_user(ledger: Ledger) -> Identity:
    try:
        payer = ledger.get_current_user()
    except LedgerError as ex:
        raise PostingError(ex.message) from ex
    logger.info("Current user id=%s", payer.id)
    return payer


def post_group_expense(
    ledger: Ledger,
    bill: BillTotal,
    requests: Sequence[ShareRequest],
    group_id: Optional[int],
    currency_code: Optional[str] = None,
    share_check: ShareTotalCheck = ShareTotalCheck.OFF,
    today: Optional[date] = None,
) -> AllocationOutcome:
    if group_id is None:
        raise PostingError("Missing ledger group configuration")
    logger.info("Posting group expense %r to group %s with %d share(s)", bill.description, group_id, len(requests))

    payer = _fetch_current_user(ledger)
    try:
        members = ledger.get_group_members(group_id)
    except LedgerError as ex:
        raise PostingError(ex.message) from ex
    logger.info("Group %s has %d member(s)", group_id, len(members))

    try:
        allocation = allocate_group_expense(
            bill,
            payer,
            requests,
            build_roster(members),
            group_id=group_id,
            currency_code=currency_code,
            today=today,
            share_check=share_check,
        )
    except ShareTotalError as ex:
        raise PostingError(str(ex), status_code=400) from ex

    try:
        expense = ledger.create_expense(allocation.draft)
    except LedgerError as ex:
        raise PostingError(ex.message) from ex

    ref = expense.get("id")
    outcome = AllocationOutcome(mode=PostingMode.GROUP, expense=expense)
    unresolved = set(allocation.unresolved)
    for request in requests:
        if request.name in unresolved:
            outcome.results.append(ItemResult(request.name, request.amount, ItemStatus.NOT_FOUND))
        else:
            outcome.results.append(ItemResult(request.name, request.amount, ItemStatus.POSTED, transaction_ref=ref))
    logger.info("Group expense %s posted, %d name(s) not found", ref, len(outcome.unresolved))
    return outcome


def post_friend_expenses(
    ledger: Ledger,
    bill: BillTotal,
    requests: Sequence[ShareRequest],
    today: Optional[date] = None,
) -> AllocationOutcome:
    logger.info("Posting %d friend share(s) for %r", len(requests), bill.description)

    payer = _fetch_current_user(ledger)
    try:
        friends = ledger.get_friends()
    except LedgerError as ex:
        raise PostingError(ex.message) from ex
    logger.info("Fetched %d friend(s)", len(friends))

    allocation = allocate_friend_expenses(bill.description, payer, requests, build_roster(friends), today=today)
    outcome = AllocationOutcome(mode=PostingMode.FRIENDS)

    for share in allocation.entries:
        request = share.request
        if share.draft is None:
            outcome.results.append(ItemResult(request.name, request.amount, ItemStatus.NOT_FOUND))
            continue
        try:
            expense = ledger.create_expense(share.draft)
        except LedgerError as ex:
            logger.warning("Could not post share for %s: %s", request.name, ex.message)
            outcome.results.append(ItemResult(request.name, request.amount, ItemStatus.FAILED, error=ex.message))
            continue
        outcome.results.append(
            ItemResult(request.name, request.amount, ItemStatus.POSTED, transaction_ref=expense.get("id"))
        )
        logger.info("Posted share for %s as expense %s", request.name, expense.get("id"))

    logger.info(
        "Friend shares done: %d posted, %d failed, %d not found",
        len(outcome.posted),
        len(outcome.errors),
        len(outcome.unresolved),
    )
    return outcome


def post(
    mode: PostingMode,
    ledger: Ledger,
    bill: BillTotal,
    requests: Sequence[ShareRequest],
    group_id: Optional[int] = None,
    currency_code: Optional[str] = None,
    share_check: ShareTotalCheck = ShareTotalCheck.OFF,
    today: Optional[date] = None,
) -> AllocationOutcome:
    if mode == PostingMode.GROUP:
        return post_group_expense(ledger, bill, requests, group_id, currency_code, share_check, today)
    return post_friend_expenses(ledger, bill, requests, today)
