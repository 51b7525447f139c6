from typing import Any, Dict, List, Optional, Set

from identity import Identity
from ledger_client import LedgerError


class FakeLedger:
    """In-memory stand-in for LedgerClient that records submitted drafts."""

    def __init__(
        self,
        current_user: Identity,
        members: Optional[List[Identity]] = None,
        friends: Optional[List[Identity]] = None,
        fail_for: Optional[Set[Any]] = None,
        fail_on: Optional[str] = None,
    ):
        self.current_user = current_user
        self.members = members or []
        self.friends = friends or []
        # user ids whose expense creation should fail
        self.fail_for = fail_for or set()
        # name of a lookup method that should fail
        self.fail_on = fail_on
        self.drafts: List[Any] = []
        self.calls: List[str] = []
        self._next_id = 1000

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        if self.fail_on == method:
            raise LedgerError(f"{method} failed", status_code=401)

    def get_current_user(self) -> Identity:
        self._maybe_fail("get_current_user")
        return self.current_user

    def get_group_members(self, group_id: int) -> List[Identity]:
        self._maybe_fail("get_group_members")
        return list(self.members)

    def get_friends(self) -> List[Identity]:
        self._maybe_fail("get_friends")
        return list(self.friends)

    def create_expense(self, draft: Any) -> Dict[str, Any]:
        self._maybe_fail("create_expense")
        if any(split.identity.id in self.fail_for for split in draft.splits):
            raise LedgerError("Invalid user for expense")
        self.drafts.append(draft)
        self._next_id += 1
        return {"id": self._next_id, "cost": str(draft.cost), "description": draft.description}
