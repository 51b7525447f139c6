"""
Thin client for the shared-expense ledger (Splitwise v3 API shape).

Every call is a blocking HTTP request; nothing is cached between calls.
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

from allocation import ExpenseDraft
from identity import Identity

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def extract_error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    errors = payload.get("errors")
    if isinstance(errors, dict):
        for messages in errors.values():
            if isinstance(messages, list) and messages:
                return str(messages[0])
            if isinstance(messages, str) and messages:
                return messages
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict) and first.get("message"):
            return str(first["message"])
        if isinstance(first, str):
            return first
    error = payload.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return None


def _parse_body(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


class LedgerClient:
    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None, form: bool = False) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        body = None
        if data is not None:
            if form:
                body = urllib.parse.urlencode(data).encode("utf-8")
                headers["Content-Type"] = "application/x-www-form-urlencoded"
            else:
                body = json.dumps(data).encode("utf-8")
                headers["Content-Type"] = "application/json"

        req = urllib.request.Request(url=f"{self.base_url}/{path}", data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as ex:
            raw = ex.read().decode("utf-8", errors="replace")
            message = extract_error_message(_parse_body(raw)) or f"Ledger request failed with HTTP {ex.code}"
            raise LedgerError(message, status_code=ex.code) from ex
        except urllib.error.URLError as ex:
            raise LedgerError(f"Ledger service unreachable: {ex.reason}") from ex
        except (OSError, UnicodeDecodeError) as ex:
            # Read timeouts and undecodable bodies surface after urlopen returns.
            raise LedgerError(f"Ledger service unreachable: {ex}") from ex

        parsed = _parse_body(raw)
        if not isinstance(parsed, dict):
            raise LedgerError(f"Ledger returned an unexpected response for {path}")
        return parsed

    def get_current_user(self) -> Identity:
        data = self._request("GET", "get_current_user")
        try:
            return Identity.from_ledger(data["user"])
        except (KeyError, TypeError) as ex:
            raise LedgerError("Ledger response is missing the current user") from ex

    def get_group_members(self, group_id: int) -> List[Identity]:
        data = self._request("GET", f"get_group/{group_id}")
        try:
            return [Identity.from_ledger(member) for member in data["group"]["members"]]
        except (KeyError, TypeError) as ex:
            raise LedgerError(f"Ledger response is missing members of group {group_id}") from ex

    def get_friends(self) -> List[Identity]:
        data = self._request("GET", "get_friends")
        try:
            return [Identity.from_ledger(friend) for friend in data["friends"]]
        except (KeyError, TypeError) as ex:
            raise LedgerError("Ledger response is missing the friends list") from ex

    def create_expense(self, draft: ExpenseDraft) -> Dict[str, Any]:
        if draft.is_group_expense:
            data = self._request("POST", "create_expense", draft.to_group_form(), form=True)
        else:
            data = self._request("POST", "create_expense", draft.to_pair_payload())

        # A 200 response can still carry validation errors.
        message = extract_error_message(data)
        if message:
            raise LedgerError(message)
        expenses = data.get("expenses") or []
        if not expenses:
            raise LedgerError("Ledger did not return the created expense")
        logger.info("Ledger created expense id=%s", expenses[0].get("id"))
        return expenses[0]
