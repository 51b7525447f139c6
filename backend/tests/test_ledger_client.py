import io
import json
import unittest
import urllib.error
import urllib.parse
from unittest import mock

from allocation import BillTotal, ShareRequest, allocate_friend_expenses, allocate_group_expense
from identity import Identity, build_roster
from ledger_client import LedgerClient, LedgerError, extract_error_message
from posting import ItemStatus, post_friend_expenses

BASE_URL = "https://ledger.test/api/v3.0"


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class TimingOutResponse(FakeResponse):
    def read(self, *args):
        raise TimeoutError("The read operation timed out")


def json_response(payload):
    return FakeResponse(json.dumps(payload).encode("utf-8"))


def http_error(code, payload):
    body = io.BytesIO(json.dumps(payload).encode("utf-8"))
    return urllib.error.HTTPError(BASE_URL, code, "error", {}, body)


class ErrorMessageTests(unittest.TestCase):
    def test_known_shapes(self) -> None:
        self.assertEqual(extract_error_message({"errors": {"base": ["Bad cost"]}}), "Bad cost")
        self.assertEqual(extract_error_message({"errors": [{"message": "Invalid API request"}]}), "Invalid API request")
        self.assertEqual(extract_error_message({"errors": ["Nope"]}), "Nope")
        self.assertEqual(extract_error_message({"error": "Unauthorized"}), "Unauthorized")

    def test_empty_errors_mean_success(self) -> None:
        self.assertIsNone(extract_error_message({"expenses": [{"id": 1}], "errors": {}}))
        self.assertIsNone(extract_error_message("text"))


class LedgerClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = LedgerClient("secret", BASE_URL + "/", timeout=5)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_current_user_sends_bearer_token(self, urlopen) -> None:
        urlopen.return_value = json_response({"user": {"id": 1, "first_name": "Amy", "last_name": "Lee"}})
        user = self.client.get_current_user()
        self.assertEqual(user, Identity(id=1, first_name="Amy", last_name="Lee"))
        req = urlopen.call_args[0][0]
        self.assertEqual(req.full_url, f"{BASE_URL}/get_current_user")
        self.assertEqual(req.get_method(), "GET")
        self.assertEqual(req.get_header("Authorization"), "Bearer secret")
        self.assertEqual(urlopen.call_args[1]["timeout"], 5)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_group_members_and_friends(self, urlopen) -> None:
        urlopen.side_effect = [
            json_response({"group": {"id": 51, "members": [{"id": 2, "first_name": "Bob", "last_name": "Ray"}]}}),
            json_response({"friends": [{"id": 3, "first_name": "Cara", "last_name": None}]}),
        ]
        self.assertEqual(self.client.get_group_members(51), [Identity(2, "Bob", "Ray")])
        self.assertEqual(self.client.get_friends(), [Identity(3, "Cara", "")])
        self.assertEqual(urlopen.call_args_list[0][0][0].full_url, f"{BASE_URL}/get_group/51")
        self.assertEqual(urlopen.call_args_list[1][0][0].full_url, f"{BASE_URL}/get_friends")

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_http_error_carries_ledger_message(self, urlopen) -> None:
        urlopen.side_effect = http_error(401, {"error": "Invalid API Request: you are not logged in"})
        with self.assertRaises(LedgerError) as ctx:
            self.client.get_current_user()
        self.assertEqual(ctx.exception.message, "Invalid API Request: you are not logged in")
        self.assertEqual(ctx.exception.status_code, 401)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_unreachable_service(self, urlopen) -> None:
        urlopen.side_effect = urllib.error.URLError("connection refused")
        with self.assertRaises(LedgerError) as ctx:
            self.client.get_friends()
        self.assertIn("connection refused", ctx.exception.message)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_unexpected_shape(self, urlopen) -> None:
        urlopen.return_value = json_response({"group": None})
        with self.assertRaises(LedgerError):
            self.client.get_group_members(51)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_group_expense_is_form_encoded(self, urlopen) -> None:
        urlopen.return_value = json_response({"expenses": [{"id": 99}], "errors": {}})
        payer = Identity(1, "Amy", "Lee")
        allocation = allocate_group_expense(
            BillTotal(12.5, "Dinner"),
            payer,
            [ShareRequest("bob", 12.5)],
            build_roster([Identity(2, "Bob", "Ray")]),
            group_id=51,
            currency_code="INR",
        )
        expense = self.client.create_expense(allocation.draft)
        self.assertEqual(expense, {"id": 99})
        req = urlopen.call_args[0][0]
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(req.get_header("Content-type"), "application/x-www-form-urlencoded")
        form = dict(urllib.parse.parse_qsl(req.data.decode("utf-8")))
        self.assertEqual(form["cost"], "12.50")
        self.assertEqual(form["group_id"], "51")
        self.assertEqual(form["users__1__user_id"], "2")
        self.assertEqual(form["users__1__owed_share"], "12.50")

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_pair_expense_is_json(self, urlopen) -> None:
        urlopen.return_value = json_response({"expenses": [{"id": 100}], "errors": {}})
        allocation = allocate_friend_expenses(
            "Dinner", Identity(1, "Amy", "Lee"), [ShareRequest("cara", 4)], build_roster([Identity(3, "Cara", "Fox")])
        )
        self.client.create_expense(allocation.shares[0].draft)
        req = urlopen.call_args[0][0]
        self.assertEqual(req.get_header("Content-type"), "application/json")
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["cost"], "4.00")
        self.assertEqual(len(body["users"]), 2)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_ok_response_with_errors_is_failure(self, urlopen) -> None:
        urlopen.return_value = json_response({"expenses": [], "errors": {"base": ["The total of your shares must equal the cost"]}})
        allocation = allocate_friend_expenses(
            "Dinner", Identity(1, "Amy", "Lee"), [ShareRequest("cara", 4)], build_roster([Identity(3, "Cara", "Fox")])
        )
        with self.assertRaises(LedgerError) as ctx:
            self.client.create_expense(allocation.shares[0].draft)
        self.assertIn("total of your shares", ctx.exception.message)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_read_timeout_is_ledger_error(self, urlopen) -> None:
        urlopen.return_value = TimingOutResponse(b"")
        with self.assertRaises(LedgerError) as ctx:
            self.client.get_friends()
        self.assertIn("timed out", ctx.exception.message)
        self.assertIsNone(ctx.exception.status_code)

    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_undecodable_body_is_ledger_error(self, urlopen) -> None:
        urlopen.return_value = FakeResponse(b"\xff\xfe\x00garbage")
        with self.assertRaises(LedgerError):
            self.client.get_current_user()


class FriendPostingOverHttpTests(unittest.TestCase):
    @mock.patch("ledger_client.urllib.request.urlopen")
    def test_timed_out_share_fails_and_next_share_posts(self, urlopen) -> None:
        urlopen.side_effect = [
            json_response({"user": {"id": 1, "first_name": "Amy", "last_name": "Lee"}}),
            json_response(
                {
                    "friends": [
                        {"id": 2, "first_name": "Bob", "last_name": "Ray"},
                        {"id": 3, "first_name": "Cara", "last_name": "Fox"},
                    ]
                }
            ),
            TimingOutResponse(b""),
            json_response({"expenses": [{"id": 77}], "errors": {}}),
        ]
        client = LedgerClient("secret", BASE_URL, timeout=5)
        outcome = post_friend_expenses(client, BillTotal(10, "Pizza"), [ShareRequest("bob", 5), ShareRequest("cara", 5)])
        self.assertEqual([r.status for r in outcome.results], [ItemStatus.FAILED, ItemStatus.POSTED])
        self.assertEqual(outcome.posted, [{"name": "cara", "transactionRef": 77}])
        self.assertEqual(outcome.errors[0]["name"], "bob")
        self.assertIn("timed out", outcome.errors[0]["message"])
        self.assertEqual(urlopen.call_count, 4)


if __name__ == "__main__":
    unittest.main()
