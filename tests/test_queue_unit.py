import json

import requests

from conftest import make_request

from tradevault.domain.models import InventoryItem, RequestState, RequestStatus, TradeKind
from tradevault.queue.website import WebsiteWorkQueue, parse_item_ref, parse_pending, status_payload


class _Response:
    def __init__(self, text="", status_code=200):
        self.text = text
        self.status_code = status_code

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_parse_item_ref():
    assert parse_item_ref("123;456") == InventoryItem("123", "456")
    assert parse_item_ref("123") is None
    assert parse_item_ref(";456") is None
    assert parse_item_ref("") is None


def test_parse_pending_reads_both_kinds():
    doc = {
        "Deposits": [
            {"QueId": "7", "SteamId": "765", "SecurityToken": "s1", "RU_Token": "t1", "item_Ids": ["1;5", "bad", "2;6"]},
            {"SteamId": "765"},
        ],
        "withdrawal": [{"QueId": "8", "SteamId": "766", "SecurityToken": "s2", "RU_Token": "t2", "item_Ids": ["9;5"]}],
    }

    requests_ = parse_pending(doc)

    assert [(r.request_id, r.kind) for r in requests_] == [("7", TradeKind.DEPOSIT), ("8", TradeKind.WITHDRAW)]
    deposit = requests_[0]
    assert deposit.requested == [InventoryItem("1", "5"), InventoryItem("2", "6")]
    assert (deposit.counterparty_id, deposit.token, deposit.security_token) == ("765", "t1", "s1")
    assert deposit.state == RequestState.PENDING


def test_status_codes_by_kind():
    assert RequestStatus(TradeKind.DEPOSIT, RequestState.SENT).code == 3
    assert RequestStatus(TradeKind.WITHDRAW, RequestState.SENT).code == 8
    assert RequestStatus.from_code(9) == RequestStatus(TradeKind.WITHDRAW, RequestState.ACCEPTED)


def test_status_payload():
    request = make_request("7", TradeKind.WITHDRAW, [("x", "5")], counterparty_id="766")
    request.state = RequestState.SENT
    request.offer_id = "5550001"

    doc = json.loads(status_payload([request]))

    assert doc == {"Trades": [{"Id": "7", "SteamId": "766", "Status": "8", "Tradelink": "5550001"}]}


def test_fetch_pending(monkeypatch):
    queue = WebsiteWorkQueue("http://queue.test/pending", "http://queue.test/callback")
    body = json.dumps({"Deposits": [{"QueId": "1", "SteamId": "2", "item_Ids": ["3;4"]}]})
    monkeypatch.setattr(queue.session, "get", lambda url, timeout: _Response(body))

    (request,) = queue.fetch_pending()

    assert request.request_id == "1"


def test_fetch_pending_empty_body(monkeypatch):
    queue = WebsiteWorkQueue("http://queue.test/pending", "http://queue.test/callback")
    monkeypatch.setattr(queue.session, "get", lambda url, timeout: _Response("  "))
    assert queue.fetch_pending() == []


def test_push_status_posts_form(monkeypatch):
    queue = WebsiteWorkQueue("http://queue.test/pending", "http://queue.test/callback")
    calls = []

    def _post(url, data, timeout):
        calls.append((url, data))
        return _Response("ok")

    monkeypatch.setattr(queue.session, "post", _post)
    request = make_request("7", TradeKind.DEPOSIT, [])
    request.state = RequestState.DECLINED

    assert queue.push_status([request])

    url, data = calls[0]
    assert url == "http://queue.test/callback"
    assert data["action"] == "invtradecallback"
    assert json.loads(data["Status"])["Trades"][0]["Status"] == "2"


def test_push_status_failure_is_reported(monkeypatch):
    queue = WebsiteWorkQueue("http://queue.test/pending", "http://queue.test/callback")

    def _post(url, data, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(queue.session, "post", _post)
    request = make_request("7", TradeKind.DEPOSIT, [])
    request.state = RequestState.DECLINED

    assert queue.push_status([request]) is False
