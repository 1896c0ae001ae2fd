"""
HTTP clients for Hopsworks, HubSpot, Resend and Slack, exercised against
httpx.MockTransport handlers.
"""
import json

import httpx
import pytest

from portal.core.errors import ExternalServiceError, NotFoundError, ValidationError
from portal.features.crm.hubspot import HUBSPOT_API_URL, HubSpotClient
from portal.features.hopsworks.client import ADMIN_API_BASE, HopsworksClient, HopsworksError, call_with_retry
from portal.features.notifications.alerts import SlackAlerter
from portal.features.notifications.email import NotificationError, ResendMailer


def _hopsworks(handler):
    http = httpx.Client(base_url="https://hops.test", transport=httpx.MockTransport(handler))
    return HopsworksClient("https://hops.test", "key", http=http)


def test_create_oauth_user_posts_admin_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 42, "username": "ada42"})

    user = _hopsworks(handler).create_oauth_user(
        email="ada@example.com", given_name="Ada", surname="Lovelace", subject="user_1", max_num_projects=5
    )

    assert user == {"id": 42, "username": "ada42"}
    assert seen["path"] == f"{ADMIN_API_BASE}/users"
    assert seen["body"]["maxNumProjects"] == 5
    assert seen["body"]["type"] == "OAUTH2"
    assert "clientId" not in seen["body"]


def test_error_status_classification():
    def handler(request):
        return httpx.Response(int(request.url.params["code"]), text="nope")

    client = _hopsworks(handler)

    def failure(code):
        with pytest.raises(HopsworksError) as info:
            client._request("GET", "/x", params={"code": code})
        return info.value

    assert failure(503).retryable
    assert failure(429).retryable
    assert not failure(400).retryable
    assert failure(409).already_exists


def test_transport_errors_are_retryable():
    def handler(request):
        raise httpx.ConnectError("refused")

    with pytest.raises(HopsworksError) as info:
        _hopsworks(handler).get_user(1)
    assert info.value.retryable and info.value.status_code is None


def test_raise_max_projects_only_raises():
    puts = []

    def handler(request):
        if request.method == "PUT":
            puts.append(json.loads(request.content))
            return httpx.Response(200, json={})
        return httpx.Response(200, json={"id": 7, "maxNumProjects": 3})

    client = _hopsworks(handler)

    assert not client.raise_max_projects(7, 1)
    assert client.raise_max_projects(7, 5)
    assert puts == [{"maxNumProjects": 5}]


def test_list_user_projects_treats_404_as_empty():
    assert _hopsworks(lambda request: httpx.Response(404)).list_user_projects("ghost") == []


def test_client_closes_its_http_session_on_exit():
    http = httpx.Client(base_url="https://hops.test", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))

    with HopsworksClient("https://hops.test", "key", http=http) as client:
        assert client.list_project_members(3) == []

    assert http.is_closed


def test_call_with_retry_backs_off_then_gives_up():
    delays = []
    calls = []

    def flaky():
        calls.append(1)
        raise HopsworksError("down", status_code=502)

    with pytest.raises(HopsworksError):
        call_with_retry(flaky, max_attempts=3, base_delay=0.5, sleep=delays.append)

    assert len(calls) == 3
    assert delays == [0.5, 1.0]


def test_call_with_retry_does_not_retry_conflicts():
    calls = []

    def conflict():
        calls.append(1)
        raise HopsworksError("exists", status_code=409)

    with pytest.raises(HopsworksError):
        call_with_retry(conflict, max_attempts=3, base_delay=0, sleep=lambda _: None)
    assert len(calls) == 1


def _hubspot(routes):
    def handler(request):
        response = routes.get(request.url.path)
        return response if response is not None else httpx.Response(404)

    http = httpx.Client(base_url=HUBSPOT_API_URL, transport=httpx.MockTransport(handler))
    return HubSpotClient("hs-key", http=http)


def _deal_routes(contact_email="buyer@corp.io"):
    return {
        "/crm/v3/objects/deals/123": httpx.Response(200, json={"properties": {"dealname": "Corp", "dealstage": "closedwon"}}),
        "/crm/v3/objects/deals/123/associations/contacts": httpx.Response(200, json={"results": [{"id": "c1"}]}),
        "/crm/v3/objects/contacts/c1": httpx.Response(200, json={"properties": {"email": contact_email}}),
    }


def test_validate_deal_matches_contact_email():
    result = _hubspot(_deal_routes()).validate_deal("123", "Buyer@Corp.io")
    assert result.valid
    assert (result.deal_name, result.deal_stage) == ("Corp", "closedwon")
    assert not _hubspot(_deal_routes()).is_email_authorized_for_deal("123", "someone@else.io")


def test_validate_deal_errors():
    with pytest.raises(NotFoundError):
        _hubspot({}).validate_deal("999", "buyer@corp.io")
    with pytest.raises(ValidationError):
        _hubspot(_deal_routes()).validate_deal("", "buyer@corp.io")

    routes = _deal_routes()
    routes["/crm/v3/objects/deals/123/associations/contacts"] = httpx.Response(200, json={"results": []})
    with pytest.raises(ValidationError):
        _hubspot(routes).validate_deal("123", "buyer@corp.io")

    with pytest.raises(ExternalServiceError):
        HubSpotClient(None, http=httpx.Client()).validate_deal("123", "buyer@corp.io")


def test_resend_mailer():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email_1"})

    ResendMailer("re_key", "Portal <no-reply@example.com>", http=httpx.Client(transport=httpx.MockTransport(handler))).send(
        "ada@example.com", "Hi", "<p>Hi</p>"
    )
    assert sent[0]["to"] == ["ada@example.com"]

    failing = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(422, text="bad")))
    with pytest.raises(NotificationError):
        ResendMailer("re_key", http=failing).send("ada@example.com", "Hi", "<p>Hi</p>")


def test_resend_mailer_requires_key(monkeypatch):
    monkeypatch.setattr("portal.features.notifications.email.settings.RESEND_API_KEY", None)
    with pytest.raises(NotificationError):
        ResendMailer().send("ada@example.com", "Hi", "<p>Hi</p>")


def test_slack_alerter_reports_delivery():
    ok = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    down = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    assert SlackAlerter("https://hooks.slack.test/x", http=ok).post("hello")
    assert not SlackAlerter("https://hooks.slack.test/x", http=down).post("hello")
