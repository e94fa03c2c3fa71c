import hashlib
import json

import httpx
import pytest

from conftest import create_form, csrf_headers, login
from main import app
from services.integrations_service import IntegrationService, get_integration_service

SUBMISSION = {"name": "Ana Maria Souza", "email": "Ana@Example.com", "phone": "11 99999-0000", "company": "Acme"}


def make_service(handler, **kwargs):
    params = {
        "crm_api_key": "crm-key",
        "mailchimp_api_key": "mc-key-us21",
        "mailchimp_list_id": "list123",
        "crm_api_url": "https://crm.test/v1",
    }
    params.update(kwargs)
    return IntegrationService(transport=httpx.MockTransport(handler), **params)


@pytest.mark.asyncio
async def test_unconfigured_integrations_are_skipped():
    def handler(request):
        raise AssertionError("no request expected")

    service = make_service(handler, crm_api_key="", mailchimp_api_key="", mailchimp_list_id="")
    result = await service.process_form_submission(SUBMISSION, "Contact")
    assert result == {
        "success": True,
        "integrations": {
            "crm": {"success": True, "skipped": True},
            "mailchimp": {"success": True, "skipped": True},
        },
    }


@pytest.mark.asyncio
async def test_submission_without_email_skips_calls():
    calls = []
    service = make_service(lambda request: calls.append(request) or httpx.Response(200, json={}))
    result = await service.process_form_submission({"name": "Ana"}, "Contact")
    assert result["success"] is True
    assert result["integrations"] == {"crm": {"success": True}, "mailchimp": {"success": True}}
    assert calls == []


@pytest.mark.asyncio
async def test_contact_pushed_to_both_services():
    seen = {}

    def handler(request):
        body = json.loads(request.content)
        if request.url.host == "crm.test":
            seen["crm"] = (request, body)
            return httpx.Response(201, json={"id": "crm-1"})
        seen["mailchimp"] = (request, body)
        return httpx.Response(200, json={"id": "mc-1"})

    result = await make_service(handler).process_form_submission(SUBMISSION, "Contact Us")

    assert result == {
        "success": True,
        "integrations": {"crm": {"success": True, "id": "crm-1"}, "mailchimp": {"success": True, "id": "mc-1"}},
    }

    crm_request, crm_body = seen["crm"]
    assert str(crm_request.url) == "https://crm.test/v1/contacts"
    assert crm_request.headers["authorization"] == "Bearer crm-key"
    assert crm_body["first_name"] == "Ana"
    assert crm_body["last_name"] == "Maria Souza"
    assert crm_body["source"] == "Form: Contact Us"
    assert crm_body["tags"] == ["form-submission", "lead"]
    assert crm_body["custom_fields"]["raw_data"] == SUBMISSION

    mc_request, mc_body = seen["mailchimp"]
    assert str(mc_request.url) == "https://us21.api.mailchimp.com/3.0/lists/list123/members"
    assert mc_body["status"] == "subscribed"
    assert mc_body["tags"] == ["form-submission", "contact-us"]
    assert mc_body["merge_fields"]["FNAME"] == "Ana"
    assert mc_body["merge_fields"]["COMPANY"] == "Acme"


@pytest.mark.asyncio
async def test_crm_error_status():
    service = make_service(lambda request: httpx.Response(500, text="boom"), mailchimp_api_key="")
    result = await service.process_form_submission(SUBMISSION, "Contact")
    assert result["success"] is False
    assert result["integrations"]["crm"] == {"success": False, "error": "CRM API Error: 500"}


@pytest.mark.asyncio
async def test_crm_connection_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = await make_service(handler).add_to_crm({"email": "a@example.com", "name": "A"})
    assert result == {"success": False, "error": "CRM connection failed"}


@pytest.mark.asyncio
async def test_existing_mailchimp_member_is_updated():
    requests = []

    def handler(request):
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(400, json={"title": "Member Exists", "detail": "already a list member"})
        return httpx.Response(200, json={"id": "mc-existing"})

    result = await make_service(handler).add_to_mailchimp({"email": "Ana@Example.com", "firstName": "Ana"})

    assert result == {"success": True, "id": "mc-existing"}
    patch = requests[-1]
    assert patch.method == "PATCH"
    expected_hash = hashlib.md5(b"ana@example.com").hexdigest()
    assert patch.url.path.endswith(f"/members/{expected_hash}")


@pytest.mark.asyncio
async def test_mailchimp_error_detail():
    service = make_service(lambda request: httpx.Response(400, json={"title": "Invalid Resource", "detail": "bad email"}))
    result = await service.add_to_mailchimp({"email": "x@example.com"})
    assert result == {"success": False, "error": "Mailchimp API Error: bad email"}


@pytest.mark.asyncio
async def test_mailchimp_key_without_datacenter():
    service = make_service(lambda request: httpx.Response(200), mailchimp_api_key="nodatacenter")
    assert await service.add_to_mailchimp({"email": "x@example.com"}) == {
        "success": False,
        "error": "Invalid Mailchimp API key",
    }


@pytest.mark.parametrize("key,datacenter", [
    ("abc123-us21", "us21"),
    ("mc-key-us21", "us21"),
    ("a-b-c-us6", "us6"),
    ("nodatacenter", ""),
])
def test_mailchimp_datacenter_is_key_suffix(key, datacenter):
    assert IntegrationService(mailchimp_api_key=key).mailchimp_datacenter == datacenter


@pytest.mark.asyncio
async def test_connections():
    def handler(request):
        if request.url.host == "crm.test":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, json={})

    results = await make_service(handler).test_connections()
    assert results == {"crm": {"connected": True}, "mailchimp": {"connected": False, "error": "HTTP 401"}}


@pytest.mark.asyncio
async def test_connections_unconfigured():
    service = make_service(lambda request: httpx.Response(200), crm_api_key="", mailchimp_api_key="")
    assert await service.test_connections() == {
        "crm": {"connected": False, "error": "API key not configured"},
        "mailchimp": {"connected": False, "error": "Credentials not configured"},
    }


def test_integrations_endpoint(auth_client):
    service = make_service(lambda request: httpx.Response(200, json={}))
    app.dependency_overrides[get_integration_service] = lambda: service

    resp = auth_client.get("/api/integrations/test")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["connections"] == {"crm": {"connected": True}, "mailchimp": {"connected": True}}


def test_integration_results_stored_with_submission(auth_client):
    service = make_service(lambda request: httpx.Response(502, json={"detail": "down"}))
    app.dependency_overrides[get_integration_service] = lambda: service

    form = create_form(auth_client)
    resp = auth_client.post(
        "/api/submissions",
        json={"formId": form["id"], "data": {"name": "Ana", "email": "ana@example.com"}},
        headers=csrf_headers(auth_client),
    )
    # integration failures never reject the submission
    assert resp.status_code == 201
    stored = auth_client.get(f"/api/submissions/{resp.json()['id']}").json()
    assert stored["integration_results"]["success"] is False
    assert stored["integration_results"]["integrations"]["crm"]["error"] == "CRM API Error: 502"


def test_integrations_endpoint_is_admin_only(client):
    resp = client.post(
        "/api/auth/register",
        json={"email": "member@example.com", "password": "member-pass-1"},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 201
    assert login(client, "member@example.com", "member-pass-1").status_code == 200

    resp = client.get("/api/integrations/test")
    assert resp.status_code == 403
    assert resp.json() == {"error": "Admin access required"}
