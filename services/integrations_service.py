"""
Outbound integrations run after each submission: CRM contact creation and
Mailchimp list subscription
"""

import os
import asyncio
import hashlib
import logging
import datetime
from typing import Dict, Any, Optional

import httpx

logger = logging.getLogger("backend.integrations")

CRM_API_URL = os.getenv("CRM_API_URL", "https://api.crm-example.com/v1").rstrip("/")
USER_AGENT = "FormForge/1.0"
REQUEST_TIMEOUT = 15.0

_EMAIL_KEYS = ("email", "Email", "email_address")
_NAME_KEYS = ("name", "Name", "nome")
_PHONE_KEYS = ("phone", "Phone", "telefone")
_COMPANY_KEYS = ("company", "Company", "empresa")


def _first_value(data: Dict[str, Any], keys) -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    return ""


def _split_name(name: str) -> tuple[str, str]:
    parts = name.split(" ")
    return parts[0] if parts else "", " ".join(parts[1:])


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class IntegrationService:
    """CRM and Mailchimp client. Credentials default to the environment.

    An unconfigured integration is skipped and reported as successful so a
    submission never fails because a marketing tool is not set up.
    """

    def __init__(
        self,
        crm_api_key: Optional[str] = None,
        mailchimp_api_key: Optional[str] = None,
        mailchimp_list_id: Optional[str] = None,
        crm_api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.crm_api_key = crm_api_key if crm_api_key is not None else os.getenv("CRM_API_KEY", "")
        self.mailchimp_api_key = (
            mailchimp_api_key if mailchimp_api_key is not None else os.getenv("MAILCHIMP_API_KEY", "")
        )
        self.mailchimp_list_id = (
            mailchimp_list_id if mailchimp_list_id is not None else os.getenv("MAILCHIMP_LIST_ID", "")
        )
        self.crm_api_url = (crm_api_url or CRM_API_URL).rstrip("/")
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self.transport)

    @property
    def mailchimp_datacenter(self) -> str:
        # Keys look like <key>-<dc>, e.g. abc123-us21; the key part may contain hyphens
        parts = self.mailchimp_api_key.rsplit("-", 1)
        return parts[1] if len(parts) == 2 else ""

    def _mailchimp_members_url(self) -> str:
        return f"https://{self.mailchimp_datacenter}.api.mailchimp.com/3.0/lists/{self.mailchimp_list_id}/members"

    async def add_to_crm(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        if not self.crm_api_key:
            logger.info("CRM API key not configured, skipping")
            return {"success": True, "skipped": True}

        first_name, last_name = _split_name(contact.get("name") or "")
        payload = {
            "email": contact["email"],
            "first_name": first_name,
            "last_name": last_name,
            "phone": contact.get("phone") or "",
            "company": contact.get("company") or "",
            "source": contact.get("source") or "",
            "custom_fields": contact.get("customFields") or {},
            "tags": ["form-submission", "lead"],
            "created_at": _now_iso(),
        }
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.crm_api_url}/contacts",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.crm_api_key}", "User-Agent": USER_AGENT},
                )
            if resp.status_code >= 400:
                logger.warning("CRM API error %s: %s", resp.status_code, resp.text)
                return {"success": False, "error": f"CRM API Error: {resp.status_code}"}
            result = resp.json()
            logger.info("CRM contact created id=%s", result.get("id"))
            return {"success": True, "id": result.get("id")}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("CRM request failed: %s", e)
            return {"success": False, "error": "CRM connection failed"}

    async def add_to_mailchimp(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        if not self.mailchimp_api_key or not self.mailchimp_list_id:
            logger.info("Mailchimp credentials not configured, skipping")
            return {"success": True, "skipped": True}
        if not self.mailchimp_datacenter:
            return {"success": False, "error": "Invalid Mailchimp API key"}

        member = {
            "email_address": contact["email"],
            "status": "subscribed",
            "merge_fields": {
                "FNAME": contact.get("firstName") or "",
                "LNAME": contact.get("lastName") or "",
                "PHONE": contact.get("phone") or "",
                **(contact.get("mergeFields") or {}),
            },
            "tags": contact.get("tags") or ["form-submission"],
            "timestamp_signup": _now_iso(),
        }
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._mailchimp_members_url(),
                    json=member,
                    headers={"Authorization": f"Bearer {self.mailchimp_api_key}", "User-Agent": USER_AGENT},
                )
                if resp.status_code >= 400:
                    error = resp.json()
                    if resp.status_code == 400 and error.get("title") == "Member Exists":
                        return await self._update_mailchimp_member(client, contact)
                    logger.warning("Mailchimp add member failed: %s", resp.text)
                    return {"success": False, "error": f"Mailchimp API Error: {error.get('detail')}"}
            result = resp.json()
            logger.info("Mailchimp member added id=%s", result.get("id"))
            return {"success": True, "id": result.get("id")}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Mailchimp request failed: %s", e)
            return {"success": False, "error": "Mailchimp connection failed"}

    async def _update_mailchimp_member(self, client: httpx.AsyncClient, contact: Dict[str, Any]) -> Dict[str, Any]:
        email_hash = hashlib.md5(contact["email"].lower().encode("utf-8")).hexdigest()
        update = {
            "merge_fields": {
                "FNAME": contact.get("firstName") or "",
                "LNAME": contact.get("lastName") or "",
                "PHONE": contact.get("phone") or "",
                **(contact.get("mergeFields") or {}),
            },
            "status": "subscribed",
        }
        resp = await client.patch(
            f"{self._mailchimp_members_url()}/{email_hash}",
            json=update,
            headers={"Authorization": f"Bearer {self.mailchimp_api_key}"},
        )
        if resp.status_code >= 400:
            return {"success": False, "error": f"Update failed: {resp.json().get('detail')}"}
        result = resp.json()
        logger.info("Mailchimp member updated id=%s", result.get("id"))
        return {"success": True, "id": result.get("id")}

    async def process_form_submission(self, data: Dict[str, Any], form_title: str) -> Dict[str, Any]:
        """Push the contact found in a submission to every integration."""
        email = _first_value(data, _EMAIL_KEYS)
        name = _first_value(data, _NAME_KEYS)
        phone = _first_value(data, _PHONE_KEYS)
        company = _first_value(data, _COMPANY_KEYS)

        if not email:
            logger.info("No email in submission for %r, skipping integrations", form_title)
            return {"success": True, "integrations": {"crm": {"success": True}, "mailchimp": {"success": True}}}

        first_name, last_name = _split_name(name)
        crm_contact = {
            "email": email,
            "name": name,
            "phone": phone,
            "company": company,
            "source": f"Form: {form_title}",
            "customFields": {
                "form_title": form_title,
                "submission_date": _now_iso(),
                "raw_data": data,
            },
        }
        mailchimp_contact = {
            "email": email,
            "firstName": first_name,
            "lastName": last_name,
            "phone": phone,
            "tags": ["form-submission", "-".join(form_title.lower().split())],
            "mergeFields": {
                "COMPANY": company,
                "FORMTITLE": form_title,
                "SUBDATE": datetime.date.today().strftime("%d/%m/%Y"),
            },
        }

        crm_result, mailchimp_result = await asyncio.gather(
            self.add_to_crm(crm_contact),
            self.add_to_mailchimp(mailchimp_contact),
        )
        success = bool(crm_result.get("success") and mailchimp_result.get("success"))
        logger.info("Integrations finished for %r success=%s", form_title, success)
        return {"success": success, "integrations": {"crm": crm_result, "mailchimp": mailchimp_result}}

    async def _ping(self, client: httpx.AsyncClient, url: str, api_key: str) -> Dict[str, Any]:
        try:
            resp = await client.get(url, headers={"Authorization": f"Bearer {api_key}"})
        except httpx.HTTPError as e:
            logger.warning("Ping %s failed: %s", url, e)
            return {"connected": False, "error": "Connection failed"}
        if resp.status_code >= 400:
            return {"connected": False, "error": f"HTTP {resp.status_code}"}
        return {"connected": True}

    async def test_connections(self) -> Dict[str, Dict[str, Any]]:
        results = {
            "crm": {"connected": False, "error": "API key not configured"},
            "mailchimp": {"connected": False, "error": "Credentials not configured"},
        }
        async with self._client() as client:
            if self.crm_api_key:
                results["crm"] = await self._ping(client, f"{self.crm_api_url}/ping", self.crm_api_key)
            if self.mailchimp_api_key and self.mailchimp_list_id and self.mailchimp_datacenter:
                results["mailchimp"] = await self._ping(
                    client,
                    f"https://{self.mailchimp_datacenter}.api.mailchimp.com/3.0/ping",
                    self.mailchimp_api_key,
                )
        return results


integration_service = IntegrationService()


def get_integration_service() -> IntegrationService:
    """FastAPI dependency; tests override it with a mocked transport."""
    return integration_service
