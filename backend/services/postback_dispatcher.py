"""
Service d'envoi des postbacks vers les affiliés
Construit l'URL depuis le template du statut, envoie, journalise

Template (variables insensibles à la casse, valeurs URL-encodées):
    https://tracker.example/pb?click={leadId}&st={status}&amount={payout}&pub={publisherId}&p={producto}

- Variable inconnue → laissée telle quelle ({foo} reste {foo})
- Chaque tentative → un enregistrement postback_notifications
- Aucune exception remontée à l'appelant (dispatch en tâche de fond)
- Pas de retry ici: retry_count initialisé à 0
"""

import re
import uuid
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable
from urllib.parse import quote

import httpx

from config import POSTBACK_TIMEOUT, POSTBACK_TEST_TIMEOUT, utc_now, to_iso
from models.postback import NotificationStatus
from services.payout_resolver import PayoutResolver

logger = logging.getLogger("postback_dispatcher")

USER_AGENT = "Lead-Management-System/1.0"
RESPONSE_BODY_LIMIT = 1000
INVALID_URL_MESSAGE = "Invalid URL format. Please check your URL syntax."

PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_]+)\}")

# nom de variable (minuscules) → clé de valeur
VARIABLE_ALIASES = {
    "leadid": "lead_id",
    "lead_id": "lead_id",
    "leadnumber": "lead_number",
    "status": "status",
    "payout": "payout",
    "publisherid": "publisher_id",
    "publisher_id": "publisher_id",
    "producto": "product",
    "product": "product",
}

# Valeurs factices pour le test de configuration
TEST_VALUES = {
    "lead_id": "999999",
    "lead_number": "LEAD-TEST-999999",
    "status": "sale",
    "payout": "25.00",
    "product": "Test Product",
}


def render_postback_url(template: str, values: Dict[str, Any]) -> str:
    def replace(match):
        key = VARIABLE_ALIASES.get(match.group(1).lower())
        if key is None or values.get(key) is None:
            return match.group(0)
        return quote(str(values[key]), safe="")

    return PLACEHOLDER_RE.sub(replace, template)


def is_valid_postback_url(url: str) -> bool:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


class PostbackDispatcher:

    def __init__(
        self,
        store,
        payout_resolver: Optional[PayoutResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = POSTBACK_TIMEOUT,
        test_timeout: float = POSTBACK_TEST_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.payout_resolver = payout_resolver or PayoutResolver(store)
        self._transport = transport
        self.timeout = timeout
        self.test_timeout = test_timeout
        self._clock = clock

    # ==================== ENVOI HTTP ====================

    async def _send(self, url: str, timeout: float, user_agent: str) -> Dict[str, Any]:
        """GET vers l'affilié. Retourne status/http_status/response_body/error_message."""
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.get(url, headers={"User-Agent": user_agent})
        except httpx.TimeoutException:
            logger.warning(f"[POSTBACK] Timeout after {timeout}s: {url}")
            return {
                "status": NotificationStatus.FAILED.value,
                "http_status": None,
                "response_body": None,
                "error_message": f"Timeout after {timeout:g}s",
            }
        except httpx.HTTPError as e:
            logger.warning(f"[POSTBACK] Request error {url}: {e}")
            return {
                "status": NotificationStatus.FAILED.value,
                "http_status": None,
                "response_body": None,
                "error_message": f"Request error: {e}",
            }

        body = resp.text[:RESPONSE_BODY_LIMIT]
        if resp.is_success:
            logger.info(f"[POSTBACK] {resp.status_code} {url}")
            return {
                "status": NotificationStatus.SUCCESS.value,
                "http_status": resp.status_code,
                "response_body": body,
                "error_message": None,
            }

        logger.warning(f"[POSTBACK] HTTP {resp.status_code} {url}")
        return {
            "status": NotificationStatus.FAILED.value,
            "http_status": resp.status_code,
            "response_body": body,
            "error_message": f"HTTP {resp.status_code}: {resp.reason_phrase}",
        }

    def _notification(self, user_id, lead: Optional[Dict[str, Any]], url: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "lead_id": lead.get("id") if lead else None,
            "lead_number": lead.get("lead_number") if lead else None,
            "lead_status": lead.get("status") if lead else None,
            "url": url,
            **outcome,
            "retry_count": 0,
            "created_at": to_iso(self._clock()),
        }

    # ==================== DISPATCH ====================

    async def dispatch(self, lead: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Envoie le postback du statut courant. None si rien à envoyer."""
        try:
            return await self._dispatch(lead)
        except Exception as e:
            logger.error(f"[POSTBACK] Dispatch failed for lead {lead.get('lead_number')}: {e}")
            return None

    async def _dispatch(self, lead: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        user_id = lead.get("user_id")
        status = lead.get("status")

        config = await self.store.get_postback_config(user_id)
        if not config or not config.get("enabled"):
            return None

        template = config.get(f"{status}_url")
        if not template:
            return None

        publisher_id = lead.get("publisher_id")
        payout = await self.payout_resolver.resolve(lead.get("product_id"), user_id, publisher_id)

        url = render_postback_url(template, {
            "lead_id": lead.get("id"),
            "lead_number": lead.get("lead_number"),
            "status": status,
            "payout": f"{payout:.2f}",
            "publisher_id": publisher_id or user_id,
            "product": lead.get("product_name") or "",
        })

        if not is_valid_postback_url(url):
            outcome = {
                "status": NotificationStatus.FAILED.value,
                "http_status": None,
                "response_body": None,
                "error_message": INVALID_URL_MESSAGE,
            }
        else:
            outcome = await self._send(url, self.timeout, USER_AGENT)

        notification = self._notification(user_id, lead, url, outcome)
        await self.store.insert_postback_notification(notification)
        return notification

    async def test_dispatch(self, template_url: str, user_id: int) -> Dict[str, Any]:
        """Envoi de test avec des valeurs factices (validation de la configuration)"""
        url = render_postback_url(template_url, {**TEST_VALUES, "publisher_id": str(user_id)})

        if not is_valid_postback_url(url):
            return {"success": False, "url": url, "error": INVALID_URL_MESSAGE}

        outcome = await self._send(url, self.test_timeout, f"{USER_AGENT} (Test)")

        try:
            await self.store.insert_postback_notification(self._notification(user_id, None, url, outcome))
        except Exception as e:
            logger.error(f"[POSTBACK] Could not record test notification for user {user_id}: {e}")

        return {
            "success": outcome["status"] == NotificationStatus.SUCCESS.value,
            "url": url,
            "http_status": outcome["http_status"],
            "response_body": outcome["response_body"],
            "error": outcome["error_message"],
        }
