# =============================================================================
# Bot Platform REST Client
# =============================================================================
# Outbound calls keyed by interaction id/token: initial callbacks (push
# channel), edits of the original response and follow-up messages.
#
# Usage:
#   client = RestClient(base_url="https://discord.com/api/v10", application_id="123")
#   client.create_response(interaction.id, interaction.token, body)
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class RestConfig:
    """Configuration for the REST client."""
    base_url: str
    bot_token: str = ""
    application_id: str = ""
    timeout: float = 30.0


class RestClient:
    """Thin requests-based client for interaction callbacks."""

    def __init__(
        self,
        base_url: str,
        bot_token: str = "",
        application_id: str = "",
        timeout: float = 30.0,
        session: requests.Session = None,
    ):
        self.config = RestConfig(
            base_url=base_url.rstrip("/"),
            bot_token=bot_token,
            application_id=application_id,
            timeout=timeout,
        )
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.bot_token:
            headers["Authorization"] = f"Bot {self.config.bot_token}"
        return headers

    def _request(self, method: str, path: str, data: Dict[str, Any] = None) -> Dict[str, Any]:
        """Make HTTP request to the platform API."""
        url = f"{self.config.base_url}{path}"

        try:
            response = self._session.request(
                method=method,
                url=url,
                headers=self._headers(),
                json=data,
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            body = response.json() if response.content else {}
            return {"success": True, "status": response.status_code, "data": body}
        except requests.exceptions.RequestException as e:
            logger.exception(f"{method} {path} failed: {e}")
            return {"success": False, "error": str(e)}

    def _application_id(self, application_id: Optional[str]) -> str:
        return application_id or self.config.application_id

    # =========================================================================
    # INTERACTION CALLBACKS
    # =========================================================================
    def create_response(self, interaction_id: str, token: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Send the initial response to an interaction."""
        return self._request("POST", f"/interactions/{interaction_id}/{token}/callback", body)

    def edit_original(self, token: str, body: Dict[str, Any], application_id: str = None) -> Dict[str, Any]:
        """Replace the original (usually deferred) response."""
        app_id = self._application_id(application_id)
        return self._request("PATCH", f"/webhooks/{app_id}/{token}/messages/@original", body)

    def create_followup(self, token: str, body: Dict[str, Any], application_id: str = None) -> Dict[str, Any]:
        """Send an additional message for an interaction."""
        app_id = self._application_id(application_id)
        return self._request("POST", f"/webhooks/{app_id}/{token}", body)

    def close(self) -> None:
        self._session.close()
