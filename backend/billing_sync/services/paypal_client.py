"""
PayPal REST client for both merchant accounts.

WHAT: OAuth token handling plus the subscription, plan, transaction and
webhook-verification endpoints the sync services need.

WHY: We bill through two PayPal accounts. "new" is the current account;
"legacy" belongs to the previous product and still renews migrated
subscriptions. A subscription ID is only visible to the account that
owns it, so every caller must pick the right account.

HOW: Uses httpx async client per request with:
- Basic auth client_credentials grant, token cached until 60s before expiry
- 404 returned as None (subscription deleted or owned by the other account)
- Transport errors wrapped in PayPalError
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import httpx

from billing_sync.core.config import settings
from billing_sync.core.exceptions import PayPalAuthError, PayPalError
from billing_sync.core.timeutils import parse_iso
from billing_sync.models.subscription import SubscriptionProvider

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

ACCOUNT_NEW = "new"
ACCOUNT_LEGACY = "legacy"

# Refresh the token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60

# PayPal transmission headers required for signature verification
WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def paypal_next_billing(remote: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """billing_info.next_billing_time, the end of the period already paid for."""
    if not remote:
        return None
    return parse_iso((remote.get("billing_info") or {}).get("next_billing_time"))


def _format_paypal_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


# ============================================================================
# PayPal API Client
# ============================================================================


class PayPalClient:
    """
    Async HTTP client for one PayPal merchant account.
    """

    def __init__(
        self,
        account: str = ACCOUNT_NEW,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            account: "new" or "legacy"; selects credentials from settings
            client_id: Override client ID (tests)
            client_secret: Override client secret (tests)
            base_url: Override API base URL
            timeout: Request timeout in seconds
        """
        if account not in (ACCOUNT_NEW, ACCOUNT_LEGACY):
            raise ValueError(f"Unknown PayPal account: {account}")

        self.account = account
        if account == ACCOUNT_LEGACY:
            self._client_id = client_id or settings.PAYPAL_LEGACY_CLIENT_ID
            self._client_secret = client_secret or settings.PAYPAL_LEGACY_CLIENT_SECRET
        else:
            self._client_id = client_id or settings.PAYPAL_CLIENT_ID
            self._client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET

        self._base_url = (base_url or settings.paypal_base_url).rstrip("/")
        self._timeout = timeout or settings.HTTP_TIMEOUT_SECONDS

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    # =========================================================================
    # Authentication
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Get an OAuth access token, reusing the cached one while valid.

        Raises:
            PayPalAuthError: If credentials are missing or PayPal rejects them
        """
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not self._client_id or not self._client_secret:
            raise PayPalAuthError(
                message=f"PayPal {self.account} credentials are not configured",
                account=self.account,
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/v1/oauth2/token",
                    auth=(self._client_id, self._client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException:
            raise PayPalAuthError(message="PayPal token request timed out", account=self.account)
        except httpx.RequestError as e:
            raise PayPalAuthError(
                message=f"PayPal token request failed: {str(e)}",
                account=self.account,
            )

        if response.status_code != 200:
            logger.error(
                f"PayPal {self.account} token request returned {response.status_code}",
                extra={"account": self.account, "status_code": response.status_code},
            )
            raise PayPalAuthError(
                message="Failed to obtain PayPal access token",
                account=self.account,
                provider_status=response.status_code,
            )

        payload = response.json()
        self._access_token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        token = await self.get_access_token()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(
                    method,
                    f"{self._base_url}{path}",
                    params=params,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException:
            raise PayPalError(message="PayPal API request timed out", path=path, account=self.account)
        except httpx.RequestError as e:
            raise PayPalError(
                message=f"PayPal API connection error: {str(e)}",
                path=path,
                account=self.account,
            )

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        if response.status_code >= 400:
            logger.error(
                f"PayPal {self.account} {path} returned {response.status_code}",
                extra={"account": self.account, "status_code": response.status_code},
            )
            raise PayPalError(
                message=f"PayPal API error ({response.status_code})",
                path=path,
                account=self.account,
                provider_status=response.status_code,
            )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a subscription by its I- ID.

        Returns:
            Subscription object, or None for non-subscription IDs and 404s

        Raises:
            PayPalError: For any other non-2xx response or transport error
        """
        if not subscription_id or not subscription_id.startswith("I-"):
            return None

        path = f"/v1/billing/subscriptions/{subscription_id}"
        response = await self._request("GET", path)
        if response.status_code == 404:
            logger.info(f"PayPal {self.account} subscription {subscription_id} not found")
            return None
        self._raise_for_status(response, path)
        return response.json()

    async def list_subscription_transactions(
        self,
        subscription_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        path = f"/v1/billing/subscriptions/{subscription_id}/transactions"
        response = await self._request(
            "GET",
            path,
            params={
                "start_time": _format_paypal_time(start),
                "end_time": _format_paypal_time(end),
            },
        )
        if response.status_code == 404:
            return []
        self._raise_for_status(response, path)
        return response.json().get("transactions", [])

    # =========================================================================
    # Plans
    # =========================================================================

    async def list_plans(self, page_size: int = 20) -> List[Dict[str, Any]]:
        """
        List every billing plan on this account.

        HOW: Requests total_required=true and walks pages until total_pages.
        """
        path = "/v1/billing/plans"
        plans: List[Dict[str, Any]] = []
        page = 1

        while True:
            response = await self._request(
                "GET",
                path,
                params={"page_size": page_size, "page": page, "total_required": "true"},
            )
            self._raise_for_status(response, path)
            body = response.json()
            plans.extend(body.get("plans", []))

            total_pages = int(body.get("total_pages") or 1)
            if page >= total_pages:
                break
            page += 1

        return plans

    async def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        path = f"/v1/billing/plans/{plan_id}"
        response = await self._request("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, path)
        return response.json()

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def verify_webhook_signature(
        self,
        headers: Mapping[str, str],
        event: Dict[str, Any],
    ) -> bool:
        """
        Ask PayPal whether a webhook delivery is genuine.

        Returns:
            True only when PayPal answers verification_status == SUCCESS.
            False when PAYPAL_WEBHOOK_ID is unset or headers are missing.
        """
        webhook_id = settings.PAYPAL_WEBHOOK_ID
        if not webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID is not set; rejecting webhook")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        body: Dict[str, Any] = {}
        for field, header in WEBHOOK_HEADERS.items():
            value = lowered.get(header)
            if not value:
                logger.warning(f"PayPal webhook missing header {header}")
                return False
            body[field] = value
        body["webhook_id"] = webhook_id
        body["webhook_event"] = event

        path = "/v1/notifications/verify-webhook-signature"
        response = await self._request("POST", path, json=body)
        if response.status_code != 200:
            logger.warning(f"PayPal signature verification returned {response.status_code}")
            return False
        return response.json().get("verification_status") == "SUCCESS"


# ============================================================================
# Module-level convenience functions
# ============================================================================


_paypal_clients: Dict[str, PayPalClient] = {}


def get_paypal_client(account: str = ACCOUNT_NEW) -> PayPalClient:
    """
    Get or create the PayPal client for an account.

    WHY: Singleton per account so the cached OAuth token is shared.
    """
    if account not in _paypal_clients:
        _paypal_clients[account] = PayPalClient(account=account)
    return _paypal_clients[account]


def client_for_provider(provider: SubscriptionProvider) -> PayPalClient:
    """paypal_legacy rows live on the legacy account; everything else on the new one."""
    if provider == SubscriptionProvider.PAYPAL_LEGACY:
        return get_paypal_client(ACCOUNT_LEGACY)
    return get_paypal_client(ACCOUNT_NEW)
