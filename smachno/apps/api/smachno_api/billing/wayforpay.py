"""WayForPay API client.

Checkout flow:
- CREATE_INVOICE via the JSON API returns a hosted invoiceUrl
- reasonCode 1113 (invalid signature) -> retry with the alternate key
- still rejected, or WAYFORPAY_USE_WIDGET=true -> widget checkout form
  served by this app at /payment/form/<reference>, which auto-posts the signed
  fields to the hosted payment page

WayForPay API Reference:
- Invoice: https://wiki.wayforpay.com/en/view/852498
- Service URL (notifications): https://wiki.wayforpay.com/en/view/852102
"""

import html
import logging
import time
from typing import Any, Literal, Mapping, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from smachno_api.billing import order_reference
from smachno_api.billing.errors import CheckoutUnavailableError
from smachno_api.billing.signature import sign_accept_response, sign_invoice
from smachno_api.config.env import BillingSettings, get_billing_settings

logger = logging.getLogger(__name__)

API_URL = "https://api.wayforpay.com/api"
PAY_URL = "https://secure.wayforpay.com/pay"

REASON_INVALID_SIGNATURE = 1113


class CheckoutHandle(BaseModel):
    """Where to send the user to pay for reference."""

    reference: str
    checkout_url: str
    amount_minor: int
    mode: Literal["invoice", "widget"]

    @property
    def amount_display(self) -> str:
        return format_major(self.amount_minor)


def format_major(amount_minor: int) -> str:
    """Minor units to the gateway's major-unit notation (3000 -> "30", 3050 -> "30.5")."""
    whole, cents = divmod(amount_minor, 100)
    if cents == 0:
        return str(whole)
    return f"{amount_minor / 100:.2f}".rstrip("0")


class WayForPayClient:
    """WayForPay merchant API client.

    Environment Variables:
    - WAYFORPAY_MERCHANT_ACCOUNT: Merchant login
    - WAYFORPAY_SECRET_KEY / WAYFORPAY_MERCHANT_PASSWORD: Signing keys
    - MERCHANT_DOMAIN_NAME: Domain registered with the merchant account
    - APP_URL: Public base URL for returnUrl/serviceUrl
    """

    def __init__(
        self,
        settings: Optional[BillingSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_billing_settings()

        if not self.settings.merchant_account:
            raise ValueError(
                "WAYFORPAY_MERCHANT_ACCOUNT is required. Set it in environment configuration."
            )
        if not self.settings.signature_keys:
            raise ValueError(
                "WAYFORPAY_SECRET_KEY or WAYFORPAY_MERCHANT_PASSWORD is required. "
                "Set it in environment configuration."
            )

        self.api_url = API_URL
        self.pay_url = PAY_URL
        self._transport = transport

    @property
    def invoice_keys(self) -> list[str]:
        """Keys for signing outbound requests: secret key first, password as alternate."""
        return [key for key in (self.settings.secret_key, self.settings.merchant_password) if key]

    def build_invoice_params(
        self,
        reference: str,
        amount_minor: int,
        order_date: int,
    ) -> dict[str, Any]:
        """Signed-field set shared by CREATE_INVOICE and the widget form (unsigned)."""
        amount = format_major(amount_minor)
        return {
            "merchantAccount": self.settings.merchant_account,
            "merchantDomainName": self.settings.merchant_domain_name,
            "orderReference": reference,
            "orderDate": order_date,
            "amount": amount,
            "currency": self.settings.currency,
            "productName": [self.settings.product_name],
            "productCount": [1],
            "productPrice": [amount],
            "returnUrl": self.settings.return_url,
            "serviceUrl": self.settings.webhook_url,
        }

    async def create_invoice(
        self,
        reference: str,
        amount_minor: Optional[int] = None,
        order_date: Optional[int] = None,
    ) -> CheckoutHandle:
        """Create a hosted invoice for reference.

        Args:
            reference: Order reference (already recorded as a pending intent)
            amount_minor: Amount in minor units; defaults to the configured price
            order_date: Unix seconds; defaults to now

        Returns:
            CheckoutHandle (invoice URL or widget form URL)

        Raises:
            CheckoutUnavailableError: Gateway unreachable or rejected the request
        """
        amount_minor = self.settings.payment_amount_minor if amount_minor is None else amount_minor
        order_date = int(time.time()) if order_date is None else order_date
        params = self.build_invoice_params(reference, amount_minor, order_date)

        if self.settings.use_widget:
            return self._widget_handle(reference, amount_minor, params)

        async with httpx.AsyncClient(transport=self._transport) as client:
            for index, key in enumerate(self.invoice_keys):
                payload = {
                    "transactionType": "CREATE_INVOICE",
                    "apiVersion": 1,
                    **params,
                    "merchantSignature": sign_invoice(params, key),
                }
                data = await self._post(client, payload, reference)

                checkout_url = data.get("invoiceUrl") or data.get("url")
                if checkout_url:
                    logger.info(
                        "WayForPay invoice created",
                        extra={
                            "event": "wayforpay.invoice.created",
                            "order_reference": reference,
                            "key_index": index,
                        },
                    )
                    return CheckoutHandle(
                        reference=reference,
                        checkout_url=checkout_url,
                        amount_minor=amount_minor,
                        mode="invoice",
                    )

                if _reason_code(data) == REASON_INVALID_SIGNATURE:
                    logger.warning(
                        "WayForPay rejected invoice signature",
                        extra={
                            "event": "wayforpay.invoice.invalid_signature",
                            "order_reference": reference,
                            "key_index": index,
                        },
                    )
                    continue

                raise CheckoutUnavailableError(
                    f"WayForPay rejected invoice: {data.get('reason') or data.get('reasonCode')}",
                    reference=reference,
                )

        logger.warning(
            "All invoice keys rejected, falling back to widget checkout",
            extra={"event": "wayforpay.invoice.widget_fallback", "order_reference": reference},
        )
        return self._widget_handle(reference, amount_minor, params)

    async def _post(
        self, client: httpx.AsyncClient, payload: dict[str, Any], reference: str
    ) -> dict[str, Any]:
        try:
            response = await client.post(self.api_url, json=payload, timeout=10.0)
        except httpx.HTTPError as e:
            logger.error(
                "WayForPay unreachable",
                extra={
                    "event": "wayforpay.invoice.unreachable",
                    "order_reference": reference,
                    "error_type": type(e).__name__,
                },
            )
            raise CheckoutUnavailableError("WayForPay is not responding", reference=reference) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise CheckoutUnavailableError(
                f"Unexpected WayForPay response (HTTP {response.status_code})",
                reference=reference,
            )

        if response.is_error and _reason_code(data) != REASON_INVALID_SIGNATURE:
            raise CheckoutUnavailableError(
                f"WayForPay error (HTTP {response.status_code}): {data.get('reason')}",
                reference=reference,
            )
        return data

    def _widget_handle(
        self, reference: str, amount_minor: int, params: Mapping[str, Any]
    ) -> CheckoutHandle:
        query = urlencode(
            {
                "orderDate": str(params["orderDate"]),
                "amount": params["amount"],
                "currency": params["currency"],
                "productName": params["productName"][0],
            }
        )
        url = f"{self.settings.app_url.rstrip('/')}/payment/form/{reference}?{query}"
        return CheckoutHandle(
            reference=reference,
            checkout_url=url,
            amount_minor=amount_minor,
            mode="widget",
        )

    def build_widget_form(self, reference: str, query: Mapping[str, str]) -> str:
        """Render an auto-submitting form posting the signed fields to the pay page.

        orderDate and amount must be the values the checkout URL was built
        with, otherwise the signature will not match.
        """
        order_date = query.get("orderDate")
        if not order_date:
            timestamp_ms = order_reference.decode_timestamp(reference)
            order_date = str(timestamp_ms // 1000 if timestamp_ms else int(time.time()))

        amount = query.get("amount") or format_major(self.settings.payment_amount_minor)
        params: dict[str, Any] = {
            "merchantAccount": self.settings.merchant_account,
            "merchantDomainName": self.settings.merchant_domain_name,
            "orderReference": reference,
            "orderDate": order_date,
            "amount": amount,
            "currency": query.get("currency") or self.settings.currency,
            "productName": [query.get("productName") or self.settings.product_name],
            "productCount": [1],
            "productPrice": [amount],
        }
        signature = sign_invoice(params, self.invoice_keys[0])

        fields = [
            ("merchantAccount", params["merchantAccount"]),
            ("merchantDomainName", params["merchantDomainName"]),
            ("orderReference", reference),
            ("orderDate", order_date),
            ("amount", amount),
            ("currency", params["currency"]),
            ("productName[]", params["productName"][0]),
            ("productCount[]", "1"),
            ("productPrice[]", amount),
            ("returnUrl", self.settings.return_url),
            ("serviceUrl", self.settings.webhook_url),
            ("merchantSignature", signature),
        ]
        inputs = "\n".join(
            f'        <input type="hidden" name="{html.escape(name)}" value="{html.escape(str(value))}">'
            for name, value in fields
        )
        return _WIDGET_FORM_TEMPLATE.format(action=html.escape(self.pay_url), inputs=inputs)

    def build_accept_response(
        self, reference: str, time_value: Optional[int] = None
    ) -> dict[str, Any]:
        return build_accept_response(reference, self.settings, time_value)


def build_accept_response(
    reference: str,
    settings: Optional[BillingSettings] = None,
    time_value: Optional[int] = None,
) -> dict[str, Any]:
    """Acknowledgement body the gateway expects from the service URL.

    Without it the gateway keeps redelivering the notification.
    """
    settings = settings or get_billing_settings()
    time_value = int(time.time()) if time_value is None else time_value
    key = settings.secret_key or settings.merchant_password or ""
    return {
        "orderReference": reference,
        "status": "accept",
        "time": time_value,
        "signature": sign_accept_response(reference, "accept", time_value, key),
    }


def _reason_code(data: Mapping[str, Any]) -> Optional[int]:
    raw = data.get("reasonCode")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


_WIDGET_FORM_TEMPLATE = """<!DOCTYPE html>
<html lang="uk">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>WayForPay</title>
</head>
<body>
    <p>Redirecting to the WayForPay payment page...</p>
    <form id="wayforpayForm" method="POST" action="{action}">
{inputs}
    </form>
    <script>document.getElementById('wayforpayForm').submit();</script>
</body>
</html>
"""


# Global client instance (singleton)
_wayforpay_client: Optional[WayForPayClient] = None


def get_wayforpay_client() -> WayForPayClient:
    """Get global WayForPay client instance (singleton).

    Raises:
        ValueError: Merchant account or keys not configured
    """
    global _wayforpay_client
    if _wayforpay_client is None:
        _wayforpay_client = WayForPayClient()
    return _wayforpay_client


def reset_wayforpay_client() -> None:
    """Drop the global client (for testing)."""
    global _wayforpay_client
    _wayforpay_client = None
