"""
myDATA Transmission Client

One AsyncClient handle is opened at application start (see server.py lifespan)
and shared by reference. Every call carries the business credentials as
transport headers; the XML body never contains them.

Failure classes:
    TransmissionNetworkError  unreachable host / timeout (transient)
    TransmissionAuthError     401 / 403 from the authority (fix the credentials)
    TransmissionServerError   answer that is not a ResponseDoc (transient)
    SendResult(success=False) structured protocol rejection (fix the invoice)

The client never retries; retry policy belongs to the caller.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Union

import httpx

from config import PRODUCTION, Settings
from models.invoice import TransmissionFailure
from models.mydata import (
    CancellationResult,
    ConnectionStatus,
    MyDataCredentials,
    MyDataEnvironment,
    SendResult,
    TransmittedDoc,
)
from services.mydata_transformer import (
    ResponseFormatError,
    build_cancellation_request,
    parse_cancellation_response,
    parse_requested_docs,
    parse_send_response,
)

logger = logging.getLogger(__name__)

USER_ID_HEADER = "aade-user-id"
SUBSCRIPTION_KEY_HEADER = "Ocp-Apim-Subscription-Key"

SEND_INVOICES = "SendInvoices"
CANCEL_INVOICE = "CancelInvoice"
REQUEST_TRANSMITTED_DOCS = "RequestTransmittedDocs"

QUERY_DATE_FORMAT = "%d/%m/%Y"


# ============================================================
# ERRORS
# ============================================================

class CredentialsNotConfiguredError(Exception):
    """No usable myDATA credential pair for this business / environment"""


class TransmissionError(Exception):
    failure = TransmissionFailure.SERVER_ERROR
    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransmissionNetworkError(TransmissionError):
    failure = TransmissionFailure.NETWORK

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class TransmissionAuthError(TransmissionError):
    failure = TransmissionFailure.AUTHENTICATION
    transient = False


class TransmissionServerError(TransmissionError):
    failure = TransmissionFailure.SERVER_ERROR


# ============================================================
# CREDENTIALS
# ============================================================

def resolve_credentials(environment: Union[str, MyDataEnvironment],
                        override: Optional[Dict[str, str]],
                        defaults: Settings) -> MyDataCredentials:
    """
    Resolve the credential pair for one business.

    A complete per-business override always wins. The shared default pair is
    only honoured outside production. Anything else fails loudly.
    """
    try:
        env = MyDataEnvironment(str(getattr(environment, "value", environment)).lower())
    except ValueError:
        raise CredentialsNotConfiguredError(f"Unknown myDATA environment: {environment!r}")

    override = override or {}
    user_id = (override.get("user_id") or "").strip()
    subscription_key = (override.get("subscription_key") or "").strip()
    if user_id and subscription_key:
        return MyDataCredentials(
            user_id=user_id,
            subscription_key=subscription_key,
            environment=env,
            source="settings"
        )

    if env.value != PRODUCTION and defaults.mydata_default_user_id and defaults.mydata_default_subscription_key:
        return MyDataCredentials(
            user_id=defaults.mydata_default_user_id,
            subscription_key=defaults.mydata_default_subscription_key,
            environment=env,
            source="default"
        )

    raise CredentialsNotConfiguredError(
        f"myDATA credentials are not configured for the {env.value} environment. "
        "Add your user id and subscription key in the business settings."
    )


# ============================================================
# CLIENT
# ============================================================

class MyDataClient:
    """Explicit-lifecycle HTTP handle for the myDATA REST API"""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_urls = {
            MyDataEnvironment.DEVELOPMENT: settings.mydata_dev_url.rstrip("/"),
            MyDataEnvironment.PRODUCTION: settings.mydata_prod_url.rstrip("/"),
        }
        self.timeout = settings.mydata_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.info(f"[MYDATA] Client opened (timeout {self.timeout}s)")

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("[MYDATA] Client closed")

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def endpoint(self, credentials: MyDataCredentials, operation: str) -> str:
        return f"{self.base_urls[credentials.environment]}/{operation}"

    @staticmethod
    def _headers(credentials: MyDataCredentials) -> Dict[str, str]:
        return {
            USER_ID_HEADER: credentials.user_id,
            SUBSCRIPTION_KEY_HEADER: credentials.subscription_key,
            "Content-Type": "application/xml",
        }

    async def _request(self, method: str, operation: str, credentials: MyDataCredentials,
                       params: Optional[dict] = None, content: Optional[str] = None) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("MyDataClient is not open")

        url = self.endpoint(credentials, operation)
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                content=content.encode("utf-8") if content is not None else None,
                headers=self._headers(credentials),
            )
        except httpx.TimeoutException as e:
            logger.error(f"[MYDATA] {operation} timed out after {self.timeout}s")
            raise TransmissionNetworkError(f"myDATA did not answer within {self.timeout:g}s", timeout=True) from e
        except httpx.TransportError as e:
            logger.error(f"[MYDATA] {operation} unreachable: {e}")
            raise TransmissionNetworkError(f"Cannot reach myDATA: {e}") from e

        if response.status_code in (401, 403):
            logger.error(
                f"[MYDATA] {operation} rejected credentials {credentials.user_id} "
                f"(HTTP {response.status_code})"
            )
            raise TransmissionAuthError(
                "myDATA rejected the credentials" if response.status_code == 401
                else "myDATA subscription does not allow this operation",
                status_code=response.status_code
            )

        logger.info(f"[MYDATA] {method} {operation} -> HTTP {response.status_code}")
        return response

    # --------------------------------------------------------
    # OPERATIONS
    # --------------------------------------------------------

    async def send_invoices(self, xml: str, credentials: MyDataCredentials) -> SendResult:
        """POST an InvoicesDoc. Returns the acknowledgment or the error set."""
        response = await self._request("POST", SEND_INVOICES, credentials, content=xml)
        try:
            result = parse_send_response(response.content)
        except ResponseFormatError as e:
            logger.error(f"[MYDATA] Unexpected SendInvoices answer (HTTP {response.status_code}): {e}")
            raise TransmissionServerError(
                f"Unexpected myDATA response (HTTP {response.status_code})",
                status_code=response.status_code
            ) from e

        if result.success:
            logger.info(f"[MYDATA] Invoice accepted with mark {result.acknowledgment.mark}")
        else:
            logger.warning(
                f"[MYDATA] Invoice rejected ({result.status_code}): "
                + "; ".join(f"{e.code}: {e.message}" for e in result.errors)
            )
        return result

    async def cancel_invoice(self, mark: str, credentials: MyDataCredentials) -> CancellationResult:
        """Cancel a transmitted document by its mark. Returns the new cancellation mark or the error set."""
        params = build_cancellation_request(mark)
        response = await self._request("POST", CANCEL_INVOICE, credentials, params=params)
        try:
            result = parse_cancellation_response(response.content)
        except ResponseFormatError as e:
            logger.error(f"[MYDATA] Unexpected CancelInvoice answer (HTTP {response.status_code}): {e}")
            raise TransmissionServerError(
                f"Unexpected myDATA response (HTTP {response.status_code})",
                status_code=response.status_code
            ) from e

        if result.success:
            logger.info(f"[MYDATA] Mark {mark} cancelled with cancellation mark {result.cancellation_mark}")
        else:
            logger.warning(f"[MYDATA] Cancellation of {mark} rejected ({result.status_code})")
        return result

    async def request_transmitted_docs(self, date_from: Union[date, datetime], date_to: Union[date, datetime],
                                       credentials: MyDataCredentials) -> List[TransmittedDoc]:
        """Documents transmitted in a date range. 404 means nothing found."""
        params = {
            "mark": "0",
            "dateFrom": date_from.strftime(QUERY_DATE_FORMAT),
            "dateTo": date_to.strftime(QUERY_DATE_FORMAT),
        }
        response = await self._request("GET", REQUEST_TRANSMITTED_DOCS, credentials, params=params)

        if response.status_code == 404 or not response.content.strip():
            return []

        try:
            return parse_requested_docs(response.content)
        except ResponseFormatError as e:
            raise TransmissionServerError(
                f"Unexpected myDATA response (HTTP {response.status_code})",
                status_code=response.status_code
            ) from e

    async def test_connection(self, credentials: MyDataCredentials) -> ConnectionStatus:
        """Probe the query endpoint and classify the outcome"""
        endpoint = self.endpoint(credentials, REQUEST_TRANSMITTED_DOCS)
        status = ConnectionStatus(success=False, endpoint=endpoint, environment=credentials.environment.value)
        today = date.today()

        try:
            response = await self._request("GET", REQUEST_TRANSMITTED_DOCS, credentials, params={
                "mark": "0",
                "dateFrom": today.strftime(QUERY_DATE_FORMAT),
                "dateTo": today.strftime(QUERY_DATE_FORMAT),
            })
        except TransmissionNetworkError as e:
            status.error = "timeout" if e.timeout else "network"
            status.message = str(e)
            return status
        except TransmissionAuthError as e:
            status.status = e.status_code
            if e.status_code == 401:
                status.error = "authentication_failed"
                status.message = "Invalid user id or subscription key"
            else:
                status.error = "forbidden"
                status.message = "Subscription has no access to this environment"
            return status

        status.status = response.status_code
        if response.status_code < 400 or response.status_code == 404:
            status.success = True
            status.message = "Connected to myDATA"
        else:
            status.error = "server_error"
            status.message = f"myDATA answered HTTP {response.status_code}"
        return status
