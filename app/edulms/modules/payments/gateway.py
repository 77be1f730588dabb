from __future__ import annotations

import base64
import json
import logging
import re
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

# OAuth tokens are issued for an hour; refresh a little early.
TOKEN_TTL_SECONDS = 3500


class GatewayError(RuntimeError):
    pass


class GatewayTimeout(GatewayError):
    pass


@dataclass(frozen=True)
class DispatchResult:
    accepted: bool
    gateway_request_id: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusResult:
    """Outcome of a status query. outcome is None while the gateway still has it in flight."""

    outcome: str | None
    result_code: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """Outbound side of an external payment gateway."""

    def dispatch(
        self,
        *,
        correlation_ref: str,
        payer_reference: str,
        amount: Decimal,
        account_reference: str,
        description: str,
    ) -> DispatchResult:
        raise NotImplementedError

    def query_status(self, gateway_request_id: str) -> StatusResult:
        raise NotImplementedError


def normalize_msisdn(phone: str | None) -> str | None:
    """
    Normalize a payer phone number to the 2547XXXXXXXX form the gateway expects.
    - 0712345678 -> 254712345678
    - 712345678 -> 254712345678
    - +254712345678 -> 254712345678
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned:
        return None
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif cleaned.startswith(("7", "1")) and len(cleaned) == 9:
        cleaned = "254" + cleaned
    if not (cleaned.startswith("254") and len(cleaned) == 12):
        return None
    return cleaned


@dataclass
class MpesaGatewayClient(PaymentGateway):
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    base_url: str = SANDBOX_BASE_URL
    timeout_seconds: int = 15
    _token: str | None = field(default=None, repr=False)
    _token_expires_at: float = field(default=0.0, repr=False)

    def _basic_auth_header(self) -> str:
        token = f"{self.consumer_key}:{self.consumer_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def _password(self) -> tuple[str, str]:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii"), timestamp

    def _open(self, req: urllib.request.Request, path: str) -> dict[str, Any]:
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="ignore")
            except Exception:
                body = ""
            raise GatewayError(f"HTTP {e.code} from gateway ({path}): {body[:300]}") from e
        except urllib.error.URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError)):
                raise GatewayTimeout(f"Gateway timed out after {self.timeout_seconds}s ({path})") from e
            raise GatewayError(f"Gateway unreachable ({path}): {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise GatewayTimeout(f"Gateway timed out after {self.timeout_seconds}s ({path})") from e
        try:
            return json.loads(raw.decode("utf-8"))
        except Exception as e:
            raise GatewayError(f"Invalid JSON from gateway ({path})") from e

    def access_token(self) -> str:
        now = time.monotonic()
        if self._token and now < self._token_expires_at:
            return self._token
        path = "/oauth/v1/generate?grant_type=client_credentials"
        req = urllib.request.Request(self.base_url.rstrip("/") + path, method="GET")
        req.add_header("Authorization", self._basic_auth_header())
        req.add_header("Accept", "application/json")
        j = self._open(req, "/oauth/v1/generate")
        token = j.get("access_token")
        if not token:
            raise GatewayError("Gateway authentication failed: no access_token in response")
        self._token = str(token)
        self._token_expires_at = now + TOKEN_TTL_SECONDS
        return self._token

    def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        req = urllib.request.Request(
            self.base_url.rstrip("/") + path,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
        )
        req.add_header("Authorization", f"Bearer {self.access_token()}")
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        return self._open(req, path)

    def _callback_url_for(self, correlation_ref: str) -> str:
        # The gateway echoes its own request id, not ours; carry ours on the callback URL.
        parts = urllib.parse.urlsplit(self.callback_url)
        query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
        query.append(("ref", correlation_ref))
        return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))

    def dispatch(
        self,
        *,
        correlation_ref: str,
        payer_reference: str,
        amount: Decimal,
        account_reference: str,
        description: str,
    ) -> DispatchResult:
        phone = normalize_msisdn(payer_reference)
        if not phone:
            return DispatchResult(accepted=False, message="Invalid phone number format")

        password, timestamp = self._password()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(Decimal(amount)),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self._callback_url_for(correlation_ref),
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }
        logger.info("Gateway dispatch correlation_ref=%s amount=%s", correlation_ref, body["Amount"])
        j = self.post_json("/mpesa/stkpush/v1/processrequest", body)
        if str(j.get("ResponseCode")) == "0":
            return DispatchResult(
                accepted=True,
                gateway_request_id=j.get("CheckoutRequestID"),
                message=j.get("CustomerMessage") or j.get("ResponseDescription"),
                raw=j,
            )
        return DispatchResult(
            accepted=False,
            message=j.get("ResponseDescription") or j.get("errorMessage") or "Dispatch rejected",
            raw=j,
        )

    def query_status(self, gateway_request_id: str) -> StatusResult:
        password, timestamp = self._password()
        j = self.post_json(
            "/mpesa/stkpushquery/v1/query",
            {
                "BusinessShortCode": self.shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "CheckoutRequestID": gateway_request_id,
            },
        )
        if str(j.get("ResponseCode")) != "0":
            return StatusResult(outcome=None, message=j.get("ResponseDescription") or j.get("errorMessage"), raw=j)
        result_code = j.get("ResultCode")
        if result_code is None:
            return StatusResult(outcome=None, message=j.get("ResultDesc"), raw=j)
        outcome = "success" if str(result_code) == "0" else "failure"
        return StatusResult(outcome=outcome, result_code=str(result_code), message=j.get("ResultDesc"), raw=j)


def gateway_from_config(config: dict[str, Any]) -> PaymentGateway | None:
    """Build the configured gateway client, or None when credentials are not set."""
    required = (
        "PAYMENT_GATEWAY_CONSUMER_KEY",
        "PAYMENT_GATEWAY_CONSUMER_SECRET",
        "PAYMENT_GATEWAY_SHORTCODE",
        "PAYMENT_GATEWAY_PASSKEY",
        "PAYMENT_CALLBACK_URL",
    )
    missing = [k for k in required if not config.get(k)]
    if missing:
        logger.warning("Payment gateway disabled; missing config: %s", ", ".join(missing))
        return None
    env = (config.get("PAYMENT_GATEWAY_ENV") or "sandbox").strip().lower()
    return MpesaGatewayClient(
        consumer_key=config["PAYMENT_GATEWAY_CONSUMER_KEY"],
        consumer_secret=config["PAYMENT_GATEWAY_CONSUMER_SECRET"],
        shortcode=config["PAYMENT_GATEWAY_SHORTCODE"],
        passkey=config["PAYMENT_GATEWAY_PASSKEY"],
        callback_url=config["PAYMENT_CALLBACK_URL"],
        base_url=PRODUCTION_BASE_URL if env == "production" else SANDBOX_BASE_URL,
        timeout_seconds=int(config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS") or 15),
    )
