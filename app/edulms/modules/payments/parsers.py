from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from app.edulms.utils import to_decimal

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


class CallbackParseError(ValueError):
    pass


@dataclass(frozen=True)
class CallbackPayload:
    outcome: str  # success | failure
    correlation_ref: str | None = None
    gateway_request_id: str | None = None
    amount: Decimal | None = None
    external_receipt: str | None = None
    transaction_date: str | None = None
    payer_reference: str | None = None
    result_code: str | None = None
    result_desc: str | None = None


def _metadata_items(stk: dict[str, Any]) -> dict[str, Any]:
    meta = stk.get("CallbackMetadata") or {}
    items = meta.get("Item") if isinstance(meta, dict) else None
    out: dict[str, Any] = {}
    for item in items or []:
        if isinstance(item, dict) and item.get("Name"):
            out[str(item["Name"])] = item.get("Value")
    return out


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_stk_callback(data: dict[str, Any], *, correlation_ref: str | None = None) -> CallbackPayload:
    """
    Nested gateway shape:
    {"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode", "ResultDesc",
                              "CallbackMetadata": {"Item": [{"Name", "Value"}, ...]}}}}
    """
    stk = (data.get("Body") or {}).get("stkCallback") if isinstance(data.get("Body"), dict) else None
    if not isinstance(stk, dict):
        raise CallbackParseError("Missing Body.stkCallback")
    if stk.get("ResultCode") is None:
        raise CallbackParseError("Missing ResultCode")

    result_code = str(stk.get("ResultCode")).strip()
    items = _metadata_items(stk)
    outcome = OUTCOME_SUCCESS if result_code == "0" else OUTCOME_FAILURE
    receipt = _str_or_none(items.get("MpesaReceiptNumber"))
    if outcome == OUTCOME_SUCCESS and not receipt:
        raise CallbackParseError("Missing receipt number in success callback")

    return CallbackPayload(
        outcome=outcome,
        correlation_ref=_str_or_none(correlation_ref),
        gateway_request_id=_str_or_none(stk.get("CheckoutRequestID")),
        amount=to_decimal(items.get("Amount")),
        external_receipt=receipt,
        transaction_date=_str_or_none(items.get("TransactionDate")),
        payer_reference=_str_or_none(items.get("PhoneNumber")),
        result_code=result_code,
        result_desc=_str_or_none(stk.get("ResultDesc")),
    )


def parse_flat_callback(data: dict[str, Any], *, correlation_ref: str | None = None) -> CallbackPayload:
    """
    Flat shape:
    {"correlation_ref", "outcome": "success"|"failure", "amount", "receipt", "timestamp"}
    """
    ref = _str_or_none(data.get("correlation_ref")) or _str_or_none(correlation_ref)
    if not ref and not data.get("gateway_request_id"):
        raise CallbackParseError("Missing correlation_ref")
    outcome = (str(data.get("outcome") or "")).strip().lower()
    if outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILURE):
        raise CallbackParseError(f"Invalid outcome: {outcome or '(empty)'}")
    raw_amount = data.get("amount")
    amount = to_decimal(raw_amount)
    if raw_amount not in (None, "") and amount is None:
        raise CallbackParseError("Invalid amount")
    receipt = _str_or_none(data.get("receipt"))
    if outcome == OUTCOME_SUCCESS and not receipt:
        raise CallbackParseError("Missing receipt in success callback")

    return CallbackPayload(
        outcome=outcome,
        correlation_ref=ref,
        gateway_request_id=_str_or_none(data.get("gateway_request_id")),
        amount=amount,
        external_receipt=receipt,
        transaction_date=_str_or_none(data.get("timestamp")),
        payer_reference=_str_or_none(data.get("payer_reference")),
        result_desc=_str_or_none(data.get("reason")),
    )


def parse_callback(data: Any, *, correlation_ref: str | None = None) -> CallbackPayload:
    if not isinstance(data, dict):
        raise CallbackParseError("Callback body must be a JSON object")
    if "Body" in data:
        return parse_stk_callback(data, correlation_ref=correlation_ref)
    return parse_flat_callback(data, correlation_ref=correlation_ref)
