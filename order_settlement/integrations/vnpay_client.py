"""
VNPay client.

Payments are started by redirecting the customer to a signed checkout URL;
VNPay reports the outcome by calling the IPN URL with the same ``vnp_*``
query fields, signed with HMAC-SHA512. VNPay compares hashes
case-insensitively.
"""
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Tuple, Type
from urllib.parse import urlencode

import structlog

from order_settlement.core.errors import (
    AmountMismatch,
    ConflictingNotification,
    InvalidRequest,
    InvalidSignature,
    RefundRejected,
    SettlementError,
    UnrecognizedTransaction,
)
from order_settlement.core.lifecycle import PaymentMethod, PaymentStatus
from order_settlement.core.money import from_minor_units, to_minor_units
from order_settlement.core.signing import SignatureAlgorithm, sign, verify_signature
from order_settlement.database.models import Payment
from order_settlement.integrations.base import (
    CallbackVerification,
    GatewayAcknowledgement,
    GatewayContext,
    GatewayInitiationResult,
    HttpGatewayAdapter,
    RefundResult,
)

logger = structlog.get_logger(__name__)

VNPAY_TIMEZONE = timezone(timedelta(hours=7))
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

HASH_FIELD = "vnp_SecureHash"
UNSIGNED_FIELDS = frozenset({HASH_FIELD, "vnp_SecureHashType"})

RESPONSE_SUCCESS = "00"
RESPONSE_CUSTOMER_CANCELLED = "24"

# Order matters: the first matching error class wins.
REJECTION_CODES: Tuple[Tuple[Type[SettlementError], str, str], ...] = (
    (InvalidSignature, "97", "Invalid Checksum"),
    (UnrecognizedTransaction, "01", "Order not found"),
    (AmountMismatch, "04", "Invalid amount"),
    (ConflictingNotification, "02", "Order already confirmed"),
)


def vnpay_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(VNPAY_TIMEZONE).strftime(TIMESTAMP_FORMAT)


def map_response_code(response_code: str, transaction_status: Any = None) -> PaymentStatus:
    if response_code == RESPONSE_SUCCESS and transaction_status in (None, "", RESPONSE_SUCCESS):
        return PaymentStatus.SUCCESS
    if response_code == RESPONSE_CUSTOMER_CANCELLED:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


def signed_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Every ``vnp_*`` field except the hash fields themselves."""
    return {
        key: value
        for key, value in payload.items()
        if key.startswith("vnp_") and key not in UNSIGNED_FIELDS
    }


class VNPayClient(HttpGatewayAdapter):
    """Gateway B."""

    method = PaymentMethod.VNPAY
    name = "vnpay"
    algorithm = SignatureAlgorithm.HMAC_SHA512

    def build_payment_url(self, payment: Payment, context: GatewayContext) -> str:
        """Signed checkout URL for ``payment``."""
        settings = self.settings
        now = datetime.now(timezone.utc)
        params: Dict[str, Any] = {
            "vnp_Version": settings.vnpay_version,
            "vnp_Command": "pay",
            "vnp_TmnCode": settings.vnpay_tmn_code,
            "vnp_Amount": str(to_minor_units(payment.amount)),
            "vnp_CurrCode": settings.currency,
            "vnp_TxnRef": payment.transaction_id,
            "vnp_OrderInfo": context.description,
            "vnp_OrderType": settings.vnpay_order_type,
            "vnp_Locale": settings.vnpay_locale,
            "vnp_ReturnUrl": context.return_url or settings.vnpay_return_url,
            "vnp_IpAddr": context.client_ip,
            "vnp_CreateDate": vnpay_timestamp(now),
            "vnp_ExpireDate": vnpay_timestamp(now + timedelta(minutes=settings.vnpay_expire_minutes)),
        }
        signature = sign(params, settings.vnpay_hash_secret, self.algorithm)
        query = urlencode(sorted(params.items()))
        return f"{settings.vnpay_payment_url}?{query}&{HASH_FIELD}={signature}"

    async def initiate(self, payment: Payment, context: GatewayContext) -> GatewayInitiationResult:
        """No server-to-server call: the customer is redirected to VNPay."""
        url = self.build_payment_url(payment, context)
        logger.info("vnpay_payment_url_created", transaction_id=payment.transaction_id)
        return GatewayInitiationResult(
            redirect_url=url,
            gateway_reference=payment.transaction_id,
            raw_response=self._truncate(url),
        )

    def verify_callback(self, payload: Mapping[str, Any]) -> CallbackVerification:
        """
        Verify an IPN / return query and map its response code.

        Raises:
            InvalidSignature: Missing or mismatching vnp_SecureHash
            InvalidRequest: Missing vnp_TxnRef/vnp_ResponseCode or bad amount
        """
        provided = str(payload.get(HASH_FIELD) or "")
        if not verify_signature(
            signed_fields(payload), provided, self.settings.vnpay_hash_secret, self.algorithm
        ):
            logger.warning("vnpay_invalid_signature", txn_ref=payload.get("vnp_TxnRef"))
            raise InvalidSignature("VNPay signature verification failed")

        txn_ref = payload.get("vnp_TxnRef")
        response_code = payload.get("vnp_ResponseCode")
        if not txn_ref or response_code is None:
            raise InvalidRequest("VNPay notification lacks vnp_TxnRef or vnp_ResponseCode")

        try:
            amount = (
                from_minor_units(int(payload["vnp_Amount"])) if payload.get("vnp_Amount") else None
            )
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Malformed vnp_Amount: {payload.get('vnp_Amount')!r}") from e

        return CallbackVerification(
            transaction_id=str(txn_ref),
            outcome=map_response_code(
                str(response_code), payload.get("vnp_TransactionStatus")
            ),
            gateway_transaction_id=payload.get("vnp_TransactionNo") or None,
            amount=amount,
            raw_payload=self._truncate(json.dumps(dict(payload), sort_keys=True, default=str)),
        )

    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        """
        Refund through the VNPay merchant API.

        Raises:
            RefundRejected: vnp_ResponseCode other than 00
            GatewayUnavailable: Network error, timeout or 5xx
        """
        settings = self.settings
        full_refund = Decimal(amount) == Decimal(payment.amount)
        request_id = uuid.uuid4().hex[:16]
        params: Dict[str, Any] = {
            "vnp_RequestId": request_id,
            "vnp_Version": settings.vnpay_version,
            "vnp_Command": "refund",
            "vnp_TmnCode": settings.vnpay_tmn_code,
            "vnp_TransactionType": "02" if full_refund else "03",
            "vnp_TxnRef": payment.transaction_id,
            "vnp_Amount": str(to_minor_units(amount)),
            "vnp_TransactionNo": payment.gateway_transaction_id or "",
            "vnp_TransactionDate": vnpay_timestamp(payment.created_at),
            "vnp_CreateBy": settings.app_name,
            "vnp_CreateDate": vnpay_timestamp(datetime.now(timezone.utc)),
            "vnp_IpAddr": "127.0.0.1",
            "vnp_OrderInfo": f"Refund for {payment.transaction_id}",
        }
        params[HASH_FIELD] = sign(params, settings.vnpay_hash_secret, self.algorithm)

        response = await self._post_json("refund", settings.vnpay_api_url, params)
        raw = self._truncate(json.dumps(response, sort_keys=True))
        if response.get("vnp_ResponseCode") != RESPONSE_SUCCESS:
            raise RefundRejected(
                f"VNPay rejected refund: {response.get('vnp_Message', 'unknown error')}",
                response_code=response.get("vnp_ResponseCode"),
                raw_response=raw,
            )

        logger.info("vnpay_refund_accepted", transaction_id=payment.transaction_id)
        return RefundResult(
            refund_reference=response.get("vnp_TransactionNo") or request_id,
            raw_response=raw,
        )

    def acknowledge(self) -> GatewayAcknowledgement:
        return GatewayAcknowledgement(
            status_code=200, body={"RspCode": RESPONSE_SUCCESS, "Message": "Confirm Success"}
        )

    def reject(self, error: SettlementError) -> GatewayAcknowledgement:
        for error_cls, code, message in REJECTION_CODES:
            if isinstance(error, error_cls):
                break
        else:
            code, message = "99", "Unknown error"
        return GatewayAcknowledgement(
            status_code=200, body={"RspCode": code, "Message": message}, accepted=False
        )
