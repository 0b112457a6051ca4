"""
MoMo wallet client.

Payments are created with a signed ``captureWallet`` request; the outcome
arrives later as a signed IPN (instant payment notification) POSTed to the
notify URL. Signatures are HMAC-SHA256 over the canonical string and are
compared case-sensitively.
"""
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Mapping

import structlog

from order_settlement.core.errors import (
    GatewayRejected,
    InvalidRequest,
    InvalidSignature,
    RefundRejected,
    SettlementError,
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

CREATE_PATH = "/v2/gateway/api/create"
REFUND_PATH = "/v2/gateway/api/refund"

# Fields covered by the IPN signature, besides accessKey.
IPN_SIGNED_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

RESULT_SUCCESS = 0
# 1005: link/QR expired, 1006: user denied, 1017: cancelled by partner
CANCELLED_RESULT_CODES = frozenset({1005, 1006, 1017})


def map_result_code(result_code: int) -> PaymentStatus:
    if result_code == RESULT_SUCCESS:
        return PaymentStatus.SUCCESS
    if result_code in CANCELLED_RESULT_CODES:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


def _new_request_id() -> str:
    return f"MOMO_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class MoMoClient(HttpGatewayAdapter):
    """Gateway A."""

    method = PaymentMethod.MOMO
    name = "momo"
    algorithm = SignatureAlgorithm.HMAC_SHA256

    def _sign(self, fields: Dict[str, Any]) -> str:
        return sign(
            {"accessKey": self.settings.momo_access_key, **fields},
            self.settings.momo_secret_key,
            self.algorithm,
        )

    async def initiate(self, payment: Payment, context: GatewayContext) -> GatewayInitiationResult:
        """
        Create a captureWallet payment.

        Returns:
            GatewayInitiationResult: payUrl redirect and QR code URL

        Raises:
            GatewayUnavailable: Network error, timeout or 5xx
            GatewayRejected: resultCode other than 0
        """
        settings = self.settings
        request_id = _new_request_id()
        signed_fields: Dict[str, Any] = {
            "amount": to_minor_units(payment.amount),
            "extraData": "",
            "ipnUrl": settings.momo_notify_url,
            "orderId": payment.transaction_id,
            "orderInfo": context.description,
            "partnerCode": settings.momo_partner_code,
            "redirectUrl": context.return_url or settings.momo_return_url,
            "requestId": request_id,
            "requestType": settings.momo_request_type,
        }
        body = {
            **signed_fields,
            "lang": settings.momo_lang,
            "signature": self._sign(signed_fields),
        }

        logger.info(
            "momo_create_payment",
            transaction_id=payment.transaction_id,
            request_id=request_id,
            amount=signed_fields["amount"],
        )
        response = await self._post_json("create", settings.momo_endpoint + CREATE_PATH, body)
        raw = self._truncate(json.dumps(response, sort_keys=True))

        if response.get("resultCode") != RESULT_SUCCESS:
            raise GatewayRejected(
                f"MoMo rejected payment: {response.get('message', 'unknown error')}",
                result_code=response.get("resultCode"),
                raw_response=raw,
            )

        return GatewayInitiationResult(
            redirect_url=response.get("payUrl"),
            qr_payload=response.get("qrCodeUrl"),
            gateway_reference=request_id,
            raw_response=raw,
        )

    def verify_callback(self, payload: Mapping[str, Any]) -> CallbackVerification:
        """
        Verify an IPN and map its result code.

        Raises:
            InvalidSignature: Missing or mismatching signature
            InvalidRequest: Missing orderId or non-numeric resultCode/amount
        """
        signed = {key: payload.get(key, "") for key in IPN_SIGNED_FIELDS}
        signed["accessKey"] = self.settings.momo_access_key
        provided = str(payload.get("signature") or "")

        if not verify_signature(signed, provided, self.settings.momo_secret_key, self.algorithm):
            logger.warning("momo_invalid_signature", order_id=payload.get("orderId"))
            raise InvalidSignature("MoMo signature verification failed")

        transaction_id = payload.get("orderId")
        if not transaction_id:
            raise InvalidRequest("MoMo notification has no orderId")
        try:
            result_code = int(payload["resultCode"])
            amount = from_minor_units(int(payload["amount"])) if payload.get("amount") else None
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRequest(f"Malformed MoMo notification: {e}") from e

        trans_id = payload.get("transId")
        return CallbackVerification(
            transaction_id=str(transaction_id),
            outcome=map_result_code(result_code),
            gateway_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
            amount=amount,
            message=payload.get("message"),
            raw_payload=self._truncate(json.dumps(dict(payload), sort_keys=True, default=str)),
        )

    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        """
        Refund through the MoMo refund API.

        Raises:
            RefundRejected: No MoMo transId recorded, or resultCode other than 0
            GatewayUnavailable: Network error, timeout or 5xx
        """
        if not payment.gateway_transaction_id:
            raise RefundRejected(
                "Payment has no MoMo transaction id", transaction_id=payment.transaction_id
            )

        signed_fields: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "description": f"Refund for {payment.transaction_id}",
            "orderId": f"{payment.transaction_id}_R{int(time.time() * 1000)}",
            "partnerCode": self.settings.momo_partner_code,
            "requestId": _new_request_id(),
            "transId": payment.gateway_transaction_id,
        }
        body = {
            **signed_fields,
            "lang": self.settings.momo_lang,
            "signature": self._sign(signed_fields),
        }

        response = await self._post_json("refund", self.settings.momo_endpoint + REFUND_PATH, body)
        raw = self._truncate(json.dumps(response, sort_keys=True))
        if response.get("resultCode") != RESULT_SUCCESS:
            raise RefundRejected(
                f"MoMo rejected refund: {response.get('message', 'unknown error')}",
                result_code=response.get("resultCode"),
                raw_response=raw,
            )

        logger.info("momo_refund_accepted", transaction_id=payment.transaction_id)
        return RefundResult(refund_reference=signed_fields["orderId"], raw_response=raw)

    def acknowledge(self) -> GatewayAcknowledgement:
        return GatewayAcknowledgement(status_code=204)

    def reject(self, error: SettlementError) -> GatewayAcknowledgement:
        return GatewayAcknowledgement(status_code=400, body=error.to_dict(), accepted=False)
