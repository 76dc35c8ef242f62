import logging

from django.db import IntegrityError, transaction
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from tokens import services
from tokens.exceptions import Conflict, GatewayError, InvalidAmount, PaymentNotVerified, TokenError
from tokens.models import AccessToken
from tokens.views import parse_json_body

from .gateway import PaymentGatewayError, verify_payment
from .models import AccessPlan, PaymentReceipt

logger = logging.getLogger(__name__)


def _already_verified(receipt: PaymentReceipt) -> JsonResponse:
    token = receipt.token
    return JsonResponse({
        "success": True,
        "token": token.code,
        "message": "Payment already verified.",
        "expiresAt": token.expires_at.isoformat() if token.expires_at else None,
    })


@csrf_exempt
@require_POST
def api_verify_payment(request: HttpRequest) -> JsonResponse:
    """
    Verify a gateway payment and issue an access code for it.

    Request body (JSON):
        {"reference": "cs_...", "email": "...", "fullName": "...",
         "phoneNumber": "...", "examType": "JAMB"}

    Response (JSON):
        {"success": true, "token": "ACE-XXXX-XXXX-XXXX", "expiresAt": null}

    Repeating a reference returns the code already issued for it.
    """
    try:
        body = parse_json_body(request)
        reference = str(body.get("reference", "")).strip()
        if not reference:
            raise TokenError("Missing transaction reference.")

        receipt = PaymentReceipt.objects.select_related("token").filter(reference=reference).first()
        if receipt is not None:
            if receipt.token is None:
                raise Conflict("The access code for this payment was removed. Contact an admin.")
            return _already_verified(receipt)

        try:
            verification = verify_payment(reference)
        except PaymentGatewayError as exc:
            raise GatewayError() from exc

        if not verification.paid:
            raise PaymentNotVerified()

        plan = AccessPlan.get_solo()
        if not plan.accepts(verification.amount, verification.currency):
            logger.warning("Rejected payment %s: amount %s below minimum", reference, verification.amount)
            raise InvalidAmount()

        try:
            with transaction.atomic():
                token = services.issue_token(
                    generated_by=AccessToken.GeneratedBy.STUDENT,
                    payment_ref=reference,
                    amount_paid=verification.amount / 100,
                    exam_type=body.get("examType"),
                    full_name=str(body.get("fullName") or ""),
                    phone_number=str(body.get("phoneNumber") or ""),
                    email=str(body.get("email") or ""),
                    extra={"gateway_id": verification.gateway_id},
                )
                PaymentReceipt.objects.create(
                    reference=reference,
                    token=token,
                    gateway_id=verification.gateway_id,
                    amount=verification.amount,
                    currency=verification.currency,
                )
        except IntegrityError:
            # A concurrent request for the same reference won.
            receipt = PaymentReceipt.objects.select_related("token").get(reference=reference)
            return _already_verified(receipt)
    except TokenError as exc:
        return exc.to_response()

    return JsonResponse({"success": True, "token": token.code, "expiresAt": None})
