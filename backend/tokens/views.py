import json

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from accounts.auth import require_admin

from . import services
from .exceptions import TokenError
from .models import AccessToken


def parse_json_body(request: HttpRequest) -> dict:
    try:
        body = json.loads(request.body or b"{}")
    except (json.JSONDecodeError, ValueError):
        raise TokenError("Invalid JSON")
    if not isinstance(body, dict):
        raise TokenError("Invalid JSON")
    return body


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


# ---------------------------------------------------------------------------
# Student API (no session, the access code is the credential)
# ---------------------------------------------------------------------------


@csrf_exempt
@require_POST
def api_login_with_token(request: HttpRequest) -> JsonResponse:
    """
    Verify an access code and bind it to the calling device.

    Request body (JSON):
        {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "...", "confirm_binding": false}

    Response (JSON):
        {"requires_binding": true}            // unbound, confirmation needed
        {"username": "...", "role": "student", ...}
    """
    try:
        body = parse_json_body(request)
        confirm = _as_bool(body.get("confirm_binding", body.get("confirmBinding", False)))
        token, bound_now = services.verify_and_bind(
            str(body.get("token", "")),
            str(body.get("deviceFingerprint", "")),
            confirm_binding=confirm,
        )
    except services.BindingRequired:
        return JsonResponse({"requires_binding": True})
    except TokenError as exc:
        return exc.to_response()

    message = ""
    if bound_now and token.expires_at:
        message = f"Access code bound successfully! Valid until {token.expires_at.date().isoformat()}"
    return JsonResponse(services.identity_for_token(token, message=message))


# ---------------------------------------------------------------------------
# Admin API (bearer token from /api/auth/login/)
# ---------------------------------------------------------------------------


@csrf_exempt
@require_POST
@require_admin
def api_generate_token(request: HttpRequest) -> JsonResponse:
    try:
        body = parse_json_body(request)
        try:
            amount = float(body.get("amount") or 0)
        except (TypeError, ValueError):
            raise TokenError("Invalid amount")
        token = services.issue_token(
            generated_by=AccessToken.GeneratedBy.ADMIN,
            payment_ref=str(body.get("reference") or ""),
            amount_paid=amount,
            exam_type=body.get("examType"),
            full_name=str(body.get("fullName") or ""),
            phone_number=str(body.get("phoneNumber") or ""),
            email=str(body.get("email") or ""),
        )
    except TokenError as exc:
        return exc.to_response()

    return JsonResponse({"success": True, "token": token.code, "expiresAt": None})


@require_GET
@require_admin
def api_list_tokens(request: HttpRequest) -> JsonResponse:
    return JsonResponse(services.list_tokens(), safe=False)


@csrf_exempt
@require_http_methods(["DELETE"])
@require_admin
def api_delete_token(request: HttpRequest, code: str) -> JsonResponse:
    try:
        services.delete_token(code)
    except TokenError as exc:
        return exc.to_response()
    return JsonResponse({"success": True})


@csrf_exempt
@require_POST
@require_admin
def api_token_status(request: HttpRequest) -> JsonResponse:
    try:
        body = parse_json_body(request)
        if "isActive" not in body:
            raise TokenError("Missing isActive")
        token = services.set_token_status(str(body.get("tokenCode", "")), _as_bool(body["isActive"]))
    except TokenError as exc:
        return exc.to_response()
    return JsonResponse({"success": True, "token": token.summary()})


@csrf_exempt
@require_POST
@require_admin
def api_reset_token_device(request: HttpRequest) -> JsonResponse:
    try:
        body = parse_json_body(request)
        token = services.reset_token_device(str(body.get("tokenCode", "")))
    except TokenError as exc:
        return exc.to_response()
    return JsonResponse({"success": True, "token": token.summary()})
