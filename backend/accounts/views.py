import logging

from django.contrib.auth import authenticate, get_user_model
from django.db import IntegrityError, transaction
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from tokens.exceptions import Conflict, InvalidCredentials, NotFound, TokenError
from tokens.services import normalize_exam_type
from tokens.views import parse_json_body

from .auth import issue_admin_token, require_admin
from .models import StudentProfile

logger = logging.getLogger(__name__)


def _admin_identity(user) -> dict:
    return {
        "username": user.get_username(),
        "role": "admin",
        "fullName": user.get_full_name() or "System Administrator",
        "regNumber": f"ADMIN-{user.pk:03d}",
        "isTokenLogin": False,
        "allowedExamType": "BOTH",
        "authToken": issue_admin_token(user),
    }


@csrf_exempt
@require_POST
def api_login(request: HttpRequest) -> JsonResponse:
    """
    Username/password login for admins and registered students.

    Request body (JSON):
        {"username": "admin", "password": "...", "role": "admin"}
    """
    username = ""
    try:
        body = parse_json_body(request)
        username = str(body.get("username", "")).strip()
        password = str(body.get("password", ""))
        role = str(body.get("role", "student")).strip().lower()

        if role == "student":
            # Students sign in with their registration number.
            profile = StudentProfile.objects.select_related("user").filter(reg_number=username.upper()).first()
            if profile is None:
                raise InvalidCredentials()
            username = profile.user.get_username()

        user = authenticate(request, username=username, password=password)
        if user is None:
            raise InvalidCredentials()

        if role == "admin":
            if not user.is_staff:
                raise InvalidCredentials()
            identity = _admin_identity(user)
        else:
            profile = getattr(user, "student_profile", None)
            if profile is None:
                raise InvalidCredentials()
            identity = profile.identity()
    except TokenError as exc:
        logger.warning("Login failed for %r (%s)", username, exc.code)
        return exc.to_response()

    return JsonResponse(identity)


@csrf_exempt
@require_POST
def api_register(request: HttpRequest) -> JsonResponse:
    """
    Register a student by registration number.

    Request body (JSON):
        {"fullName": "Ada Obi", "regNumber": "REG-001", "password": "...", "examType": "JAMB"}

    The password defaults to the registration number.
    """
    try:
        body = parse_json_body(request)
        full_name = str(body.get("fullName", "")).strip()
        reg_number = str(body.get("regNumber", "")).strip().upper()
        if not full_name or not reg_number:
            raise TokenError("fullName and regNumber are required")

        password = str(body.get("password") or reg_number)
        User = get_user_model()
        try:
            with transaction.atomic():
                if StudentProfile.objects.filter(reg_number=reg_number).exists():
                    raise Conflict("A student with this registration number already exists.")
                user = User.objects.create_user(username=reg_number, password=password)
                profile = StudentProfile.objects.create(
                    user=user,
                    full_name=full_name,
                    reg_number=reg_number,
                    allowed_exam_type=normalize_exam_type(body.get("examType")),
                )
        except IntegrityError:
            raise Conflict("A student with this registration number already exists.")
    except TokenError as exc:
        return exc.to_response()

    logger.info("Registered student %s", reg_number)
    return JsonResponse({"success": True, **profile.identity()}, status=201)


@csrf_exempt
@require_POST
@require_admin
def api_update_credentials(request: HttpRequest) -> JsonResponse:
    try:
        body = parse_json_body(request)
        current_username = str(body.get("currentUsername", "")).strip()
        new_username = str(body.get("newUsername", "")).strip()
        new_password = str(body.get("newPassword", ""))

        user = authenticate(request, username=current_username, password=str(body.get("currentPassword", "")))
        if user is None or user.pk != request.user.pk:
            raise InvalidCredentials("Current admin credentials are incorrect.")
        if not new_username or not new_password:
            raise TokenError("newUsername and newPassword are required")

        User = get_user_model()
        if User.objects.filter(username__iexact=new_username).exclude(pk=user.pk).exists():
            raise Conflict("That username is already taken.")

        user.username = new_username
        user.set_password(new_password)
        user.save(update_fields=["username", "password"])
    except TokenError as exc:
        return exc.to_response()

    return JsonResponse({"success": True})


@require_GET
@require_admin
def api_list_students(request: HttpRequest) -> JsonResponse:
    profiles = StudentProfile.objects.order_by("-created_at")
    return JsonResponse([p.identity() for p in profiles], safe=False)


@csrf_exempt
@require_http_methods(["DELETE"])
@require_admin
def api_delete_student(request: HttpRequest, username: str) -> JsonResponse:
    profile = StudentProfile.objects.select_related("user").filter(reg_number=username.strip().upper()).first()
    if profile is None:
        return NotFound("Student not found.").to_response()
    profile.user.delete()
    return JsonResponse({"success": True})
