import json
import re
from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import Client, TestCase
from django.utils import timezone

from accounts.auth import issue_admin_token
from tokens import services
from tokens.exceptions import Deactivated, DeviceMismatch, Expired, InvalidCode, NotFound
from tokens.models import CODE_ALPHABET, AccessToken

CODE_RE = re.compile(rf"^ACE(-[{CODE_ALPHABET}]{{4}}){{3}}$")


def make_token(code="ACE-AAAA-BBBB-CCCC", **kwargs) -> AccessToken:
    defaults = {"is_active": True, "metadata": {"full_name": "Ada Obi", "exam_type": "JAMB"}}
    defaults.update(kwargs)
    return AccessToken.objects.create(code=code, **defaults)


class AccessTokenModelTest(TestCase):
    def test_generate_code_format(self):
        for _ in range(200):
            self.assertRegex(AccessToken.generate_code(), CODE_RE)

    def test_generated_codes_avoid_ambiguous_symbols(self):
        for ch in "01OI":
            self.assertNotIn(ch, CODE_ALPHABET)
        self.assertEqual(len(CODE_ALPHABET), 32)

    def test_generated_codes_are_unique(self):
        codes = {AccessToken.generate_code() for _ in range(10_000)}
        self.assertEqual(len(codes), 10_000)

    def test_status_message(self):
        token = make_token()
        self.assertEqual(token.status_message, "Unused")
        token.device_fingerprint = "F1"
        self.assertEqual(token.status_message, "Bound to a device")
        token.expires_at = timezone.now() - timedelta(days=1)
        self.assertEqual(token.status_message, "Expired")
        token.is_active = False
        self.assertEqual(token.status_message, "Deactivated")

    def test_remaining_days(self):
        token = make_token(expires_at=timezone.now() + timedelta(days=10, hours=1))
        self.assertEqual(token.remaining_days, 11)
        self.assertIsNone(make_token(code="ACE-ZZZZ-ZZZZ-ZZZZ").remaining_days)


class VerifyAndBindServiceTest(TestCase):
    def setUp(self):
        self.token = make_token()

    def test_unknown_code(self):
        with self.assertRaises(InvalidCode):
            services.verify_and_bind("ACE-NOPE-NOPE-NOPE", "F1", confirm_binding=True)

    def test_code_lookup_is_normalized(self):
        token, bound_now = services.verify_and_bind("  ace-aaaa-bbbb-cccc ", "F1", confirm_binding=True)
        self.assertEqual(token.pk, self.token.pk)
        self.assertTrue(bound_now)

    def test_binding_requires_confirmation_and_does_not_mutate(self):
        with self.assertRaises(services.BindingRequired):
            services.verify_and_bind(self.token.code, "F1", confirm_binding=False)
        self.token.refresh_from_db()
        self.assertIsNone(self.token.device_fingerprint)
        self.assertIsNone(self.token.bound_at)
        self.assertIsNone(self.token.expires_at)

    def test_confirmed_binding_sets_fingerprint_and_expiry(self):
        token, bound_now = services.verify_and_bind(self.token.code, "F1", confirm_binding=True)
        self.assertTrue(bound_now)
        self.assertEqual(token.device_fingerprint, "F1")
        self.assertIsNotNone(token.bound_at)
        self.assertAlmostEqual(
            (token.expires_at - token.bound_at).total_seconds(),
            timedelta(days=365).total_seconds(),
            delta=5,
        )

    def test_same_device_is_idempotent(self):
        first, _ = services.verify_and_bind(self.token.code, "F1", confirm_binding=True)
        again, bound_now = services.verify_and_bind(self.token.code, "F1")
        self.assertFalse(bound_now)
        self.assertEqual(again.bound_at, first.bound_at)
        self.assertEqual(again.expires_at, first.expires_at)

    def test_other_device_is_denied(self):
        services.verify_and_bind(self.token.code, "F1", confirm_binding=True)
        with self.assertRaises(DeviceMismatch):
            services.verify_and_bind(self.token.code, "F2", confirm_binding=True)
        self.token.refresh_from_db()
        self.assertEqual(self.token.device_fingerprint, "F1")

    def test_deactivation_dominates(self):
        self.token.is_active = False
        self.token.device_fingerprint = "F1"
        self.token.expires_at = timezone.now() - timedelta(days=1)
        self.token.save()
        with self.assertRaises(Deactivated):
            services.verify_and_bind(self.token.code, "F1")

    def test_expired_beats_device_check(self):
        self.token.device_fingerprint = "F1"
        self.token.expires_at = timezone.now() - timedelta(seconds=1)
        self.token.save()
        with self.assertRaises(Expired):
            services.verify_and_bind(self.token.code, "F1")
        with self.assertRaises(Expired):
            services.verify_and_bind(self.token.code, "F2")

    def test_lost_binding_race_is_judged_against_the_winner(self):
        # Another device claimed the row between our read and our write.
        original_filter = AccessToken.objects.filter

        def racing_filter(*args, **kwargs):
            if "pk" in kwargs:
                AccessToken.objects.exclude(pk=-1).filter(code=self.token.code).update(device_fingerprint="F9")
            return original_filter(*args, **kwargs)

        with patch.object(AccessToken.objects, "filter", side_effect=racing_filter):
            with self.assertRaises(DeviceMismatch):
                services.verify_and_bind(self.token.code, "F1", confirm_binding=True)
        self.token.refresh_from_db()
        self.assertEqual(self.token.device_fingerprint, "F9")

    def test_reset_allows_new_device_and_keeps_expiry(self):
        first, _ = services.verify_and_bind(self.token.code, "F1", confirm_binding=True)
        services.reset_token_device(self.token.code)
        token, bound_now = services.verify_and_bind(self.token.code, "F2", confirm_binding=True)
        self.assertTrue(bound_now)
        self.assertEqual(token.device_fingerprint, "F2")
        self.assertEqual(token.expires_at, first.expires_at)


class AdminServiceTest(TestCase):
    def test_issue_token(self):
        token = services.issue_token(generated_by="ADMIN", amount_paid=1500, exam_type="waec", full_name="Ada")
        self.assertRegex(token.code, CODE_RE)
        self.assertTrue(token.is_active)
        self.assertIsNone(token.device_fingerprint)
        self.assertIsNone(token.expires_at)
        self.assertEqual(token.metadata["exam_type"], "WAEC")
        self.assertEqual(token.metadata["generated_by"], "ADMIN")
        self.assertTrue(token.metadata["payment_ref"].startswith("MANUAL-"))

    def test_set_status_is_idempotent(self):
        token = make_token()
        services.set_token_status(token.code, False)
        services.set_token_status(token.code, False)
        token.refresh_from_db()
        self.assertFalse(token.is_active)

    def test_missing_code(self):
        with self.assertRaises(NotFound):
            services.reset_token_device("ACE-MISS-MISS-MISS")
        with self.assertRaises(NotFound):
            services.delete_token("ACE-MISS-MISS-MISS")

    def test_list_tokens_newest_first(self):
        old = make_token(code="ACE-AAAA-AAAA-AAAA")
        AccessToken.objects.filter(pk=old.pk).update(created_at=timezone.now() - timedelta(days=2))
        make_token(code="ACE-BBBB-BBBB-BBBB")
        codes = [t["token_code"] for t in services.list_tokens()]
        self.assertEqual(codes, ["ACE-BBBB-BBBB-BBBB", "ACE-AAAA-AAAA-AAAA"])


class TokenApiTest(TestCase):
    def setUp(self):
        self.client = Client()
        self.admin = get_user_model().objects.create_user(username="admin", password="pw", is_staff=True)
        self.auth = {"HTTP_AUTHORIZATION": f"Bearer {issue_admin_token(self.admin)}"}

    def post(self, url, payload, **extra):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json", **extra)

    def test_bind_scenario(self):
        """Bind, re-verify, deny a second device, reset, rebind."""
        make_token()
        url = "/api/auth/login-with-token/"

        resp = self.post(url, {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F1"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"requires_binding": True})

        resp = self.post(url, {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F1", "confirm_binding": True})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["regNumber"], "ACE-AAAA-BBBB-CCCC")
        self.assertEqual(data["role"], "student")
        self.assertEqual(data["allowedExamType"], "JAMB")
        self.assertIn("bound successfully", data["message"])
        self.assertEqual(data["boundAt"], AccessToken.objects.get().bound_at.isoformat())

        resp = self.post(url, {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F1"})
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("message", resp.json())
        self.assertEqual(resp.json()["boundAt"], data["boundAt"])

        resp = self.post(url, {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F2", "confirm_binding": True})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "device_mismatch")

        resp = self.post("/api/admin/reset-token-device/", {"tokenCode": "ACE-AAAA-BBBB-CCCC"}, **self.auth)
        self.assertEqual(resp.status_code, 200)

        resp = self.post(url, {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F2", "confirm_binding": True})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(AccessToken.objects.get().device_fingerprint, "F2")

    def test_login_errors(self):
        make_token(is_active=False)
        resp = self.post("/api/auth/login-with-token/", {"token": "ACE-NONE-NONE-NONE", "deviceFingerprint": "F1"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["code"], "invalid_code")

        resp = self.post("/api/auth/login-with-token/", {"token": "ACE-AAAA-BBBB-CCCC", "deviceFingerprint": "F1"})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "deactivated")

    def test_health_is_json(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True})

    def test_invalid_json(self):
        resp = self.client.post("/api/auth/login-with-token/", data="nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_admin_routes_require_bearer(self):
        self.assertEqual(self.client.get("/api/admin/tokens/").status_code, 403)
        resp = self.client.get("/api/admin/tokens/", HTTP_AUTHORIZATION="Bearer forged")
        self.assertEqual(resp.status_code, 403)

    def test_non_staff_bearer_rejected(self):
        student = get_user_model().objects.create_user(username="s", password="pw")
        resp = self.client.get("/api/admin/tokens/", HTTP_AUTHORIZATION=f"Bearer {issue_admin_token(student)}")
        self.assertEqual(resp.status_code, 403)

    def test_generate_list_toggle_delete(self):
        resp = self.post(
            "/api/admin/generate-token/",
            {"reference": "CASH-1", "amount": 1500, "examType": "WAEC", "fullName": "Ada", "phoneNumber": "080"},
            **self.auth,
        )
        self.assertEqual(resp.status_code, 200)
        code = resp.json()["token"]
        self.assertRegex(code, CODE_RE)

        listing = self.client.get("/api/admin/tokens/", **self.auth).json()
        self.assertEqual(len(listing), 1)
        self.assertEqual(listing[0]["token_code"], code)
        self.assertFalse(listing[0]["is_bound"])
        self.assertEqual(listing[0]["status"], "Unused")
        self.assertEqual(listing[0]["metadata"]["payment_ref"], "CASH-1")

        resp = self.post("/api/admin/token-status/", {"tokenCode": code, "isActive": False}, **self.auth)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["token"]["is_active"])

        resp = self.client.delete(f"/api/admin/tokens/{code}/", **self.auth)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(AccessToken.objects.exists())

        resp = self.client.delete(f"/api/admin/tokens/{code}/", **self.auth)
        self.assertEqual(resp.status_code, 404)
