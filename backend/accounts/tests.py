import json

from django.contrib.auth import get_user_model
from django.test import Client, TestCase, override_settings

from accounts.auth import issue_admin_token, verify_admin_token
from accounts.models import StudentProfile


class AccountsApiTest(TestCase):
    def setUp(self):
        self.client = Client()
        self.admin = get_user_model().objects.create_user(
            username="admin", password="s3cret", is_staff=True, first_name="Ada", last_name="Admin"
        )

    def post(self, url, payload, **extra):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json", **extra)

    def admin_headers(self):
        return {"HTTP_AUTHORIZATION": f"Bearer {issue_admin_token(self.admin)}"}

    def test_admin_login_returns_bearer(self):
        resp = self.post("/api/auth/login/", {"username": "admin", "password": "s3cret", "role": "admin"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["role"], "admin")
        self.assertEqual(data["fullName"], "Ada Admin")
        self.assertEqual(verify_admin_token(data["authToken"]), self.admin)

    def test_bad_password(self):
        resp = self.post("/api/auth/login/", {"username": "admin", "password": "nope", "role": "admin"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["code"], "invalid_credentials")

    def test_student_cannot_log_in_as_admin(self):
        self.post("/api/auth/register/", {"fullName": "Bola", "regNumber": "reg-1"})
        resp = self.post("/api/auth/login/", {"username": "REG-1", "password": "REG-1", "role": "admin"})
        self.assertEqual(resp.status_code, 401)

    def test_register_and_login_student(self):
        resp = self.post("/api/auth/register/", {"fullName": "Bola", "regNumber": "reg-1", "examType": "waec"})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["regNumber"], "REG-1")
        self.assertEqual(resp.json()["allowedExamType"], "WAEC")

        resp = self.post("/api/auth/login/", {"username": "reg-1", "password": "REG-1", "role": "student"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["fullName"], "Bola")
        self.assertFalse(resp.json()["isTokenLogin"])

    def test_register_conflict(self):
        self.post("/api/auth/register/", {"fullName": "Bola", "regNumber": "REG-1"})
        resp = self.post("/api/auth/register/", {"fullName": "Other", "regNumber": "reg-1"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "conflict")
        self.assertEqual(StudentProfile.objects.count(), 1)

    def test_list_and_delete_students(self):
        self.post("/api/auth/register/", {"fullName": "Bola", "regNumber": "REG-1"})
        resp = self.client.get("/api/users/students/", **self.admin_headers())
        self.assertEqual([s["regNumber"] for s in resp.json()], ["REG-1"])

        resp = self.client.delete("/api/users/REG-1/", **self.admin_headers())
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(StudentProfile.objects.exists())
        self.assertFalse(get_user_model().objects.filter(username="REG-1").exists())

    def test_update_credentials(self):
        resp = self.post(
            "/api/auth/update-credentials/",
            {"currentUsername": "admin", "currentPassword": "s3cret", "newUsername": "root", "newPassword": "n3w"},
            **self.admin_headers(),
        )
        self.assertEqual(resp.status_code, 200)
        resp = self.post("/api/auth/login/", {"username": "root", "password": "n3w", "role": "admin"})
        self.assertEqual(resp.status_code, 200)

    def test_update_credentials_checks_current_password(self):
        resp = self.post(
            "/api/auth/update-credentials/",
            {"currentUsername": "admin", "currentPassword": "wrong", "newUsername": "root", "newPassword": "n3w"},
            **self.admin_headers(),
        )
        self.assertEqual(resp.status_code, 401)

    def test_expired_or_foreign_admin_token_is_rejected(self):
        with override_settings(ADMIN_TOKEN_MAX_AGE=-60):
            stale = issue_admin_token(self.admin)
        self.assertIsNone(verify_admin_token(stale))
        self.assertIsNone(verify_admin_token("not-a-jwt"))

        resp = self.client.get("/api/users/students/", HTTP_AUTHORIZATION=f"Bearer {stale}")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "forbidden")
