from django.conf import settings
from django.db import models


class StudentProfile(models.Model):
    class ExamType(models.TextChoices):
        JAMB = "JAMB", "JAMB"
        WAEC = "WAEC", "WAEC"
        BOTH = "BOTH", "Both"

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="student_profile")
    full_name = models.CharField(max_length=255)
    reg_number = models.CharField(max_length=64, unique=True)
    allowed_exam_type = models.CharField(max_length=8, choices=ExamType.choices, default=ExamType.BOTH)

    created_at = models.DateTimeField(auto_now_add=True)

    def identity(self) -> dict:
        return {
            "username": self.reg_number,
            "role": "student",
            "fullName": self.full_name,
            "regNumber": self.reg_number,
            "isTokenLogin": False,
            "allowedExamType": self.allowed_exam_type,
        }

    def __str__(self) -> str:
        return f"{self.full_name} ({self.reg_number})"
