from django.contrib import admin

from .models import StudentProfile


@admin.register(StudentProfile)
class StudentProfileAdmin(admin.ModelAdmin):
    list_display = ("id", "reg_number", "full_name", "allowed_exam_type", "created_at")
    list_filter = ("allowed_exam_type",)
    search_fields = ("reg_number", "full_name", "user__username")
