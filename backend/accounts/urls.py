from django.urls import path

from .views import api_delete_student, api_list_students, api_login, api_register, api_update_credentials

urlpatterns = [
    path("api/auth/login/", api_login, name="api_login"),
    path("api/auth/register/", api_register, name="api_register"),
    path("api/auth/update-credentials/", api_update_credentials, name="api_update_credentials"),
    path("api/users/students/", api_list_students, name="api_list_students"),
    path("api/users/<str:username>/", api_delete_student, name="api_delete_student"),
]
