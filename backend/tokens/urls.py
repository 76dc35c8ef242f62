from django.urls import path

from .views import (
    api_delete_token,
    api_generate_token,
    api_list_tokens,
    api_login_with_token,
    api_reset_token_device,
    api_token_status,
)

urlpatterns = [
    path("api/auth/login-with-token/", api_login_with_token, name="api_login_with_token"),
    path("api/admin/generate-token/", api_generate_token, name="api_generate_token"),
    path("api/admin/tokens/", api_list_tokens, name="api_list_tokens"),
    path("api/admin/tokens/<str:code>/", api_delete_token, name="api_delete_token"),
    path("api/admin/token-status/", api_token_status, name="api_token_status"),
    path("api/admin/reset-token-device/", api_reset_token_device, name="api_reset_token_device"),
]
