from django.urls import path

from .views import api_verify_payment

urlpatterns = [
    path("api/payments/verify/", api_verify_payment, name="api_verify_payment"),
]
