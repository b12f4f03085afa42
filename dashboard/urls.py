from django.urls import include, path

urlpatterns = [
    path("", include("policy_pricing.urls")),
]
