from django.conf import settings
from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework.routers import DefaultRouter

from billing.views import ClubInvoiceViewSet, ParentInvoiceViewSet
from subscriptions.views import (
    ClubSubscriptionViewSet,
    MembershipTierViewSet,
    ParentSubscriptionViewSet,
    PaymentWebhookView,
    UnsyncedSubscriptionsView,
)
from workers.views import WorkerViewSet

router = DefaultRouter()
router.register(r"club-invoices", ClubInvoiceViewSet, basename="club-invoice")
router.register(r"parent-invoices", ParentInvoiceViewSet, basename="parent-invoice")
router.register(r"membership-tiers", MembershipTierViewSet, basename="membership-tier")
router.register(r"club-subscriptions", ClubSubscriptionViewSet, basename="club-subscription")
router.register(r"parent-subscriptions", ParentSubscriptionViewSet, basename="parent-subscription")
router.register(r"admin/workers", WorkerViewSet, basename="admin-worker")


def health_check(request):
    return JsonResponse({"status": "ok"})


schema_view = (
    SpectacularAPIView.as_view(throttle_classes=[])
    if settings.DEBUG
    else SpectacularAPIView.as_view()
)

urlpatterns = [
    path("admin/", admin.site.urls),
    path("webhooks/<str:provider>/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("api/health/", health_check, name="health-check"),
    path(
        "api/admin/subscriptions/unsynced/",
        UnsyncedSubscriptionsView.as_view(),
        name="unsynced-subscriptions",
    ),
    path("api/", include(router.urls)),
    path("api/schema/", schema_view, name="schema"),
    path("api/docs/", SpectacularSwaggerView.as_view(url_name="schema"), name="docs"),
]
