import logging

from django.contrib.auth import get_user_model
from django.db.models import Q
from drf_spectacular.utils import extend_schema
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsSuperAdmin, IsSuperAdminOrClubAdmin
from billing.errors import NotFound, ValidationFailed
from clubs.services import ensure_manages_club, get_managed_club, managed_clubs
from config.pagination import OptionalPaginationListMixin
from members.models import Member
from members.services import find_membership

from .audit import AuditContext
from .mandates import list_unsynced_diagnostics
from .models import MembershipTier, Subscription
from .serializers import (
    CancelSubscriptionSerializer,
    ChangeTierSerializer,
    MembershipTierSerializer,
    PauseSubscriptionSerializer,
    SubscriptionCreateSerializer,
    SubscriptionEventSerializer,
    SubscriptionSerializer,
    SuspendSubscriptionSerializer,
)
from .services import (
    cancel_subscription,
    change_tier,
    create_subscription,
    get_subscription_stats,
    pause_subscription,
    reactivate_subscription,
    resume_subscription,
    suspend_subscription,
)
from .webhook_processor import process_webhook
from .webhooks import WebhookConfigurationError

logger = logging.getLogger(__name__)
User = get_user_model()


def _filter_subscriptions(queryset, query_params):
    club_id = query_params.get("club_id")
    if club_id:
        queryset = queryset.filter(club_id=club_id)
    child_user_id = query_params.get("child_user_id")
    if child_user_id:
        queryset = queryset.filter(child_user_id=child_user_id)
    status_param = query_params.get("status")
    if status_param:
        statuses = [value.strip() for value in status_param.split(",") if value.strip()]
        queryset = queryset.filter(status__in=statuses)
    return queryset


class MembershipTierViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = MembershipTierSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return MembershipTier.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return MembershipTier.objects.none()
        if user.role in ["super_admin", "club_admin"]:
            queryset = MembershipTier.objects.filter(club__in=managed_clubs(user))
        else:
            club_ids = Member.objects.filter(Q(user=user) | Q(guardian=user)).values("club_id")
            queryset = MembershipTier.objects.filter(club_id__in=club_ids, is_active=True)
        club_id = self.request.query_params.get("club_id")
        if club_id:
            queryset = queryset.filter(club_id=club_id)
        return queryset.select_related("club").order_by("club_id", "monthly_price", "name")

    def get_permissions(self):
        if self.action in ["create", "update", "partial_update"]:
            return [IsSuperAdminOrClubAdmin()]
        return [permissions.IsAuthenticated()]

    def perform_create(self, serializer):
        ensure_manages_club(self.request.user, serializer.validated_data["club"])
        serializer.save()


class ClubSubscriptionViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = SubscriptionSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Subscription.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return Subscription.objects.none()
        queryset = Subscription.objects.select_related(
            "club", "child_user", "membership_tier", "payment_mandate"
        ).filter(club__in=managed_clubs(user))
        return _filter_subscriptions(queryset, self.request.query_params).order_by("-created_at")

    def get_permissions(self):
        return [IsSuperAdminOrClubAdmin()]

    def get_serializer_class(self):
        if self.action == "create":
            return SubscriptionCreateSerializer
        if self.action == "cancel":
            return CancelSubscriptionSerializer
        if self.action == "suspend":
            return SuspendSubscriptionSerializer
        if self.action == "events":
            return SubscriptionEventSerializer
        return SubscriptionSerializer

    def _respond(self, subscription, status_code=status.HTTP_200_OK):
        subscription = self.get_queryset().get(id=subscription.id)
        return Response(SubscriptionSerializer(subscription).data, status=status_code)

    @extend_schema(request=SubscriptionCreateSerializer, responses=SubscriptionSerializer)
    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        club = ensure_manages_club(request.user, data["club"])
        membership = find_membership(data["child_user"].id, club_id=club.id)
        if membership is None:
            raise NotFound(
                "Beneficiary is not a member of this club.",
                child_user_id=data["child_user"].id,
                club_id=club.id,
            )
        subscription = create_subscription(
            club=club,
            parent_user=User.objects.get(id=membership.payer_id),
            child_user=data["child_user"],
            tier=data["membership_tier"],
            mandate=data.get("payment_mandate"),
            billing_frequency=data["billing_frequency"],
            billing_day_of_month=data["billing_day_of_month"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription, status.HTTP_201_CREATED)

    @extend_schema(request=CancelSubscriptionSerializer, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = cancel_subscription(
            subscription.id,
            reason=serializer.validated_data["reason"],
            immediate=serializer.validated_data["immediate"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription)

    @extend_schema(request=SuspendSubscriptionSerializer, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="suspend")
    def suspend(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = suspend_subscription(
            subscription.id,
            reason=serializer.validated_data["reason"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription)

    @extend_schema(request=None, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="reactivate")
    def reactivate(self, request, *args, **kwargs):
        subscription = self.get_object()
        subscription = reactivate_subscription(subscription.id, audit=AuditContext.from_request(request))
        return self._respond(subscription)

    @extend_schema(responses=SubscriptionEventSerializer(many=True))
    @action(detail=True, methods=["get"], url_path="events")
    def events(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = SubscriptionEventSerializer(subscription.events.all()[:200], many=True)
        return Response(serializer.data, status=status.HTTP_200_OK)

    @extend_schema(responses={200: dict})
    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        club_id = request.query_params.get("club_id")
        if not club_id:
            raise ValidationFailed("club_id is required.")
        club = get_managed_club(request.user, club_id)
        return Response(get_subscription_stats(club), status=status.HTTP_200_OK)


class ParentSubscriptionViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = SubscriptionSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Subscription.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return Subscription.objects.none()
        queryset = Subscription.objects.select_related(
            "club", "child_user", "membership_tier", "payment_mandate"
        ).filter(parent_user=user)
        return _filter_subscriptions(queryset, self.request.query_params).order_by("-created_at")

    def get_serializer_class(self):
        if self.action == "create":
            return SubscriptionCreateSerializer
        if self.action == "change_tier":
            return ChangeTierSerializer
        if self.action == "pause":
            return PauseSubscriptionSerializer
        if self.action == "cancel":
            return CancelSubscriptionSerializer
        return SubscriptionSerializer

    def _respond(self, subscription, status_code=status.HTTP_200_OK, **extra):
        subscription = self.get_queryset().get(id=subscription.id)
        payload = SubscriptionSerializer(subscription).data
        if extra:
            payload = {"subscription": payload, **extra}
        return Response(payload, status=status_code)

    @extend_schema(request=SubscriptionCreateSerializer, responses=SubscriptionSerializer)
    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        subscription = create_subscription(
            club=data["club"],
            parent_user=request.user,
            child_user=data["child_user"],
            tier=data["membership_tier"],
            mandate=data.get("payment_mandate"),
            billing_frequency=data["billing_frequency"],
            billing_day_of_month=data["billing_day_of_month"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription, status.HTTP_201_CREATED)

    @extend_schema(request=ChangeTierSerializer, responses={200: dict})
    @action(detail=True, methods=["post"], url_path="change-tier")
    def change_tier(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = change_tier(
            subscription.id,
            new_tier=serializer.validated_data["membership_tier"],
            prorate=serializer.validated_data["prorate"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(
            result.subscription,
            proration=result.proration.to_dict() if result.proration else None,
        )

    @extend_schema(request=PauseSubscriptionSerializer, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="pause")
    def pause(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = pause_subscription(
            subscription.id,
            resume_date=serializer.validated_data.get("resume_date"),
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription)

    @extend_schema(request=None, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="resume")
    def resume(self, request, *args, **kwargs):
        subscription = self.get_object()
        subscription = resume_subscription(subscription.id, audit=AuditContext.from_request(request))
        return self._respond(subscription)

    @extend_schema(request=CancelSubscriptionSerializer, responses=SubscriptionSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, *args, **kwargs):
        subscription = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = cancel_subscription(
            subscription.id,
            reason=serializer.validated_data["reason"],
            immediate=serializer.validated_data["immediate"],
            audit=AuditContext.from_request(request),
        )
        return self._respond(subscription)


class UnsyncedSubscriptionsView(APIView):
    permission_classes = [IsSuperAdmin]

    @extend_schema(responses={200: dict})
    def get(self, request):
        clubs = None
        club_id = request.query_params.get("club_id")
        if club_id:
            clubs = [get_managed_club(request.user, club_id)]
        diagnostics = list_unsynced_diagnostics(clubs)
        return Response(
            {
                "count": len(diagnostics),
                "needs_sync": sum(1 for diagnostic in diagnostics if diagnostic.needs_sync),
                "results": [diagnostic.to_dict() for diagnostic in diagnostics],
            },
            status=status.HTTP_200_OK,
        )


class PaymentWebhookView(APIView):
    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    @extend_schema(exclude=True)
    def post(self, request, provider, *args, **kwargs):
        try:
            result = process_webhook(provider, request.body, request.headers)
        except WebhookConfigurationError as exc:
            logger.error("%s webhook rejected: %s", provider, exc)
            return Response(
                {"success": False, "error": "webhook_not_configured"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        except NotFound:
            raise
        except Exception:
            # Already logged with a traceback by the processor; a 5xx makes the provider retry.
            return Response(
                {"success": False, "error": "processing_failed"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(result.to_dict(), status=status.HTTP_200_OK)
