from django.db.models import Q
from drf_spectacular.utils import extend_schema
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from accounts.permissions import IsSuperAdminOrClubAdmin
from clubs.models import Season
from clubs.services import ensure_manages_club, get_managed_club, managed_clubs
from config.pagination import OptionalPaginationListMixin

from .errors import ValidationFailed
from .models import Invoice
from .serializers import (
    CancelInvoiceSerializer,
    ClubScopeSerializer,
    InvoiceCreateSerializer,
    InvoiceListSerializer,
    InvoiceSerializer,
    InvoiceUpdateSerializer,
    MarkInvoicePaidSerializer,
    SeasonalInvoiceSerializer,
)
from .services import (
    cancel_invoice,
    create_invoice,
    delete_invoice,
    generate_seasonal_invoices,
    get_billing_summary,
    mark_invoice_as_paid,
    mark_overdue_invoices,
    publish_invoice,
    update_invoice,
)


def _filter_invoices(queryset, query_params):
    club_id = query_params.get("club_id")
    if club_id:
        queryset = queryset.filter(club_id=club_id)

    season_id = query_params.get("season_id")
    if season_id:
        queryset = queryset.filter(season_id=season_id)

    child_user_id = query_params.get("child_user_id")
    if child_user_id:
        queryset = queryset.filter(child_user_id=child_user_id)

    status_param = query_params.get("status")
    if status_param:
        statuses = [value.strip() for value in status_param.split(",") if value.strip()]
        queryset = queryset.filter(status__in=statuses)

    search_value = query_params.get("q", "").strip()
    if search_value:
        queryset = queryset.filter(
            Q(invoice_number__icontains=search_value)
            | Q(child_user__first_name__icontains=search_value)
            | Q(child_user__last_name__icontains=search_value)
            | Q(parent_user__last_name__icontains=search_value)
        )
    return queryset


class ClubInvoiceViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = InvoiceSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Invoice.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return Invoice.objects.none()
        queryset = Invoice.objects.select_related("club", "child_user", "parent_user").filter(
            club__in=managed_clubs(user)
        )
        if self.action not in ["list", "summary"]:
            queryset = queryset.prefetch_related("items", "payments")
        return _filter_invoices(queryset, self.request.query_params).order_by("-created_at")

    def get_permissions(self):
        return [IsSuperAdminOrClubAdmin()]

    def get_serializer_class(self):
        if self.action == "list":
            return InvoiceListSerializer
        if self.action == "create":
            return InvoiceCreateSerializer
        if self.action in ["update", "partial_update"]:
            return InvoiceUpdateSerializer
        if self.action == "mark_paid":
            return MarkInvoicePaidSerializer
        if self.action == "cancel":
            return CancelInvoiceSerializer
        if self.action == "seasonal":
            return SeasonalInvoiceSerializer
        if self.action == "mark_overdue":
            return ClubScopeSerializer
        return InvoiceSerializer

    def _respond(self, invoice, status_code=status.HTTP_200_OK):
        invoice = self.get_queryset().get(id=invoice.id)
        return Response(
            InvoiceSerializer(invoice, context=self.get_serializer_context()).data,
            status=status_code,
        )

    @extend_schema(request=InvoiceCreateSerializer, responses=InvoiceSerializer)
    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        club = ensure_manages_club(request.user, data["club"])
        invoice = create_invoice(
            club=club,
            child_user_id=data["child_user"],
            season=data.get("season"),
            items=data["items"],
            tax_amount=data["tax_amount"],
            discount_amount=data["discount_amount"],
            issue_date=data.get("issue_date"),
            due_date=data["due_date"],
            notes=data["notes"],
            invoice_type=data["invoice_type"],
            actor=request.user,
        )
        if data["publish"]:
            invoice = publish_invoice(invoice.id, club=club, actor=request.user)
        return self._respond(invoice, status.HTTP_201_CREATED)

    @extend_schema(request=InvoiceUpdateSerializer, responses=InvoiceSerializer)
    def update(self, request, *args, **kwargs):
        invoice = self.get_object()
        serializer = self.get_serializer(data=request.data, partial=kwargs.pop("partial", False))
        serializer.is_valid(raise_exception=True)
        changes = dict(serializer.validated_data)
        items = changes.pop("items", None)
        season = changes.get("season")
        if season is not None and season.club_id != invoice.club_id:
            raise ValidationFailed("Season belongs to another club.", season_id=season.id)
        invoice = update_invoice(
            invoice.id, club=invoice.club, actor=request.user, items=items, **changes
        )
        return self._respond(invoice)

    @extend_schema(request=InvoiceUpdateSerializer, responses=InvoiceSerializer)
    def partial_update(self, request, *args, **kwargs):
        kwargs["partial"] = True
        return self.update(request, *args, **kwargs)

    def destroy(self, request, *args, **kwargs):
        invoice = self.get_object()
        delete_invoice(invoice.id, club=invoice.club, actor=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(request=None, responses=InvoiceSerializer)
    @action(detail=True, methods=["post"], url_path="publish")
    def publish(self, request, *args, **kwargs):
        invoice = self.get_object()
        invoice = publish_invoice(invoice.id, club=invoice.club, actor=request.user)
        return self._respond(invoice)

    @extend_schema(request=CancelInvoiceSerializer, responses=InvoiceSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, *args, **kwargs):
        invoice = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        invoice = cancel_invoice(
            invoice.id,
            club=invoice.club,
            actor=request.user,
            reason=serializer.validated_data["reason"],
        )
        return self._respond(invoice)

    @extend_schema(request=MarkInvoicePaidSerializer, responses=InvoiceSerializer)
    @action(detail=True, methods=["post"], url_path="mark-paid")
    def mark_paid(self, request, *args, **kwargs):
        invoice = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        invoice = mark_invoice_as_paid(
            invoice.id,
            club=invoice.club,
            actor=request.user,
            method=data["method"],
            reference=data["reference"],
            notes=data["notes"],
            paid_at=data.get("paid_at"),
        )
        return self._respond(invoice)

    @extend_schema(request=ClubScopeSerializer, responses={200: dict})
    @action(detail=False, methods=["post"], url_path="mark-overdue")
    def mark_overdue(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        club = serializer.validated_data.get("club")
        if club is not None:
            clubs = [ensure_manages_club(request.user, club)]
        else:
            clubs = list(managed_clubs(request.user))
        updated = sum(mark_overdue_invoices(club_record) for club_record in clubs)
        return Response({"updated": updated}, status=status.HTTP_200_OK)

    @extend_schema(request=SeasonalInvoiceSerializer, responses={201: dict})
    @action(detail=False, methods=["post"], url_path="seasonal")
    def seasonal(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        club = ensure_manages_club(request.user, data["club"])
        result = generate_seasonal_invoices(
            club=club,
            season=data["season"],
            child_user_ids=data["child_user_ids"],
            items=data["items"],
            tax_amount=data["tax_amount"],
            discount_amount=data["discount_amount"],
            issue_date=data.get("issue_date"),
            due_date=data["due_date"],
            notes=data["notes"],
            publish=data["publish"],
            actor=request.user,
        )
        return Response(
            {
                "created": InvoiceListSerializer(result.created, many=True).data,
                "skipped": [
                    {"child_user_id": child_user_id, "reason": reason}
                    for child_user_id, reason in result.skipped.items()
                ],
            },
            status=status.HTTP_201_CREATED,
        )

    @extend_schema(responses={200: dict})
    @action(detail=False, methods=["get"], url_path="summary")
    def summary(self, request):
        club_id = request.query_params.get("club_id")
        if not club_id:
            raise ValidationFailed("club_id is required.")
        club = get_managed_club(request.user, club_id)
        season = None
        season_id = request.query_params.get("season_id")
        if season_id:
            season = Season.objects.filter(club=club, id=season_id).first()
            if season is None:
                raise ValidationFailed("Unknown season for this club.", season_id=season_id)
        return Response(get_billing_summary(club, season=season), status=status.HTTP_200_OK)


class ParentInvoiceViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = InvoiceSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Invoice.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return Invoice.objects.none()
        queryset = (
            Invoice.objects.select_related("club", "child_user")
            .prefetch_related("items", "payments")
            .filter(parent_user=user)
            .exclude(status=Invoice.Status.DRAFT)
        )
        return _filter_invoices(queryset, self.request.query_params).order_by("-issue_date", "-id")

    def get_serializer_class(self):
        if self.action == "list":
            return InvoiceListSerializer
        return InvoiceSerializer
