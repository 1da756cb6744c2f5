from decimal import Decimal

from rest_framework import serializers

from clubs.models import Club, Season

from .models import Invoice, InvoiceItem, Payment


class InvoiceItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceItem
        fields = ["id", "description", "category", "quantity", "unit_price", "total_price"]
        read_only_fields = ["total_price"]


class InvoiceItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255)
    category = serializers.ChoiceField(
        choices=InvoiceItem.Category.choices, default=InvoiceItem.Category.OTHER
    )
    quantity = serializers.IntegerField(min_value=1, default=1)
    unit_price = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00")
    )


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "amount",
            "currency",
            "method",
            "provider",
            "reference",
            "notes",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class InvoiceListSerializer(serializers.ModelSerializer):
    club_name = serializers.CharField(source="club.name", read_only=True)
    child_name = serializers.CharField(source="child_user.display_name", read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "club",
            "club_name",
            "season",
            "parent_user",
            "child_user",
            "child_name",
            "invoice_type",
            "status",
            "currency",
            "total_amount",
            "amount_paid",
            "issue_date",
            "due_date",
            "paid_date",
        ]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    items = InvoiceItemSerializer(many=True, read_only=True)
    payments = PaymentSerializer(many=True, read_only=True)
    club_name = serializers.CharField(source="club.name", read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "club",
            "club_name",
            "season",
            "parent_user",
            "child_user",
            "subscription",
            "invoice_type",
            "status",
            "currency",
            "subtotal",
            "tax_amount",
            "discount_amount",
            "total_amount",
            "amount_paid",
            "issue_date",
            "due_date",
            "paid_date",
            "published_at",
            "cancelled_at",
            "cancellation_reason",
            "notes",
            "items",
            "payments",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InvoiceCreateSerializer(serializers.Serializer):
    club = serializers.PrimaryKeyRelatedField(queryset=Club.objects.all())
    child_user = serializers.IntegerField(min_value=1)
    season = serializers.PrimaryKeyRelatedField(
        queryset=Season.objects.all(), required=False, allow_null=True
    )
    items = InvoiceItemInputSerializer(many=True, allow_empty=False)
    tax_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), default=Decimal("0.00")
    )
    discount_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), default=Decimal("0.00")
    )
    issue_date = serializers.DateField(required=False)
    due_date = serializers.DateField()
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    invoice_type = serializers.ChoiceField(
        choices=[
            Invoice.InvoiceType.MANUAL,
            Invoice.InvoiceType.SEASONAL,
            Invoice.InvoiceType.ADJUSTMENT,
        ],
        default=Invoice.InvoiceType.MANUAL,
    )
    publish = serializers.BooleanField(default=False)

    def validate(self, attrs):
        season = attrs.get("season")
        if season is not None and season.club_id != attrs["club"].id:
            raise serializers.ValidationError({"season": "Season belongs to another club."})
        return attrs


class InvoiceUpdateSerializer(serializers.Serializer):
    season = serializers.PrimaryKeyRelatedField(
        queryset=Season.objects.all(), required=False, allow_null=True
    )
    items = InvoiceItemInputSerializer(many=True, required=False, allow_empty=False)
    tax_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), required=False
    )
    discount_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), required=False
    )
    issue_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class MarkInvoicePaidSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=Payment.Method.choices, default=Payment.Method.OTHER)
    reference = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    paid_at = serializers.DateTimeField(required=False)


class CancelInvoiceSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class ClubScopeSerializer(serializers.Serializer):
    club = serializers.PrimaryKeyRelatedField(queryset=Club.objects.all(), required=False)


class SeasonalInvoiceSerializer(serializers.Serializer):
    club = serializers.PrimaryKeyRelatedField(queryset=Club.objects.all())
    season = serializers.PrimaryKeyRelatedField(queryset=Season.objects.all())
    child_user_ids = serializers.ListField(
        child=serializers.IntegerField(min_value=1), allow_empty=False
    )
    items = InvoiceItemInputSerializer(many=True, allow_empty=False)
    tax_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), default=Decimal("0.00")
    )
    discount_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0.00"), default=Decimal("0.00")
    )
    issue_date = serializers.DateField(required=False)
    due_date = serializers.DateField()
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    publish = serializers.BooleanField(default=False)

    def validate(self, attrs):
        if attrs["season"].club_id != attrs["club"].id:
            raise serializers.ValidationError({"season": "Season belongs to another club."})
        return attrs
