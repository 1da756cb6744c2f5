from django.contrib.auth import get_user_model
from rest_framework import serializers

from clubs.models import Club

from .models import MembershipTier, PaymentMandate, Subscription, SubscriptionEvent

User = get_user_model()


class MembershipTierSerializer(serializers.ModelSerializer):
    class Meta:
        model = MembershipTier
        fields = [
            "id",
            "club",
            "name",
            "description",
            "monthly_price",
            "annual_price",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["created_at", "updated_at"]

    def validate(self, attrs):
        if self.instance is not None and "club" in attrs and attrs["club"].id != self.instance.club_id:
            raise serializers.ValidationError({"club": "Tiers cannot move between clubs."})
        return attrs


class SubscriptionSerializer(serializers.ModelSerializer):
    club_name = serializers.CharField(source="club.name", read_only=True)
    child_name = serializers.CharField(source="child_user.display_name", read_only=True)
    tier_name = serializers.CharField(source="membership_tier.name", read_only=True)
    mandate_status = serializers.CharField(source="payment_mandate.status", read_only=True, default=None)
    is_synced = serializers.BooleanField(read_only=True)

    class Meta:
        model = Subscription
        fields = [
            "id",
            "club",
            "club_name",
            "parent_user",
            "child_user",
            "child_name",
            "membership_tier",
            "tier_name",
            "payment_mandate",
            "mandate_status",
            "status",
            "amount",
            "currency",
            "billing_frequency",
            "billing_day_of_month",
            "current_period_start",
            "current_period_end",
            "next_billing_date",
            "paused_at",
            "resume_date",
            "cancelled_at",
            "cancellation_reason",
            "cancel_at_period_end",
            "failed_payment_count",
            "last_failed_payment_at",
            "provider",
            "provider_subscription_id",
            "provider_subscription_status",
            "is_synced",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SubscriptionEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = SubscriptionEvent
        fields = [
            "id",
            "event_type",
            "previous_status",
            "new_status",
            "previous_tier",
            "new_tier",
            "description",
            "actor_type",
            "actor",
            "metadata",
            "created_at",
        ]
        read_only_fields = fields


class SubscriptionCreateSerializer(serializers.Serializer):
    club = serializers.PrimaryKeyRelatedField(queryset=Club.objects.all())
    child_user = serializers.PrimaryKeyRelatedField(queryset=User.objects.all())
    membership_tier = serializers.PrimaryKeyRelatedField(queryset=MembershipTier.objects.all())
    payment_mandate = serializers.PrimaryKeyRelatedField(
        queryset=PaymentMandate.objects.select_related("payment_customer"),
        required=False,
        allow_null=True,
    )
    billing_frequency = serializers.ChoiceField(
        choices=Subscription.BillingFrequency.choices,
        default=Subscription.BillingFrequency.MONTHLY,
    )
    billing_day_of_month = serializers.IntegerField(min_value=1, max_value=28, default=1)


class ChangeTierSerializer(serializers.Serializer):
    membership_tier = serializers.PrimaryKeyRelatedField(queryset=MembershipTier.objects.all())
    prorate = serializers.BooleanField(default=True)


class PauseSubscriptionSerializer(serializers.Serializer):
    resume_date = serializers.DateField(required=False, allow_null=True)


class SuspendSubscriptionSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class CancelSubscriptionSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    immediate = serializers.BooleanField(default=True)
