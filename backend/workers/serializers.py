from rest_framework import serializers

from .models import WorkerExecution


class WorkerExecutionSerializer(serializers.ModelSerializer):
    triggered_by_name = serializers.SerializerMethodField()

    class Meta:
        model = WorkerExecution
        fields = [
            "id",
            "worker_name",
            "trigger",
            "triggered_by",
            "triggered_by_name",
            "status",
            "started_at",
            "completed_at",
            "duration_ms",
            "items_processed",
            "items_successful",
            "items_failed",
            "error_message",
            "metadata",
        ]
        read_only_fields = fields

    def get_triggered_by_name(self, obj):
        return obj.triggered_by.display_name if obj.triggered_by else None


class WorkerStatusSerializer(serializers.Serializer):
    name = serializers.CharField(source="definition.name")
    display_name = serializers.CharField(source="definition.display_name")
    description = serializers.CharField(source="definition.description")
    schedule_seconds = serializers.IntegerField(source="definition.schedule_seconds")
    is_running = serializers.BooleanField()
    latest_execution = WorkerExecutionSerializer(allow_null=True)
