from django.db import transaction
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from accounts.permissions import IsSuperAdmin

from .models import WorkerExecution
from .serializers import WorkerExecutionSerializer, WorkerStatusSerializer
from .services import claim_worker, get_execution_history, get_latest_executions
from .tasks import run_claimed_worker

LIMIT_PARAMETER = OpenApiParameter("limit", int, description="Number of executions, 1-100.")


class WorkerViewSet(viewsets.ViewSet):
    permission_classes = [IsSuperAdmin]
    lookup_field = "name"
    lookup_value_regex = "[a-z_]+"

    @extend_schema(responses=WorkerStatusSerializer(many=True))
    def list(self, request):
        return Response(WorkerStatusSerializer(get_latest_executions(), many=True).data)

    @extend_schema(parameters=[LIMIT_PARAMETER], responses=WorkerExecutionSerializer(many=True))
    @action(detail=False, methods=["get"], url_path="history")
    def history(self, request):
        executions = get_execution_history(limit=request.query_params.get("limit"))
        return Response(WorkerExecutionSerializer(executions, many=True).data)

    @extend_schema(parameters=[LIMIT_PARAMETER], responses=WorkerExecutionSerializer(many=True))
    @action(detail=True, methods=["get"], url_path="history")
    def worker_history(self, request, name=None):
        executions = get_execution_history(name, limit=request.query_params.get("limit"))
        return Response(WorkerExecutionSerializer(executions, many=True).data)

    @extend_schema(request=None, responses={202: WorkerExecutionSerializer})
    @action(detail=True, methods=["post"], url_path="trigger")
    def trigger(self, request, name=None):
        execution = claim_worker(
            name, trigger=WorkerExecution.Trigger.MANUAL, triggered_by=request.user
        )
        transaction.on_commit(lambda: run_claimed_worker.delay(execution.id))
        return Response(WorkerExecutionSerializer(execution).data, status=status.HTTP_202_ACCEPTED)
