import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from billing.errors import BillingError

logger = logging.getLogger(__name__)


def billing_exception_handler(exc, context):
    if isinstance(exc, BillingError):
        if exc.status_code >= 500:
            logger.warning("Service error %s: %s", exc.code, exc.message)
        return Response(exc.to_dict(), status=exc.status_code)
    return exception_handler(exc, context)
