from django.conf import settings
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response

PAGE_QUERY_PARAMS = ("page", "page_size")


class OptionalPageNumberPagination(PageNumberPagination):
    page_size = settings.API_PAGINATION_DEFAULT_PAGE_SIZE
    page_size_query_param = "page_size"
    max_page_size = settings.API_PAGINATION_MAX_PAGE_SIZE

    def get_paginated_response(self, data):
        return Response(
            {
                "count": self.page.paginator.count,
                "page": self.page.number,
                "pages": self.page.paginator.num_pages,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "results": data,
            }
        )


class OptionalPaginationListMixin:
    """List endpoints answer with a plain array unless a page is asked for."""

    pagination_class = OptionalPageNumberPagination

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())
        if any(param in request.query_params for param in PAGE_QUERY_PARAMS):
            page = self.paginate_queryset(queryset)
            if page is not None:
                return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)
