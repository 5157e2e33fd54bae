from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for invoice, user and audit-log listings.

    Invoice lists are plain Python lists read from the document store; Django's
    paginator slices them the same way it slices querysets. `?page_size=` is
    capped so a full ledger dump goes through the backup endpoint instead.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
