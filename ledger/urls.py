from django.urls import path
from rest_framework.routers import DefaultRouter

from ledger.views import InvoiceAdminViewSet, InvoiceViewSet, SuggestionListView

router = DefaultRouter()
router.register(r"invoices", InvoiceViewSet, basename="invoice")
router.register(r"admin/invoices", InvoiceAdminViewSet, basename="admin-invoice")

urlpatterns = router.urls + [
    path("suggestions/<str:list_id>/", SuggestionListView.as_view(), name="suggestion-list"),
]
