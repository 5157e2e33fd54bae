from django.http import HttpResponse
from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.pagination import StandardResultsSetPagination
from common.permissions import RoleCapabilityPermission, user_has_capability
from ledger.invoices import InvoiceLedger, invoice_totals
from ledger.serializers import (
    InvoiceCreateSerializer,
    InvoiceNoteSerializer,
    InvoiceRestoreSerializer,
    InvoiceSerializer,
    InvoiceStatusSerializer,
    InvoiceTotalsSerializer,
    ProductSerializer,
    SuggestionValueSerializer,
)
from ledger.suggestions import add_suggestion, complete, delete_suggestion, get_suggestions


class LedgerMixin:
    """Gives views a ledger bound to the configured store and the lock check the UI applies."""

    ledger_class = InvoiceLedger

    def get_ledger(self):
        return self.ledger_class()

    def ensure_unlocked(self, invoice):
        if invoice.get("isCompleted"):
            raise ValidationError({"is_completed": ["Invoice is locked. Unlock it before editing."]})

    def audit(self, *, action, entity_id, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="invoice",
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )


class InvoiceViewSet(LedgerMixin, viewsets.ViewSet):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    lookup_value_regex = r"[0-9A-Za-z_-]+"
    permission_action_map = {
        "list": "invoice.view",
        "retrieve": "invoice.view",
        "draft": "invoice.view",
        "totals": "invoice.view",
        "create": "invoice.edit",
        "partial_update": "invoice.edit",
        "set_status": "invoice.edit",
        "set_note": "invoice.edit",
        "add_product": "invoice.edit",
        "product_detail": "invoice.edit",
        "destroy": "invoice.delete",
    }

    def list(self, request):
        invoices = self.get_ledger().list_invoices(search=request.query_params.get("search"))
        paginator = StandardResultsSetPagination()
        page = paginator.paginate_queryset(invoices, request, view=self)
        return paginator.get_paginated_response(InvoiceSerializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        return Response(InvoiceSerializer(self.get_ledger().get_invoice(pk)).data)

    def create(self, request):
        serializer = InvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        fields = serializer.to_document()
        fields["userId"] = str(request.user.id)
        invoice = self.get_ledger().create_or_update_invoice(None, fields)
        self.audit(action="invoice.create", entity_id=invoice["id"], after_snapshot=invoice)
        return Response(InvoiceSerializer(invoice).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        ledger = self.get_ledger()
        before = ledger.get_invoice(pk)
        self.ensure_unlocked(before)

        serializer = InvoiceSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        fields = serializer.to_document()
        if "invoiceNumber" in fields and fields["invoiceNumber"] != before.get("invoiceNumber"):
            if not user_has_capability(request.user, "invoice.renumber"):
                raise PermissionDenied("Only admins can change an invoice number.")

        invoice = ledger.update_invoice(pk, fields)
        self.audit(action="invoice.update", entity_id=pk, before_snapshot=before, after_snapshot=invoice)
        return Response(InvoiceSerializer(invoice).data)

    def destroy(self, request, pk=None):
        ledger = self.get_ledger()
        self.ensure_unlocked(ledger.get_invoice(pk))
        deleted = ledger.delete_invoice(pk)
        self.audit(action="invoice.delete", entity_id=pk, before_snapshot=deleted)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="draft")
    def draft(self, request):
        draft = self.get_ledger().new_draft(request.user.id, today=timezone.localdate())
        return Response(InvoiceSerializer(draft).data)

    @action(detail=True, methods=["post"], url_path="status")
    def set_status(self, request, pk=None):
        serializer = InvoiceStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        is_completed = serializer.validated_data.get("is_completed")
        is_transfer = serializer.validated_data.get("is_transfer")

        ledger = self.get_ledger()
        before = ledger.get_invoice(pk)
        # Transfer can only be toggled on an unlocked invoice, or together with unlocking it.
        if is_transfer is not None and is_completed is not False:
            self.ensure_unlocked(before)

        ledger.update_invoice_status(pk, is_completed=is_completed, is_transfer=is_transfer)
        invoice = ledger.get_invoice(pk)
        self.audit(
            action="invoice.status",
            entity_id=pk,
            before_snapshot={"isCompleted": before.get("isCompleted"), "isTransfer": before.get("isTransfer")},
            after_snapshot={"isCompleted": invoice.get("isCompleted"), "isTransfer": invoice.get("isTransfer")},
        )
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=["post"], url_path="note")
    def set_note(self, request, pk=None):
        serializer = InvoiceNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        ledger = self.get_ledger()
        self.ensure_unlocked(ledger.get_invoice(pk))
        ledger.update_invoice_note(pk, serializer.validated_data["note"])
        return Response(InvoiceSerializer(ledger.get_invoice(pk)).data)

    @action(detail=True, methods=["get"], url_path="totals")
    def totals(self, request, pk=None):
        invoice = self.get_ledger().get_invoice(pk)
        return Response(InvoiceTotalsSerializer(invoice_totals(invoice)).data)

    @action(detail=True, methods=["post"], url_path="products")
    def add_product(self, request, pk=None):
        serializer = ProductSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        ledger = self.get_ledger()
        self.ensure_unlocked(ledger.get_invoice(pk))
        products = ledger.add_product_to_invoice(pk, dict(serializer.validated_data))
        return Response(ProductSerializer(products, many=True).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["put", "delete"], url_path=r"products/(?P<index>\d+)")
    def product_detail(self, request, pk=None, index=None):
        if request.method == "DELETE" and not user_has_capability(request.user, "invoice.product.delete"):
            raise PermissionDenied("Only admins can remove products from an invoice.")

        ledger = self.get_ledger()
        self.ensure_unlocked(ledger.get_invoice(pk))
        index = int(index)

        if request.method == "DELETE":
            products = ledger.delete_product_from_invoice(pk, index)
        else:
            serializer = ProductSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            products = ledger.update_product_in_invoice(pk, index, dict(serializer.validated_data))
        return Response(ProductSerializer(products, many=True).data)


class InvoiceAdminViewSet(LedgerMixin, viewsets.ViewSet):
    """Bulk backup, restore and purge of the invoice collection."""

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "backup": "invoice.backup",
        "restore": "invoice.restore",
        "purge": "invoice.purge",
    }

    @action(detail=False, methods=["get"], url_path="backup")
    def backup(self, request):
        content = self.get_ledger().backup_invoices()
        response = HttpResponse(content, content_type="application/json; charset=utf-8")
        filename = f"invoices-backup-{timezone.localdate().isoformat()}.json"
        response["Content-Disposition"] = f'attachment; filename="{filename}"'
        return response

    @action(detail=False, methods=["post"], url_path="restore")
    def restore(self, request):
        serializer = InvoiceRestoreSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        count = self.get_ledger().restore_invoices(serializer.get_payload())
        create_audit_log_from_request(request, action="invoice.restore", entity="invoice", after_snapshot={"count": count})
        return Response({"restored": count})

    @action(detail=False, methods=["post"], url_path="purge")
    def purge(self, request):
        count = self.get_ledger().delete_all_invoices()
        create_audit_log_from_request(request, action="invoice.purge", entity="invoice", before_snapshot={"count": count})
        return Response({"deleted": count})


class SuggestionListView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "get": "suggestions.view",
        "post": "suggestions.manage",
        "delete": "suggestions.manage",
    }

    def get(self, request, list_id):
        query = request.query_params.get("q")
        values = complete(list_id, query) if query else get_suggestions(list_id)
        return Response({"list_id": list_id, "values": values})

    def post(self, request, list_id):
        serializer = SuggestionValueSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        values = add_suggestion(list_id, serializer.validated_data["value"])
        return Response({"list_id": list_id, "values": values}, status=status.HTTP_201_CREATED)

    def delete(self, request, list_id):
        value = request.query_params.get("value") or request.data.get("value")
        if not value:
            raise ValidationError({"value": ["This field is required."]})
        values = delete_suggestion(list_id, value)
        return Response({"list_id": list_id, "values": values})
