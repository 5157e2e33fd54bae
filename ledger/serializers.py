from rest_framework import serializers

from ledger.invoices import invoice_totals
from ledger.models import InvoiceState, PaymentType


class ProductSerializer(serializers.Serializer):
    id = serializers.IntegerField(required=False)
    name = serializers.CharField(max_length=200)
    color = serializers.CharField(max_length=100)
    price = serializers.FloatField()
    quantity = serializers.IntegerField(min_value=0, default=0)
    meter = serializers.FloatField(min_value=0)
    total = serializers.FloatField(read_only=True)

    def validate_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Price must be greater than zero.")
        return value


class InvoiceSerializer(serializers.Serializer):
    """Snake-case view of an invoice document; `source` maps to the stored field names."""

    id = serializers.CharField(read_only=True)
    invoice_number = serializers.IntegerField(source="invoiceNumber", min_value=1, required=False)
    date = serializers.DateField()
    customer_name = serializers.CharField(source="customerName", max_length=200)
    state = serializers.ChoiceField(choices=InvoiceState.choices, required=False)
    payment_type = serializers.ChoiceField(source="paymentType", choices=PaymentType.choices, required=False)
    note = serializers.CharField(allow_blank=True, required=False)
    discount = serializers.FloatField(min_value=0, required=False)
    is_completed = serializers.BooleanField(source="isCompleted", read_only=True)
    is_transfer = serializers.BooleanField(source="isTransfer", read_only=True)
    user_id = serializers.CharField(source="userId", read_only=True)
    products = ProductSerializer(many=True, required=False)
    totals = serializers.SerializerMethodField()

    def get_totals(self, obj):
        return invoice_totals(obj)

    def to_document(self):
        """Validated data in the stored shape."""
        fields = dict(self.validated_data)
        if "date" in fields:
            fields["date"] = fields["date"].isoformat()
        if "products" in fields:
            fields["products"] = [dict(item) for item in fields["products"]]
        return fields


class InvoiceCreateSerializer(InvoiceSerializer):
    invoice_number = serializers.IntegerField(source="invoiceNumber", read_only=True)
    products = ProductSerializer(many=True, allow_empty=False)


class InvoiceStatusSerializer(serializers.Serializer):
    is_completed = serializers.BooleanField(required=False)
    is_transfer = serializers.BooleanField(required=False)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide is_completed or is_transfer.")
        return attrs


class InvoiceNoteSerializer(serializers.Serializer):
    note = serializers.CharField(allow_blank=True, trim_whitespace=False)


class InvoiceTotalsSerializer(serializers.Serializer):
    quantity = serializers.IntegerField()
    meter = serializers.FloatField()
    total = serializers.FloatField()
    discount = serializers.FloatField()
    final_total = serializers.FloatField()


class InvoiceRestoreSerializer(serializers.Serializer):
    file = serializers.FileField(required=False)
    payload = serializers.CharField(required=False, trim_whitespace=False)

    def validate(self, attrs):
        if not attrs.get("file") and not attrs.get("payload"):
            raise serializers.ValidationError("Upload a backup file or send its contents as payload.")
        return attrs

    def get_payload(self):
        upload = self.validated_data.get("file")
        if upload is not None:
            return upload.read()
        return self.validated_data["payload"]


class SuggestionValueSerializer(serializers.Serializer):
    value = serializers.CharField(max_length=200)
