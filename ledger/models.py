from django.db import models


class InvoiceState(models.TextChoices):
    DELIVERY_NOTE = "أذن تسليم", "Delivery note"
    RETURN_NOTE = "أذن مرتجع", "Return note"


class PaymentType(models.TextChoices):
    CASH = "نقدي", "Cash"
    CREDIT = "أجل", "Credit"


class Document(models.Model):
    """One document of the ledger's key-document store.

    `version` starts at 1 and grows on every write; transactions compare it
    against the version they read.
    """

    id = models.BigAutoField(primary_key=True)
    collection = models.CharField(max_length=64)
    doc_id = models.CharField(max_length=128)
    data = models.JSONField(default=dict)
    version = models.PositiveBigIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["collection", "doc_id"], name="uniq_document_collection_doc_id"),
        ]
        indexes = [
            models.Index(fields=["collection", "id"], name="document_collection_idx"),
        ]

    def __str__(self):
        return f"{self.collection}/{self.doc_id}@{self.version}"
