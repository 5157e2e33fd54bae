"""Invoice numbering and mutation protocol on top of a `DocumentStore`.

Invoices are stored in the `invoices` collection with the field names of the
backup format (`invoiceNumber`, `customerName`, ...). The last assigned
number lives in `metadata/lastInvoiceNumber` and is only ever written inside
the transaction of the invoice write that depends on it, or by the purge
batch.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Callable, Iterable

from django.conf import settings
from django.utils import timezone

from ledger.exceptions import DocumentNotFound, InvoiceNotFound, LedgerValidationError, ProductNotFound
from ledger.models import InvoiceState, PaymentType
from ledger.store import DELETE, SET, DocumentRef, DocumentStore, Transaction, Write, get_document_store, run_transaction

logger = logging.getLogger(__name__)

INVOICES = "invoices"
COUNTER_REF = DocumentRef("metadata", "lastInvoiceNumber")
PRODUCT_AMOUNTS = ("price", "quantity", "meter", "total")


def invoice_ref(invoice_id: str) -> DocumentRef:
    return DocumentRef(INVOICES, str(invoice_id))


def _counter_value(snapshot) -> int:
    if not snapshot.exists:
        return 0
    return int(snapshot.data.get("value") or 0)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value):
    """Parse a finite number; anything else, NaN and infinities included, gives None."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() and "." not in value else number
    return None


def _sort_number(value) -> float:
    return value if _is_number(value) else 0


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_stored_product(item) -> bool:
    if not isinstance(item, dict):
        return False
    amounts = [item[field] for field in PRODUCT_AMOUNTS if field in item]
    return all(_is_number(value) and _to_number(value) is not None for value in amounts)


def compute_line_total(price, meter):
    return price * meter


def validate_product_data(data: dict[str, Any]) -> dict[str, Any]:
    """Check a line item and return its cleaned fields.

    Raises `LedgerValidationError` with per-field messages when the name or
    color is blank, the price is not positive, the quantity is not a
    non-negative integer or the meter is negative.
    """
    if not isinstance(data, dict):
        raise LedgerValidationError("Product data must be an object.")

    errors: dict[str, list[str]] = {}
    cleaned: dict[str, Any] = {}

    for field in ("name", "color"):
        value = data.get(field)
        value = value.strip() if isinstance(value, str) else ""
        if not value:
            errors[field] = ["This field may not be blank."]
        cleaned[field] = value

    price = _to_number(data.get("price"))
    if price is None:
        errors["price"] = ["A valid number is required."]
    elif price <= 0:
        errors["price"] = ["Ensure this value is greater than 0."]
    cleaned["price"] = price

    quantity = _to_number(data.get("quantity", 0))
    if quantity is None or (isinstance(quantity, float) and not quantity.is_integer()):
        errors["quantity"] = ["A valid integer is required."]
    elif quantity < 0:
        errors["quantity"] = ["Ensure this value is greater than or equal to 0."]
    else:
        quantity = int(quantity)
    cleaned["quantity"] = quantity

    meter = _to_number(data.get("meter"))
    if meter is None:
        errors["meter"] = ["A valid number is required."]
    elif meter < 0:
        errors["meter"] = ["Ensure this value is greater than or equal to 0."]
    cleaned["meter"] = meter

    if errors:
        raise LedgerValidationError("Invalid product.", errors=errors)
    return cleaned


def next_product_id(existing_ids: Iterable[Any] = (), now_ms: int | None = None) -> int:
    """Millisecond timestamp, bumped past any id already used in the list."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    taken = [int(value) for value in existing_ids if _is_number(value)]
    return max([now_ms, *(value + 1 for value in taken)])


def build_product(cleaned: dict[str, Any], product_id: int) -> dict[str, Any]:
    return {
        "id": product_id,
        "name": cleaned["name"],
        "color": cleaned["color"],
        "price": cleaned["price"],
        "quantity": cleaned["quantity"],
        "meter": cleaned["meter"],
        "total": compute_line_total(cleaned["price"], cleaned["meter"]),
    }


def normalize_products(products) -> list[dict[str, Any]]:
    """Validate an embedded product list, assign missing ids and recompute totals."""
    if not isinstance(products, list):
        raise LedgerValidationError("Products must be a list.", errors={"products": ["Expected a list of items."]})

    item_errors: list[dict] = []
    normalized: list[dict[str, Any]] = []
    used_ids: list[Any] = []
    for item in products:
        try:
            cleaned = validate_product_data(item)
        except LedgerValidationError as exc:
            item_errors.append(exc.errors or {"non_field_errors": [exc.message]})
            continue
        item_errors.append({})

        product_id = item.get("id")
        if not _is_number(product_id) or product_id in used_ids:
            product_id = next_product_id(used_ids)
        used_ids.append(product_id)
        normalized.append(build_product(cleaned, product_id))

    if any(item_errors):
        raise LedgerValidationError("Invalid products.", errors={"products": item_errors})
    return normalized


def invoice_totals(invoice: dict[str, Any]) -> dict[str, Any]:
    """Footer sums of an invoice. Line totals are recomputed from price and meter."""
    products = invoice.get("products") or []
    total = sum(compute_line_total(item.get("price") or 0, item.get("meter") or 0) for item in products)
    discount = invoice.get("discount") or 0
    return {
        "quantity": sum(item.get("quantity") or 0 for item in products),
        "meter": sum(item.get("meter") or 0 for item in products),
        "total": total,
        "discount": discount,
        "final_total": total - discount,
    }


class InvoiceLedger:
    def __init__(self, store: DocumentStore | None = None, *, strict_product_writes: bool | None = None):
        self.store = store if store is not None else get_document_store()
        if strict_product_writes is None:
            strict_product_writes = getattr(settings, "LEDGER_STRICT_PRODUCT_WRITES", False)
        self.strict_product_writes = bool(strict_product_writes)

    # Reads

    def new_draft(self, user_id: str = "", today=None) -> dict[str, Any]:
        """Zero-valued unsaved invoice; it gets an id and a number on first save."""
        today = today or timezone.localdate()
        return {
            "id": "",
            "invoiceNumber": 0,
            "date": today.isoformat(),
            "customerName": "",
            "state": InvoiceState.DELIVERY_NOTE.value,
            "products": [],
            "note": "",
            "isCompleted": False,
            "isTransfer": False,
            "paymentType": PaymentType.CASH.value,
            "discount": 0,
            "userId": str(user_id or ""),
        }

    def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        snapshot = self.store.read(invoice_ref(invoice_id))
        if not snapshot.exists:
            raise InvoiceNotFound(invoice_id)
        return {"id": snapshot.ref.doc_id, **snapshot.data}

    def list_invoices(self, search: str | None = None) -> list[dict[str, Any]]:
        invoices = [{"id": snapshot.ref.doc_id, **snapshot.data} for snapshot in self.store.list_documents(INVOICES)]

        term = (search or "").strip().lower()
        if term:
            invoices = [
                invoice
                for invoice in invoices
                if term in str(invoice.get("customerName") or "").lower() or term in str(invoice.get("invoiceNumber") or "")
            ]

        invoices.sort(key=lambda invoice: _sort_number(invoice.get("invoiceNumber")), reverse=True)
        return invoices

    def last_invoice_number(self) -> int:
        return _counter_value(self.store.read(COUNTER_REF))

    # Invoice writes

    def create_or_update_invoice(self, invoice_id: str | None, data: dict[str, Any]) -> dict[str, Any]:
        """Save an invoice.

        Without an id a new invoice is written together with the next number
        from the counter in one transaction; a concurrent creation makes the
        commit fail with `TransactionConflict` and the caller decides whether
        to retry. With an id the stored invoice is merge-patched.
        """
        if invoice_id:
            return self.update_invoice(invoice_id, data)

        fields = self._prepare_fields(data)
        invoice_id = self.store.new_id()
        ref = invoice_ref(invoice_id)
        defaults = self.new_draft(fields.get("userId", ""))
        defaults.pop("id")

        def create(txn: Transaction) -> dict[str, Any]:
            number = _counter_value(txn.get(COUNTER_REF)) + 1
            document = {**defaults, **fields, "invoiceNumber": number}
            txn.set(ref, document)
            txn.set(COUNTER_REF, {"value": number})
            return document

        document = run_transaction(self.store, create)
        logger.info(
            "invoice_created",
            extra={"invoice_id": invoice_id, "invoice_number": document["invoiceNumber"]},
        )
        return {"id": invoice_id, **document}

    def update_invoice(self, invoice_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self._patch(invoice_id, self._prepare_fields(data))
        return self.get_invoice(invoice_id)

    def update_invoice_status(self, invoice_id: str, is_completed: bool | None = None, is_transfer: bool | None = None) -> None:
        patch = {}
        if is_completed is not None:
            patch["isCompleted"] = bool(is_completed)
        if is_transfer is not None:
            patch["isTransfer"] = bool(is_transfer)
        if not patch:
            raise LedgerValidationError("Nothing to update; pass is_completed or is_transfer.")
        self._patch(invoice_id, patch)

    def update_invoice_note(self, invoice_id: str, note: str) -> None:
        self._patch(invoice_id, {"note": note or ""})

    def delete_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Delete an invoice, giving its number back when it was the last one assigned."""
        ref = invoice_ref(invoice_id)

        def delete(txn: Transaction) -> dict[str, Any]:
            snapshot = txn.get(ref)
            if not snapshot.exists:
                raise InvoiceNotFound(invoice_id)
            last = _counter_value(txn.get(COUNTER_REF))
            if last > 0 and snapshot.data.get("invoiceNumber") == last:
                txn.set(COUNTER_REF, {"value": last - 1})
            txn.delete(ref)
            return snapshot.data

        deleted = run_transaction(self.store, delete)
        logger.info(
            "invoice_deleted",
            extra={"invoice_id": invoice_id, "invoice_number": deleted.get("invoiceNumber")},
        )
        return {"id": invoice_id, **deleted}

    # Product list writes

    def add_product_to_invoice(self, invoice_id: str, product_data: dict[str, Any]) -> list[dict[str, Any]]:
        cleaned = validate_product_data(product_data)

        def append(products):
            product_id = next_product_id(item.get("id") for item in products)
            return [*products, build_product(cleaned, product_id)]

        return self._mutate_products(invoice_id, append)

    def update_product_in_invoice(self, invoice_id: str, index: int, product_data: dict[str, Any]) -> list[dict[str, Any]]:
        cleaned = validate_product_data(product_data)

        def replace(products):
            if not 0 <= index < len(products):
                raise ProductNotFound(invoice_id, index)
            product_id = products[index].get("id") or next_product_id(item.get("id") for item in products)
            updated = build_product(cleaned, product_id)
            return [*products[:index], updated, *products[index + 1 :]]

        return self._mutate_products(invoice_id, replace)

    def delete_product_from_invoice(self, invoice_id: str, index: int) -> list[dict[str, Any]]:
        # An index outside the list leaves it unchanged.
        return self._mutate_products(
            invoice_id,
            lambda products: [item for position, item in enumerate(products) if position != index],
        )

    # Bulk operations

    def backup_invoices(self) -> str:
        records = [{"id": snapshot.ref.doc_id, **snapshot.data} for snapshot in self.store.list_documents(INVOICES)]
        return json.dumps(records, ensure_ascii=False, indent=2)

    def restore_invoices(self, payload) -> int:
        """Upsert every record of a backup at its original id.

        The counter is left as it is, so restoring invoices numbered above it
        leaves it behind until it is fixed by hand.
        """
        records = self._parse_backup(payload)
        writes = []
        for position, record in enumerate(records):
            self._check_backup_record(position, record)
            fields = {key: value for key, value in record.items() if key != "id"}
            writes.append(Write(invoice_ref(record["id"]), SET, fields))

        self.store.batch(writes)
        logger.info("invoices_restored", extra={"count": len(writes)})
        return len(writes)

    def delete_all_invoices(self) -> int:
        writes = [Write(snapshot.ref, DELETE) for snapshot in self.store.list_documents(INVOICES)]
        count = len(writes)
        writes.append(Write(COUNTER_REF, SET, {"value": 0}))
        self.store.batch(writes)
        logger.warning("invoices_purged", extra={"count": count})
        return count

    # Helpers

    def _prepare_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        fields = {key: value for key, value in (data or {}).items() if key != "id"}
        if "products" in fields:
            fields["products"] = normalize_products(fields["products"])
        return fields

    def _patch(self, invoice_id: str, fields: dict[str, Any]) -> None:
        try:
            self.store.update(invoice_ref(invoice_id), fields)
        except DocumentNotFound as exc:
            raise InvoiceNotFound(invoice_id) from exc

    def _mutate_products(self, invoice_id: str, mutate: Callable[[list], list]) -> list[dict[str, Any]]:
        ref = invoice_ref(invoice_id)

        def next_products(snapshot) -> list[dict[str, Any]]:
            if not snapshot.exists:
                raise InvoiceNotFound(invoice_id)
            return mutate(list(snapshot.data.get("products") or []))

        if self.strict_product_writes:

            def apply(txn: Transaction) -> list[dict[str, Any]]:
                products = next_products(txn.get(ref))
                txn.update(ref, {"products": products})
                return products

            return run_transaction(self.store, apply)

        # Last writer wins: the list is written back without a version check.
        products = next_products(self.store.read(ref))
        self._patch(invoice_id, {"products": products})
        return products

    @staticmethod
    def _check_backup_record(position: int, record) -> None:
        """Reject a record that reads could not serve; valid records are stored verbatim."""
        if not isinstance(record, dict):
            problem = "is not an object"
        elif not isinstance(record.get("id"), str) or not record["id"].strip():
            problem = "has no id"
        elif not _is_positive_int(record.get("invoiceNumber")):
            problem = "needs a positive integer invoiceNumber"
        elif "products" in record and (
            not isinstance(record["products"], list) or not all(_is_stored_product(item) for item in record["products"])
        ):
            problem = "needs products as a list of objects with numeric amounts"
        else:
            return
        raise LedgerValidationError(
            "Backup payload contains an invalid record.",
            errors={"payload": [f"Record {position} {problem}."]},
        )

    @staticmethod
    def _parse_backup(payload) -> list:
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise LedgerValidationError("Backup payload must be UTF-8 encoded JSON.") from exc
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise LedgerValidationError("Backup payload is not valid JSON.", errors={"payload": [str(exc)]}) from exc
        if not isinstance(payload, list):
            raise LedgerValidationError("Backup payload must be a JSON array.", errors={"payload": ["Expected a list of invoices."]})
        return payload
