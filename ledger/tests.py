import json
import random
import tempfile
import threading
from datetime import date
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from core.models import AuditLog
from ledger.exceptions import (
    DocumentNotFound,
    InvoiceNotFound,
    LedgerValidationError,
    ProductNotFound,
    TransactionConflict,
)
from ledger.invoices import COUNTER_REF, InvoiceLedger, invoice_ref, invoice_totals, next_product_id
from ledger.models import Document, InvoiceState, PaymentType
from ledger.store import (
    DELETE,
    SET,
    UPDATE,
    DjangoDocumentStore,
    DocumentRef,
    InMemoryDocumentStore,
    Transaction,
    Write,
    get_document_store,
    run_transaction,
)
from ledger.suggestions import (
    COLORS,
    NAMES,
    add_suggestion,
    complete,
    delete_suggestion,
    filter_suggestions,
    get_suggestions,
)

COTTON = {"name": "Cotton", "color": "Red", "price": 10, "quantity": 2, "meter": 5}


def failing_completer(partial, candidates):
    raise RuntimeError("completion service unavailable")


def reversed_completer(partial, candidates):
    return list(reversed(candidates)) + ["not-a-candidate"]


class HookStore(InMemoryDocumentStore):
    """Runs a one-shot callback right after a chosen document is read."""

    def __init__(self):
        super().__init__()
        self.hooks = {}

    def read(self, ref):
        snapshot = super().read(ref)
        hook = self.hooks.pop(ref, None)
        if hook is not None:
            hook()
        return snapshot


class BarrierStore(InMemoryDocumentStore):
    """Holds each thread's first counter read until every thread has made it."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)
        self.local = threading.local()

    def read(self, ref):
        snapshot = super().read(ref)
        if ref == COUNTER_REF and not getattr(self.local, "waited", False):
            self.local.waited = True
            self.barrier.wait()
        return snapshot


def create_with_retry(ledger, data, attempts=5):
    for _ in range(attempts):
        try:
            return ledger.create_or_update_invoice(None, data)
        except TransactionConflict:
            continue
    raise AssertionError("invoice creation kept conflicting")


class InMemoryDocumentStoreTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.ref = DocumentRef("things", "a")

    def test_versions_grow_with_every_write(self):
        self.assertFalse(self.store.read(self.ref).exists)
        self.assertEqual(self.store.read(self.ref).version, 0)

        self.store.set(self.ref, {"x": 1})
        self.store.update(self.ref, {"y": 2})

        snapshot = self.store.read(self.ref)
        self.assertEqual(snapshot.data, {"x": 1, "y": 2})
        self.assertEqual(snapshot.version, 2)

    def test_recreated_document_does_not_reuse_a_version(self):
        self.store.set(self.ref, {"x": 1})
        stale = self.store.read(self.ref)
        self.store.delete(self.ref)
        self.store.set(self.ref, {"x": 1})

        self.assertEqual(self.store.read(self.ref).version, 3)
        with self.assertRaises(TransactionConflict):
            self.store.commit([stale], [Write(self.ref, SET, {"x": 2})])

    def test_update_of_missing_document_fails(self):
        with self.assertRaises(DocumentNotFound):
            self.store.update(self.ref, {"x": 1})

    def test_failed_batch_applies_nothing(self):
        other = DocumentRef("things", "b")

        with self.assertRaises(DocumentNotFound):
            self.store.batch([Write(other, SET, {"x": 1}), Write(self.ref, UPDATE, {"x": 1})])

        self.assertIsNone(self.store.get(other))

    def test_stale_read_rejects_whole_commit(self):
        self.store.set(self.ref, {"x": 1})
        snapshot = self.store.read(self.ref)
        self.store.update(self.ref, {"x": 2})
        other = DocumentRef("things", "b")

        with self.assertRaises(TransactionConflict):
            self.store.commit([snapshot], [Write(self.ref, SET, {"x": 3}), Write(other, SET, {"y": 1})])

        self.assertEqual(self.store.get(self.ref), {"x": 2})
        self.assertIsNone(self.store.get(other))

    def test_returned_data_is_a_copy(self):
        self.store.set(self.ref, {"items": [1]})

        self.store.get(self.ref)["items"].append(2)

        self.assertEqual(self.store.get(self.ref), {"items": [1]})

    def test_transaction_requires_reads_before_writes(self):
        txn = Transaction(self.store)
        txn.set(self.ref, {"x": 1})

        with self.assertRaises(RuntimeError):
            txn.get(DocumentRef("things", "b"))

    def test_run_transaction_commits_reads_and_writes_together(self):
        def bump(txn):
            current = txn.get(self.ref)
            value = (current.data or {}).get("n", 0) + 1
            txn.set(self.ref, {"n": value})
            return value

        self.assertEqual(run_transaction(self.store, bump), 1)
        self.assertEqual(run_transaction(self.store, bump), 2)

    def test_list_documents_only_returns_collection(self):
        self.store.set(DocumentRef("things", "b"), {"x": 2})
        self.store.set(self.ref, {"x": 1})
        self.store.set(DocumentRef("others", "c"), {"x": 3})

        ids = [snapshot.ref.doc_id for snapshot in self.store.list_documents("things")]

        self.assertEqual(ids, ["a", "b"])

    @override_settings(LEDGER_DOCUMENT_STORE="ledger.store.InMemoryDocumentStore")
    def test_configured_store_is_a_cached_singleton(self):
        get_document_store.cache_clear()
        self.addCleanup(get_document_store.cache_clear)

        store = get_document_store()

        self.assertIsInstance(store, InMemoryDocumentStore)
        self.assertIs(get_document_store(), store)


class InvoiceNumberingTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.ledger = InvoiceLedger(self.store)

    def create(self, **fields):
        data = {"customerName": "Nour Textiles", "date": "2026-10-19", "products": [dict(COTTON)], **fields}
        return self.ledger.create_or_update_invoice(None, data)

    def test_numbers_are_assigned_in_sequence(self):
        numbers = [self.create()["invoiceNumber"] for _ in range(3)]

        self.assertEqual(numbers, [1, 2, 3])
        self.assertEqual(self.ledger.last_invoice_number(), 3)

    def test_new_invoice_gets_draft_defaults_and_no_stored_id(self):
        invoice = self.create(userId="user-1", id="client-id", invoiceNumber=99)

        self.assertNotEqual(invoice["id"], "client-id")
        self.assertEqual(invoice["invoiceNumber"], 1)
        self.assertEqual(invoice["state"], InvoiceState.DELIVERY_NOTE)
        self.assertEqual(invoice["paymentType"], PaymentType.CASH)
        self.assertEqual(invoice["discount"], 0)
        self.assertFalse(invoice["isCompleted"])
        self.assertFalse(invoice["isTransfer"])
        self.assertEqual(invoice["userId"], "user-1")
        self.assertNotIn("id", self.store.get(invoice_ref(invoice["id"])))

    def test_new_draft_is_zero_valued(self):
        draft = self.ledger.new_draft("user-1", today=date(2026, 10, 19))

        self.assertEqual(draft["id"], "")
        self.assertEqual(draft["invoiceNumber"], 0)
        self.assertEqual(draft["date"], "2026-10-19")
        self.assertEqual(draft["products"], [])
        self.assertEqual(self.ledger.list_invoices(), [])

    def test_deleting_last_invoice_gives_its_number_back(self):
        first, second, third = self.create(), self.create(), self.create()

        self.ledger.delete_invoice(third["id"])
        self.assertEqual(self.ledger.last_invoice_number(), 2)
        self.assertEqual(self.create()["invoiceNumber"], 3)

        self.ledger.delete_invoice(second["id"])
        self.assertEqual(self.ledger.last_invoice_number(), 3)
        self.assertEqual(self.create()["invoiceNumber"], 4)
        self.assertEqual(self.ledger.get_invoice(first["id"])["invoiceNumber"], 1)

    def test_delete_missing_invoice_is_not_found_and_keeps_counter(self):
        self.create()

        with self.assertRaises(InvoiceNotFound):
            self.ledger.delete_invoice("missing")

        self.assertEqual(self.ledger.last_invoice_number(), 1)

    def test_numbers_stay_distinct_after_mixed_creates_and_deletes(self):
        rng = random.Random(7)
        live = []
        for _ in range(60):
            if live and rng.random() < 0.4:
                self.ledger.delete_invoice(live.pop(rng.randrange(len(live)))["id"])
            else:
                live.append(self.create())

        numbers = [invoice["invoiceNumber"] for invoice in self.ledger.list_invoices()]
        self.assertEqual(len(numbers), len(set(numbers)))
        self.assertEqual(numbers, sorted(numbers, reverse=True))

    def test_concurrent_creation_conflicts_and_retry_takes_next_number(self):
        store = HookStore()
        ledger = InvoiceLedger(store)
        competing = {}
        store.hooks[COUNTER_REF] = lambda: competing.update(ledger.create_or_update_invoice(None, {"customerName": "B"}))

        with self.assertRaises(TransactionConflict):
            ledger.create_or_update_invoice(None, {"customerName": "A"})

        self.assertEqual(competing["invoiceNumber"], 1)
        self.assertEqual(len(ledger.list_invoices()), 1)
        self.assertEqual(ledger.create_or_update_invoice(None, {"customerName": "A"})["invoiceNumber"], 2)

    def test_simultaneous_threads_never_share_a_number(self):
        store = BarrierStore(parties=2)
        ledger = InvoiceLedger(store)
        results, errors = [], []

        def worker(name):
            try:
                results.append(create_with_retry(ledger, {"customerName": name})["invoiceNumber"])
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(name,)) for name in ("A", "B")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(results), [1, 2])
        self.assertEqual(ledger.last_invoice_number(), 2)

    def test_list_search_matches_customer_and_number(self):
        self.create(customerName="Nour Textiles")
        self.create(customerName="Cairo Fabrics")
        for _ in range(10):
            self.create(customerName="Other")

        self.assertEqual([i["customerName"] for i in self.ledger.list_invoices("nour")], ["Nour Textiles"])
        self.assertEqual({i["invoiceNumber"] for i in self.ledger.list_invoices("1")}, {12, 11, 10, 1})


class InvoiceMutationTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.ledger = InvoiceLedger(self.store)
        self.invoice = self.ledger.create_or_update_invoice(
            None,
            {"customerName": "Nour Textiles", "date": "2026-10-19", "products": [dict(COTTON)], "note": "first"},
        )
        self.invoice_id = self.invoice["id"]

    def test_update_merges_and_returns_fresh_invoice(self):
        updated = self.ledger.create_or_update_invoice(self.invoice_id, {"customerName": "Cairo Fabrics", "id": "ignored"})

        self.assertEqual(updated["id"], self.invoice_id)
        self.assertEqual(updated["customerName"], "Cairo Fabrics")
        self.assertEqual(updated["note"], "first")
        self.assertEqual(updated["invoiceNumber"], 1)
        self.assertEqual(self.ledger.last_invoice_number(), 1)

    def test_update_missing_invoice_is_not_found(self):
        with self.assertRaises(InvoiceNotFound):
            self.ledger.update_invoice("missing", {"note": "x"})

    def test_update_recomputes_product_totals(self):
        tampered = dict(COTTON, total=999)

        updated = self.ledger.update_invoice(self.invoice_id, {"products": [tampered]})

        self.assertEqual(updated["products"][0]["total"], 50)

    def test_status_and_note_are_narrow_writes(self):
        self.ledger.update_invoice_status(self.invoice_id, is_completed=True)
        self.ledger.update_invoice_note(self.invoice_id, "second")

        invoice = self.ledger.get_invoice(self.invoice_id)
        self.assertTrue(invoice["isCompleted"])
        self.assertFalse(invoice["isTransfer"])
        self.assertEqual(invoice["note"], "second")
        self.assertEqual(invoice["customerName"], "Nour Textiles")

    def test_core_does_not_enforce_the_lock(self):
        self.ledger.update_invoice_status(self.invoice_id, is_completed=True)

        updated = self.ledger.update_invoice(self.invoice_id, {"customerName": "Changed"})

        self.assertEqual(updated["customerName"], "Changed")

    def test_status_without_flags_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            self.ledger.update_invoice_status(self.invoice_id)

    def test_totals_follow_discount(self):
        invoice = self.ledger.get_invoice(self.invoice_id)
        self.assertEqual(invoice["products"][0]["total"], 50)
        self.assertEqual(invoice_totals(invoice)["final_total"], 50)

        invoice = self.ledger.update_invoice(self.invoice_id, {"discount": 20})

        totals = invoice_totals(invoice)
        self.assertEqual(totals["total"], 50)
        self.assertEqual(totals["discount"], 20)
        self.assertEqual(totals["final_total"], 30)
        self.assertEqual(totals["quantity"], 2)
        self.assertEqual(totals["meter"], 5)

    def test_totals_ignore_stored_line_totals(self):
        totals = invoice_totals({"products": [dict(COTTON, total=1)], "discount": 0})

        self.assertEqual(totals["total"], 50)

    def test_add_update_and_delete_products(self):
        products = self.ledger.add_product_to_invoice(
            self.invoice_id, {"name": "Silk", "color": "Blue", "price": 2.5, "quantity": 1, "meter": 4}
        )
        self.assertEqual([item["name"] for item in products], ["Cotton", "Silk"])
        self.assertEqual(products[1]["total"], 10)
        silk_id = products[1]["id"]

        products = self.ledger.update_product_in_invoice(
            self.invoice_id, 1, {"name": "Silk", "color": "Green", "price": 3, "quantity": 1, "meter": 4}
        )
        self.assertEqual(products[1]["id"], silk_id)
        self.assertEqual(products[1]["color"], "Green")
        self.assertEqual(products[1]["total"], 12)

        products = self.ledger.delete_product_from_invoice(self.invoice_id, 0)
        self.assertEqual([item["name"] for item in products], ["Silk"])
        self.assertEqual(self.ledger.get_invoice(self.invoice_id)["products"], products)

    def test_product_ids_are_unique_within_the_same_millisecond(self):
        with patch("ledger.invoices.time.time", return_value=1_700_000_000.0):
            self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON))
            products = self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON))

        ids = [item["id"] for item in products]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(next_product_id([5, 9], now_ms=3), 10)

    def test_invalid_product_is_rejected_before_any_write(self):
        before = self.ledger.get_invoice(self.invoice_id)
        cases = {
            "name": {"name": " "},
            "color": {"color": ""},
            "price": {"price": 0},
            "quantity": {"quantity": -1},
            "meter": {"meter": -0.5},
        }
        for field, override in cases.items():
            with self.subTest(field=field):
                with self.assertRaises(LedgerValidationError) as ctx:
                    self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, **override))
                self.assertIn(field, ctx.exception.errors)

        with self.assertRaises(LedgerValidationError) as ctx:
            self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, quantity=1.5))
        self.assertIn("quantity", ctx.exception.errors)
        self.assertEqual(self.ledger.get_invoice(self.invoice_id), before)

    def test_non_finite_amounts_are_rejected(self):
        before = self.ledger.get_invoice(self.invoice_id)
        for field in ("price", "quantity", "meter"):
            for value in (float("inf"), float("-inf"), float("nan"), "inf", "nan", "1e400"):
                with self.subTest(field=field, value=value):
                    with self.assertRaises(LedgerValidationError) as ctx:
                        self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, **{field: value}))
                    self.assertIn(field, ctx.exception.errors)

        self.assertEqual(self.ledger.get_invoice(self.invoice_id), before)
        json.loads(self.ledger.backup_invoices(), parse_constant=self.fail)

    def test_zero_quantity_and_meter_are_allowed(self):
        products = self.ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, quantity=0, meter=0))

        self.assertEqual(products[-1]["total"], 0)

    def test_update_product_out_of_range_is_not_found(self):
        with self.assertRaises(ProductNotFound):
            self.ledger.update_product_in_invoice(self.invoice_id, 5, dict(COTTON))

    def test_delete_product_out_of_range_leaves_list_unchanged(self):
        products = self.ledger.delete_product_from_invoice(self.invoice_id, 5)

        self.assertEqual(len(products), 1)

    def test_product_write_on_missing_invoice_is_not_found(self):
        with self.assertRaises(InvoiceNotFound):
            self.ledger.add_product_to_invoice("missing", dict(COTTON))


class ProductWriteModeTests(SimpleTestCase):
    def setUp(self):
        self.store = HookStore()
        invoice = InvoiceLedger(self.store).create_or_update_invoice(None, {"products": [dict(COTTON)]})
        self.invoice_id = invoice["id"]
        self.ref = invoice_ref(self.invoice_id)

    def concurrent_edit(self):
        other = InvoiceLedger(self.store)
        self.store.hooks[self.ref] = lambda: other.add_product_to_invoice(
            self.invoice_id, {"name": "Linen", "color": "White", "price": 4, "quantity": 1, "meter": 2}
        )

    def test_default_mode_is_last_writer_wins(self):
        ledger = InvoiceLedger(self.store, strict_product_writes=False)
        self.concurrent_edit()

        products = ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, name="Wool"))

        self.assertEqual([item["name"] for item in products], ["Cotton", "Wool"])
        self.assertEqual(ledger.get_invoice(self.invoice_id)["products"], products)

    def test_strict_mode_detects_concurrent_edit(self):
        ledger = InvoiceLedger(self.store, strict_product_writes=True)
        self.concurrent_edit()

        with self.assertRaises(TransactionConflict):
            ledger.add_product_to_invoice(self.invoice_id, dict(COTTON, name="Wool"))

        names = [item["name"] for item in ledger.get_invoice(self.invoice_id)["products"]]
        self.assertEqual(names, ["Cotton", "Linen"])

    @override_settings(LEDGER_STRICT_PRODUCT_WRITES=True)
    def test_strict_mode_defaults_from_settings(self):
        self.assertTrue(InvoiceLedger(self.store).strict_product_writes)


class BackupRestoreTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.ledger = InvoiceLedger(self.store)
        self.ledger.create_or_update_invoice(
            None,
            {
                "customerName": "نور للأقمشة",
                "date": "2026-10-18",
                "state": InvoiceState.RETURN_NOTE.value,
                "paymentType": PaymentType.CREDIT.value,
                "products": [dict(COTTON)],
                "discount": 5,
                "userId": "user-1",
            },
        )
        self.ledger.create_or_update_invoice(None, {"customerName": "Cairo Fabrics", "products": []})

    def test_backup_is_json_array_with_ids(self):
        content = self.ledger.backup_invoices()

        records = json.loads(content)
        self.assertEqual(len(records), 2)
        self.assertTrue(all(record["id"] for record in records))
        self.assertIn("نور للأقمشة", content)
        self.assertIn('\n  {', content)

    def test_round_trip_into_empty_store(self):
        target = InvoiceLedger(InMemoryDocumentStore())

        count = target.restore_invoices(self.ledger.backup_invoices())

        self.assertEqual(count, 2)
        self.assertEqual(target.list_invoices(), self.ledger.list_invoices())

    def test_restore_leaves_counter_alone(self):
        target = InvoiceLedger(InMemoryDocumentStore())

        target.restore_invoices(self.ledger.backup_invoices().encode("utf-8"))

        self.assertEqual(target.last_invoice_number(), 0)

    def test_restore_overwrites_existing_ids(self):
        invoice = self.ledger.list_invoices()[0]
        payload = json.dumps([dict(invoice, customerName="Restored")])

        self.ledger.restore_invoices(payload)

        self.assertEqual(self.ledger.get_invoice(invoice["id"])["customerName"], "Restored")
        self.assertEqual(len(self.ledger.list_invoices()), 2)

    def test_malformed_payloads_are_rejected_without_writes(self):
        target = InvoiceLedger(InMemoryDocumentStore())
        for payload in ("not json", '{"id": "a"}', '[{"id": "a"}, {"customerName": "no id"}]', '[{"id": ""}]', "[1]"):
            with self.subTest(payload=payload):
                with self.assertRaises(LedgerValidationError):
                    target.restore_invoices(payload)
        self.assertEqual(target.list_invoices(), [])

    def test_records_that_reads_cannot_serve_are_rejected(self):
        target = InvoiceLedger(InMemoryDocumentStore())
        records = [
            {"id": "a", "invoiceNumber": "12a"},
            {"id": "a", "invoiceNumber": 0},
            {"id": "a", "invoiceNumber": True},
            {"id": "a", "customerName": "no number"},
            {"id": "a", "invoiceNumber": 3, "products": {"name": "Cotton"}},
            {"id": "a", "invoiceNumber": 3, "products": ["Cotton"]},
            {"id": "a", "invoiceNumber": 3, "products": [dict(COTTON, price="10")]},
            {"id": "a", "invoiceNumber": 3, "products": [dict(COTTON, meter=float("nan"))]},
        ]
        valid = {"id": "b", "invoiceNumber": 4, "products": [dict(COTTON, id=1, total=50)]}
        for record in records:
            with self.subTest(record=record):
                with self.assertRaises(LedgerValidationError) as ctx:
                    target.restore_invoices([valid, record])
                self.assertIn("payload", ctx.exception.errors)

        self.assertEqual(target.list_invoices(), [])

    def test_restored_record_is_stored_verbatim(self):
        target = InvoiceLedger(InMemoryDocumentStore())
        record = {"id": "b", "invoiceNumber": 4, "products": [dict(COTTON, id=1, total=50)], "extra": "kept"}

        target.restore_invoices([record])

        self.assertEqual(target.get_invoice("b"), record)
        products = target.update_product_in_invoice("b", 0, dict(COTTON, price=3))
        self.assertEqual(products[0]["id"], 1)
        self.assertEqual(products[0]["total"], 15)

    def test_list_tolerates_non_numeric_invoice_numbers(self):
        self.ledger.store.set(invoice_ref("legacy"), {"invoiceNumber": "12a", "customerName": "Legacy"})

        invoices = self.ledger.list_invoices()

        self.assertEqual(len(invoices), 3)
        self.assertEqual(invoices[-1]["id"], "legacy")

    def test_purge_deletes_everything_and_resets_counter(self):
        self.assertEqual(self.ledger.delete_all_invoices(), 2)

        self.assertEqual(self.ledger.list_invoices(), [])
        self.assertEqual(self.ledger.last_invoice_number(), 0)
        self.assertEqual(self.ledger.create_or_update_invoice(None, {})["invoiceNumber"], 1)


class SuggestionTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()

    def test_add_is_idempotent_trimmed_and_sorted(self):
        add_suggestion(COLORS, " Red ", store=self.store)
        add_suggestion(COLORS, "Red", store=self.store)
        add_suggestion(COLORS, "Blue", store=self.store)

        self.assertEqual(get_suggestions(COLORS, store=self.store), ["Blue", "Red"])
        self.assertEqual(get_suggestions(NAMES, store=self.store), [])

    def test_blank_value_and_unknown_list_are_rejected(self):
        with self.assertRaises(LedgerValidationError):
            add_suggestion(NAMES, "   ", store=self.store)
        with self.assertRaises(LedgerValidationError):
            get_suggestions("customers", store=self.store)

    def test_delete_is_noop_when_absent(self):
        add_suggestion(NAMES, "Cotton", store=self.store)

        self.assertEqual(delete_suggestion(NAMES, "Silk", store=self.store), ["Cotton"])
        self.assertEqual(delete_suggestion(NAMES, "Cotton", store=self.store), [])

    def test_filter_is_case_insensitive_substring(self):
        self.assertEqual(filter_suggestions("TON", ["Cotton", "Silk", "Tonic"]), ["Cotton", "Tonic"])
        self.assertEqual(filter_suggestions("", ["Silk"]), ["Silk"])

    @override_settings(LEDGER_SUGGESTION_COMPLETER="ledger.tests.failing_completer")
    def test_completer_failure_falls_back_to_local_filter(self):
        add_suggestion(NAMES, "Cotton", store=self.store)
        add_suggestion(NAMES, "Silk", store=self.store)

        with self.assertLogs("ledger.suggestions", level="WARNING") as logs:
            values = complete(NAMES, "cot", store=self.store)

        self.assertEqual(values, ["Cotton"])
        self.assertTrue(any("suggestion_completer_failed" in entry for entry in logs.output))

    @override_settings(LEDGER_SUGGESTION_COMPLETER="ledger.tests.reversed_completer")
    def test_completer_results_are_limited_to_candidates(self):
        add_suggestion(NAMES, "Cotton", store=self.store)
        add_suggestion(NAMES, "Silk", store=self.store)

        self.assertEqual(complete(NAMES, "x", store=self.store), ["Silk", "Cotton"])


class DjangoDocumentStoreTests(TestCase):
    def setUp(self):
        self.store = DjangoDocumentStore()
        self.ref = DocumentRef("things", "a")

    def test_writes_are_stored_as_rows_with_versions(self):
        self.store.set(self.ref, {"x": 1})
        self.store.update(self.ref, {"y": "ثوب"})

        row = Document.objects.get(collection="things", doc_id="a")
        self.assertEqual(row.data, {"x": 1, "y": "ثوب"})
        self.assertEqual(row.version, 2)
        self.assertEqual(self.store.read(self.ref).version, 2)

    def test_interleaved_transactions_conflict(self):
        first, second = Transaction(self.store), Transaction(self.store)
        first.get(COUNTER_REF)
        second.get(COUNTER_REF)

        first.set(COUNTER_REF, {"value": 1})
        first.commit()
        second.set(COUNTER_REF, {"value": 1})

        with self.assertRaises(TransactionConflict):
            second.commit()
        self.assertEqual(self.store.get(COUNTER_REF), {"value": 1})

    def test_failed_batch_is_rolled_back(self):
        other = DocumentRef("things", "b")

        with self.assertRaises(DocumentNotFound):
            self.store.batch([Write(other, SET, {"x": 1}), Write(self.ref, UPDATE, {"x": 1})])

        self.assertFalse(Document.objects.filter(collection="things").exists())

    def test_delete_removes_row(self):
        self.store.set(self.ref, {"x": 1})
        self.store.batch([Write(self.ref, DELETE)])

        self.assertFalse(self.store.read(self.ref).exists)

    def test_ledger_numbering_on_database_store(self):
        ledger = InvoiceLedger(self.store)
        first = ledger.create_or_update_invoice(None, {"products": [dict(COTTON)]})
        second = ledger.create_or_update_invoice(None, {"products": [dict(COTTON)]})

        ledger.delete_invoice(second["id"])

        self.assertEqual(first["invoiceNumber"], 1)
        self.assertEqual(ledger.last_invoice_number(), 1)
        self.assertEqual(Document.objects.filter(collection="invoices").count(), 1)


class InvoiceApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", role="admin")
        self.deploy = user_model.objects.create_user(username="deploy", password="pass1234", role="deploy")
        self.client.force_authenticate(user=self.deploy)

    def create_invoice(self, **overrides):
        payload = {
            "customer_name": "Nour Textiles",
            "date": "2026-10-19",
            "products": [dict(COTTON)],
            **overrides,
        }
        response = self.client.post("/api/v1/invoices/", payload, format="json")
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def test_create_assigns_number_and_totals(self):
        invoice = self.create_invoice()

        self.assertEqual(invoice["invoice_number"], 1)
        self.assertEqual(invoice["user_id"], str(self.deploy.id))
        self.assertEqual(invoice["products"][0]["total"], 50)
        self.assertEqual(invoice["totals"]["final_total"], 50)
        self.assertTrue(AuditLog.objects.filter(action="invoice.create", entity_id=invoice["id"]).exists())

    def test_create_requires_customer_date_and_products(self):
        response = self.client.post("/api/v1/invoices/", {"products": []}, format="json")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(set(payload["errors"]), {"customer_name", "date", "products"})

    def test_create_rejects_non_positive_price(self):
        response = self.client.post(
            "/api/v1/invoices/",
            {"customer_name": "Nour", "date": "2026-10-19", "products": [dict(COTTON, price=0)]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Document.objects.filter(collection="invoices").count(), 0)

    def test_list_is_paginated_newest_first_and_searchable(self):
        self.create_invoice(customer_name="Nour Textiles")
        self.create_invoice(customer_name="Cairo Fabrics")

        response = self.client.get("/api/v1/invoices/")
        search = self.client.get("/api/v1/invoices/", {"search": "cairo"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(sorted(response.json().keys()), ["count", "next", "previous", "results"])
        self.assertEqual([item["invoice_number"] for item in response.json()["results"]], [2, 1])
        self.assertEqual([item["customer_name"] for item in search.json()["results"]], ["Cairo Fabrics"])

    def test_draft_is_not_persisted(self):
        response = self.client.get("/api/v1/invoices/draft/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["id"], "")
        self.assertEqual(response.json()["invoice_number"], 0)
        self.assertEqual(Document.objects.count(), 0)

    def test_retrieve_missing_invoice_is_not_found(self):
        response = self.client.get("/api/v1/invoices/missing/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_locked_invoice_rejects_edits_until_unlocked(self):
        invoice = self.create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/"
        self.client.post(f"{url}status/", {"is_completed": True}, format="json")

        locked_patch = self.client.patch(url, {"customer_name": "Changed"}, format="json")
        locked_product = self.client.post(f"{url}products/", dict(COTTON), format="json")
        locked_transfer = self.client.post(f"{url}status/", {"is_transfer": True}, format="json")

        self.assertEqual(locked_patch.status_code, 400)
        self.assertEqual(locked_product.status_code, 400)
        self.assertEqual(locked_transfer.status_code, 400)

        unlock = self.client.post(f"{url}status/", {"is_completed": False, "is_transfer": True}, format="json")
        self.assertEqual(unlock.status_code, 200)
        self.assertFalse(unlock.json()["is_completed"])
        self.assertTrue(unlock.json()["is_transfer"])

        response = self.client.patch(url, {"customer_name": "Changed"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["customer_name"], "Changed")
        self.assertTrue(AuditLog.objects.filter(action="invoice.update", entity_id=invoice["id"]).exists())

    def test_only_admin_can_change_invoice_number(self):
        invoice = self.create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/"

        denied = self.client.patch(url, {"invoice_number": 7}, format="json")
        self.client.force_authenticate(user=self.admin)
        allowed = self.client.patch(url, {"invoice_number": 7}, format="json")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["invoice_number"], 7)

    def test_only_admin_can_delete_and_counter_is_reconciled(self):
        self.create_invoice()
        invoice = self.create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/"

        denied = self.client.delete(url)
        self.client.force_authenticate(user=self.admin)
        deleted = self.client.delete(url)

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(InvoiceLedger().last_invoice_number(), 1)
        self.assertTrue(AuditLog.objects.filter(action="invoice.delete", entity_id=invoice["id"]).exists())
        self.assertEqual(self.create_invoice()["invoice_number"], 2)

    def test_note_and_totals_endpoints(self):
        invoice = self.create_invoice(discount=20)
        url = f"/api/v1/invoices/{invoice['id']}/"

        note = self.client.post(f"{url}note/", {"note": "deliver friday"}, format="json")
        totals = self.client.get(f"{url}totals/")

        self.assertEqual(note.status_code, 200)
        self.assertEqual(note.json()["note"], "deliver friday")
        self.assertEqual(totals.json(), {"quantity": 2, "meter": 5.0, "total": 50.0, "discount": 20.0, "final_total": 30.0})

    def test_product_endpoints(self):
        invoice = self.create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/products/"

        added = self.client.post(url, {"name": "Silk", "color": "Blue", "price": 3, "quantity": 1, "meter": 2}, format="json")
        updated = self.client.put(f"{url}1/", {"name": "Silk", "color": "Blue", "price": 4, "quantity": 1, "meter": 2}, format="json")
        missing = self.client.put(f"{url}9/", dict(COTTON), format="json")
        denied = self.client.delete(f"{url}0/")
        self.client.force_authenticate(user=self.admin)
        deleted = self.client.delete(f"{url}0/")

        self.assertEqual(added.status_code, 201)
        self.assertEqual(len(added.json()), 2)
        self.assertEqual(updated.json()[1]["total"], 8)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual([item["name"] for item in deleted.json()], ["Silk"])

    def test_locked_invoice_rejects_note_and_delete(self):
        invoice = self.create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/"
        self.client.post(f"{url}status/", {"is_completed": True}, format="json")

        note = self.client.post(f"{url}note/", {"note": "changed"}, format="json")
        self.client.force_authenticate(user=self.admin)
        deleted = self.client.delete(url)
        product_deleted = self.client.delete(f"{url}products/0/")

        self.assertEqual(note.status_code, 400)
        self.assertIn("is_completed", note.json()["errors"])
        self.assertEqual(deleted.status_code, 400)
        self.assertEqual(product_deleted.status_code, 400)
        stored = InvoiceLedger().get_invoice(invoice["id"])
        self.assertEqual(stored["note"], "")
        self.assertEqual(len(stored["products"]), 1)
        self.assertEqual(InvoiceLedger().last_invoice_number(), 1)

    def test_restored_bad_invoice_number_is_rejected_and_list_keeps_working(self):
        self.create_invoice()
        self.client.force_authenticate(user=self.admin)

        restore = self.client.post(
            "/api/v1/admin/invoices/restore/",
            {"payload": json.dumps([{"id": "a", "invoiceNumber": "12a"}])},
            format="json",
        )
        listed = self.client.get("/api/v1/invoices/")

        self.assertEqual(restore.status_code, 400)
        self.assertIn("payload", restore.json()["errors"])
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(listed.json()["count"], 1)

    def test_transaction_conflict_maps_to_409(self):
        with patch.object(InvoiceLedger, "create_or_update_invoice", side_effect=TransactionConflict()):
            response = self.client.post(
                "/api/v1/invoices/",
                {"customer_name": "Nour", "date": "2026-10-19", "products": [dict(COTTON)]},
                format="json",
            )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")


class InvoiceAdminApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", role="admin")
        self.deploy = user_model.objects.create_user(username="deploy", password="pass1234", role="deploy")
        self.ledger = InvoiceLedger()
        self.ledger.create_or_update_invoice(None, {"customerName": "Nour", "products": [dict(COTTON)]})
        self.client.force_authenticate(user=self.admin)

    def test_bulk_endpoints_are_admin_only(self):
        self.client.force_authenticate(user=self.deploy)

        self.assertEqual(self.client.get("/api/v1/admin/invoices/backup/").status_code, 403)
        self.assertEqual(self.client.post("/api/v1/admin/invoices/restore/", {"payload": "[]"}).status_code, 403)
        self.assertEqual(self.client.post("/api/v1/admin/invoices/purge/").status_code, 403)

    def test_backup_download_and_restore_payload(self):
        backup = self.client.get("/api/v1/admin/invoices/backup/")
        self.assertEqual(backup.status_code, 200)
        self.assertIn("attachment;", backup["Content-Disposition"])
        content = backup.content.decode("utf-8")

        purge = self.client.post("/api/v1/admin/invoices/purge/")
        self.assertEqual(purge.json(), {"deleted": 1})

        restore = self.client.post("/api/v1/admin/invoices/restore/", {"payload": content}, format="json")
        self.assertEqual(restore.json(), {"restored": 1})
        self.assertEqual(json.loads(self.ledger.backup_invoices()), json.loads(content))
        self.assertEqual(self.ledger.last_invoice_number(), 0)
        self.assertTrue(AuditLog.objects.filter(action="invoice.restore").exists())
        self.assertTrue(AuditLog.objects.filter(action="invoice.purge").exists())

    def test_restore_accepts_uploaded_file(self):
        content = self.ledger.backup_invoices().encode("utf-8")
        self.ledger.delete_all_invoices()
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "backup.json"
            path.write_bytes(content)
            with path.open("rb") as upload:
                response = self.client.post("/api/v1/admin/invoices/restore/", {"file": upload}, format="multipart")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"restored": 1})

    def test_restore_rejects_malformed_payload(self):
        response = self.client.post("/api/v1/admin/invoices/restore/", {"payload": "{not json"}, format="json")
        empty = self.client.post("/api/v1/admin/invoices/restore/", {}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("payload", response.json()["errors"])
        self.assertEqual(empty.status_code, 400)


class SuggestionApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", role="admin")
        self.deploy = user_model.objects.create_user(username="deploy", password="pass1234", role="deploy")

    def test_admin_manages_and_everyone_reads(self):
        self.client.force_authenticate(user=self.admin)
        self.client.post("/api/v1/suggestions/colors/", {"value": "Red"}, format="json")
        added = self.client.post("/api/v1/suggestions/colors/", {"value": "Blue"}, format="json")
        self.assertEqual(added.status_code, 201)

        self.client.force_authenticate(user=self.deploy)
        listed = self.client.get("/api/v1/suggestions/colors/")
        completed = self.client.get("/api/v1/suggestions/colors/", {"q": "re"})
        denied = self.client.post("/api/v1/suggestions/colors/", {"value": "Green"}, format="json")

        self.assertEqual(listed.json(), {"list_id": "colors", "values": ["Blue", "Red"]})
        self.assertEqual(completed.json()["values"], ["Red"])
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.admin)
        removed = self.client.delete("/api/v1/suggestions/colors/?value=Red")
        self.assertEqual(removed.json()["values"], ["Blue"])

    def test_unknown_list_is_a_validation_error(self):
        self.client.force_authenticate(user=self.deploy)

        response = self.client.get("/api/v1/suggestions/customers/")

        self.assertEqual(response.status_code, 400)
        self.assertIn("list_id", response.json()["errors"])


class ManagementCommandTests(TestCase):
    def setUp(self):
        self.ledger = InvoiceLedger()
        self.ledger.create_or_update_invoice(None, {"customerName": "Nour", "products": [dict(COTTON)]})

    def test_backup_then_restore_through_commands(self):
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "backup.json"
            call_command("backup_invoices", output=str(path), stderr=StringIO())
            self.ledger.delete_all_invoices()

            out = StringIO()
            call_command("restore_invoices", str(path), stdout=out)

        self.assertIn("Restored 1 invoices.", out.getvalue())
        self.assertEqual(self.ledger.list_invoices()[0]["customerName"], "Nour")

    def test_backup_writes_to_stdout(self):
        out = StringIO()

        call_command("backup_invoices", stdout=out)

        self.assertEqual(json.loads(out.getvalue())[0]["customerName"], "Nour")
