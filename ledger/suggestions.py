"""Named suggestion lists (`dropdown/nametextile`, `dropdown/colors`)."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from django.conf import settings
from django.utils.module_loading import import_string

from ledger.exceptions import LedgerValidationError
from ledger.store import DocumentRef, DocumentStore, Transaction, get_document_store, run_transaction

logger = logging.getLogger(__name__)

SUGGESTIONS = "dropdown"
NAMES = "nametextile"
COLORS = "colors"
LIST_IDS = (NAMES, COLORS)


def suggestion_ref(list_id: str) -> DocumentRef:
    if list_id not in LIST_IDS:
        raise LedgerValidationError(
            f"Unknown suggestion list '{list_id}'.",
            errors={"list_id": [f"Expected one of: {', '.join(LIST_IDS)}."]},
        )
    return DocumentRef(SUGGESTIONS, list_id)


def _fields(data) -> list[str]:
    if not data:
        return []
    return [value for value in data.get("fields") or [] if isinstance(value, str)]


def filter_suggestions(partial: str, candidates: Iterable[str]) -> list[str]:
    """Case-insensitive substring match, keeping the order of `candidates`."""
    term = (partial or "").strip().lower()
    if not term:
        return list(candidates)
    return [candidate for candidate in candidates if term in candidate.lower()]


def get_completer() -> Callable[[str, list[str]], Iterable[str]] | None:
    path = getattr(settings, "LEDGER_SUGGESTION_COMPLETER", None)
    if not path:
        return None
    return import_string(path)


def get_suggestions(list_id: str, store: DocumentStore | None = None) -> list[str]:
    store = store if store is not None else get_document_store()
    return sorted(set(_fields(store.get(suggestion_ref(list_id)))))


def add_suggestion(list_id: str, value: str, store: DocumentStore | None = None) -> list[str]:
    store = store if store is not None else get_document_store()
    ref = suggestion_ref(list_id)
    value = value.strip() if isinstance(value, str) else ""
    if not value:
        raise LedgerValidationError("Suggestion value may not be blank.", errors={"value": ["This field may not be blank."]})

    def union(txn: Transaction) -> list[str]:
        fields = _fields(txn.get(ref).data)
        if value not in fields:
            fields.append(value)
        txn.set(ref, {"fields": fields})
        return fields

    return sorted(run_transaction(store, union))


def delete_suggestion(list_id: str, value: str, store: DocumentStore | None = None) -> list[str]:
    store = store if store is not None else get_document_store()
    ref = suggestion_ref(list_id)

    def difference(txn: Transaction) -> list[str]:
        fields = _fields(txn.get(ref).data)
        if value in fields:
            fields = [item for item in fields if item != value]
            txn.set(ref, {"fields": fields})
        return fields

    return sorted(run_transaction(store, difference))


def complete(list_id: str, partial: str, store: DocumentStore | None = None) -> list[str]:
    """Suggestions matching `partial`.

    The configured completer is asked first; if it is missing or fails, the
    local substring filter answers instead.
    """
    candidates = get_suggestions(list_id, store=store)
    if not (partial or "").strip():
        return candidates

    try:
        completer = get_completer()
        if completer is not None:
            allowed = set(candidates)
            return [item for item in completer(partial, candidates) if item in allowed]
    except Exception:
        logger.warning("suggestion_completer_failed", exc_info=True, extra={"list_id": list_id})

    return filter_suggestions(partial, candidates)
