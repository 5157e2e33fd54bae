from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from ledger.exceptions import LedgerValidationError
from ledger.invoices import InvoiceLedger


class Command(BaseCommand):
    help = "Upsert invoices from a JSON backup file. The invoice number counter is left unchanged."

    def add_arguments(self, parser):
        parser.add_argument("path", help="Backup file produced by backup_invoices.")

    def handle(self, *args, **options):
        path = Path(options["path"])
        if not path.is_file():
            raise CommandError(f"{path} does not exist.")

        try:
            count = InvoiceLedger().restore_invoices(path.read_bytes())
        except LedgerValidationError as exc:
            raise CommandError(exc.message) from exc

        self.stdout.write(self.style.SUCCESS(f"Restored {count} invoices."))
