from pathlib import Path

from django.core.management.base import BaseCommand

from ledger.invoices import InvoiceLedger


class Command(BaseCommand):
    help = "Write every invoice as a JSON backup to stdout or to --output."

    def add_arguments(self, parser):
        parser.add_argument("--output", help="File to write the backup to.")

    def handle(self, *args, **options):
        content = InvoiceLedger().backup_invoices()
        output = options.get("output")
        if not output:
            self.stdout.write(content)
            return

        Path(output).write_text(content, encoding="utf-8")
        self.stderr.write(self.style.SUCCESS(f"Backup written to {output}"))
