import json

from django.core.management.base import BaseCommand, CommandError

from apps.invoices.services import PdfExportError, PdfExportOptions, export_invoice_pdf


class Command(BaseCommand):
    help = "Render and store the PDF of one invoice"

    def add_arguments(self, parser):
        parser.add_argument("invoice_id")
        parser.add_argument("--force", action="store_true", help="Regenerate even if a PDF is already stored")
        parser.add_argument("--debug", action="store_true", help="Print the stage trace")
        parser.add_argument("--skip-size-validation", action="store_true")
        parser.add_argument("--allow-large-files", action="store_true")

    def handle(self, *args, **options):
        export_options = PdfExportOptions(
            force_regenerate=options["force"],
            debug_mode=options["debug"],
            skip_size_validation=options["skip_size_validation"],
            allow_large_files=options["allow_large_files"],
        )
        try:
            result = export_invoice_pdf(options["invoice_id"], export_options)
        except PdfExportError as exc:
            if export_options.debug_mode:
                self.stderr.write(json.dumps(exc.trace, indent=2, default=str))
            raise CommandError(f"{exc.stage}: {exc.detail}") from exc

        if export_options.debug_mode:
            self.stdout.write(json.dumps(result.trace, indent=2, default=str))
        action = "generated" if result.regenerated else "already stored"
        self.stdout.write(self.style.SUCCESS(f"{action}: {result.pdf_url}"))
