import logging
import time
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils import timezone
from django.utils.text import slugify

from apps.invoices.models import Invoice, InvoiceItem, PaymentSchedule
from apps.invoices.money import (
    CENT,
    ZERO,
    amount_from_percentage,
    quantize_amount,
    quantize_percentage,
    round_percentage,
    to_decimal,
)
from apps.invoices.pdf import InvoiceDocument, render_invoice_pdf
from apps.invoices.presentation import build_schedule_rows, schedule_row
from apps.invoices.schedules import (
    Schedule,
    ScheduleEngine,
    ScheduleStatus,
    auto_description,
    check_schedules,
    default_schedule,
    new_schedule_id,
)

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


class InvoiceValidationError(ValueError):
    status_code = 400

    def __init__(self, code, detail, fields=None):
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.fields = fields or {}


def _field(item, name):
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name)


def _quantity(item):
    quantity = _field(item, "quantity")
    return Decimal(1) if quantity is None else to_decimal(quantity)


def invoice_total(items):
    return quantize_amount(sum((_quantity(item) * to_decimal(_field(item, "rate")) for item in items), ZERO))


def check_invoice_total(total):
    """Discount lines may lower the total but never below zero."""
    if total < ZERO:
        raise InvoiceValidationError(
            "negative_total",
            "Invoice total cannot be negative",
            {"amount": str(quantize_amount(total))},
        )


def validate_invoice(number, items, schedules):
    """Raise ``InvoiceValidationError`` unless the invoice can be saved."""
    if not str(number or "").strip():
        raise InvoiceValidationError("missing_number", "Invoice number is required", {"number": ["This field is required."]})
    if not items:
        raise InvoiceValidationError("missing_items", "Please add at least one item to the invoice")
    check_invoice_total(invoice_total(items))
    check = check_schedules(schedules)
    if not check.is_valid:
        raise InvoiceValidationError(
            "invalid_schedule_total",
            f"Payment schedule percentages must total 100% (currently {round_percentage(check.total_percentage)}%)",
            {"payment_schedules": check.as_dict()},
        )


# -- schedule persistence ---------------------------------------------------


def to_schedule(row: PaymentSchedule, total) -> Schedule:
    amount = row.amount if row.amount is not None else amount_from_percentage(total, row.percentage)
    return Schedule(
        id=str(row.id),
        description=row.description,
        due_date=row.due_date,
        percentage=row.percentage,
        amount=amount,
        status=row.status,
        payment_date=row.payment_date,
        is_auto_description=row.is_auto_description,
    )


def load_schedules(invoice):
    return tuple(to_schedule(row, invoice.amount) for row in invoice.payment_schedules.all())


def build_engine(invoice, editable=True, today=None):
    return ScheduleEngine(
        load_schedules(invoice),
        invoice.amount,
        editable=editable,
        currency=invoice.currency,
        today=today or timezone.localdate(),
    )


def settle_rounding(schedules, total):
    """Round amounts to cents and give the leftover cents to the last unpaid installment."""
    settled = [replace(schedule, amount=quantize_amount(schedule.amount)) for schedule in schedules]
    unpaid = [index for index, schedule in enumerate(settled) if schedule.status == ScheduleStatus.UNPAID]
    if not unpaid or not check_schedules(settled).is_valid:
        return tuple(settled)

    remainder = quantize_amount(total) - sum((schedule.amount for schedule in settled), ZERO)
    last = settled[unpaid[-1]]
    if remainder and abs(remainder) <= CENT * len(settled) and last.amount + remainder >= ZERO:
        settled[unpaid[-1]] = replace(last, amount=last.amount + remainder)
    return tuple(settled)


def save_schedules(invoice, schedules):
    """Persist ``schedules`` as the complete schedule list of ``invoice`` and return what was stored."""
    schedules = settle_rounding(schedules, invoice.amount)
    invoice.payment_schedules.exclude(id__in=[schedule.id for schedule in schedules]).delete()
    for position, schedule in enumerate(schedules, start=1):
        PaymentSchedule.objects.update_or_create(
            id=schedule.id,
            defaults={
                "invoice": invoice,
                "position": position,
                "description": schedule.description,
                "is_auto_description": schedule.is_auto_description,
                "due_date": schedule.due_date,
                "percentage": quantize_percentage(schedule.percentage),
                "amount": quantize_amount(schedule.amount),
                "status": schedule.status,
                "payment_date": schedule.payment_date,
            },
        )
    # Drop any prefetched rows so later reads see the new list.
    getattr(invoice, "_prefetched_objects_cache", {}).pop("payment_schedules", None)
    return schedules


def serialize_schedule(schedule: Schedule):
    return {
        "id": str(schedule.id),
        "description": schedule.description,
        "is_auto_description": schedule.is_auto_description,
        "due_date": schedule.due_date,
        "percentage": str(quantize_percentage(schedule.percentage)),
        "amount": str(quantize_amount(schedule.amount)),
        "status": schedule.status,
        "payment_date": schedule.payment_date,
    }


def schedule_payload(schedules, currency, notices=(), editable=None):
    check = check_schedules(schedules)
    payload = {
        "schedules": [serialize_schedule(schedule) for schedule in schedules],
        "rows": build_schedule_rows(schedules, currency),
        "check": check.as_dict(),
        "warning": check.warning,
        "notices": list(notices),
    }
    if editable is not None:
        payload["editable"] = editable
    return payload


# -- invoice persistence ----------------------------------------------------


def replace_items(invoice, items):
    invoice.items.all().delete()
    InvoiceItem.objects.bulk_create(
        [
            InvoiceItem(
                invoice=invoice,
                position=position,
                name=item["name"],
                description=item.get("description", ""),
                quantity=item.get("quantity", 1),
                rate=item.get("rate", 0),
            )
            for position, item in enumerate(items, start=1)
        ]
    )
    getattr(invoice, "_prefetched_objects_cache", {}).pop("items", None)


def initial_schedules(invoice, schedules_data=None):
    """Schedules for a new invoice: the submitted ones, or one 100% installment."""
    if not schedules_data:
        return (default_schedule(invoice.amount, due_date=invoice.date),)

    schedules = []
    for position, data in enumerate(schedules_data, start=1):
        description = (data.get("description") or "").strip()
        schedules.append(
            Schedule(
                id=new_schedule_id(),
                description=description or auto_description(position),
                due_date=data.get("due_date"),
                percentage=to_decimal(data["percentage"]),
                amount=amount_from_percentage(invoice.amount, data["percentage"]),
                status=data.get("status", ScheduleStatus.UNPAID),
                payment_date=data.get("payment_date"),
                is_auto_description=not description,
            )
        )
    return tuple(schedules)


def reconcile_invoice_total(invoice, new_total, today=None):
    """Set the invoice total and redistribute its schedules; raises ``ScheduleError`` on paid overflow."""
    check_invoice_total(new_total)
    engine = build_engine(invoice, today=today)
    outcome = engine.reconcile(new_total)
    invoice.amount = quantize_amount(new_total)
    if outcome.changed:
        save_schedules(invoice, outcome.schedules)
    return outcome


def next_invoice_number(on_date=None):
    """Next ``yyyyMMdd-N`` number for the day, one past the highest sequence already used."""
    prefix = f"{on_date or timezone.localdate():%Y%m%d}"
    sequences = [0]
    for number in Invoice.objects.filter(number__startswith=f"{prefix}-").values_list("number", flat=True):
        suffix = number[len(prefix) + 1 :]
        if suffix.isdigit():
            sequences.append(int(suffix))
    return f"{prefix}-{max(sequences) + 1}"


# -- payments overview ------------------------------------------------------


def payment_row(row: PaymentSchedule):
    invoice = row.invoice
    schedule = to_schedule(row, invoice.amount)
    return {
        **schedule_row(schedule, invoice.currency),
        "status_code": schedule.status,
        "due_on": schedule.due_date,
        "amount_value": str(quantize_amount(schedule.amount)),
        "currency": invoice.currency,
        "invoice": str(invoice.id),
        "invoice_number": invoice.number,
        "client": str(invoice.client_id),
        "client_name": invoice.client.name,
        "job_title": invoice.job.title if invoice.job_id else "",
    }


# -- PDF export -------------------------------------------------------------


@dataclass
class PdfExportOptions:
    force_regenerate: bool = False
    debug_mode: bool = False
    skip_size_validation: bool = False
    allow_large_files: bool = False


@dataclass
class PdfExportResult:
    pdf_url: str
    regenerated: bool
    size: int | None = None
    trace: list = field(default_factory=list)

    def as_dict(self, debug=False):
        payload = {"pdf_url": self.pdf_url, "regenerated": self.regenerated}
        if debug:
            payload["debug_info"] = {"size": self.size, "stages": self.trace}
        return payload


class PdfExportError(Exception):
    def __init__(self, stage, detail, status_code=500, trace=None):
        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.status_code = status_code
        self.trace = trace or []

    def as_dict(self, debug=False):
        payload = {
            "code": "pdf_export_failed",
            "detail": self.detail,
            "error": self.detail,
            "fields": {"stage": self.stage},
        }
        if debug:
            payload["debug_info"] = {"stages": self.trace}
        return payload


class StageTracer:
    """Records timing and outcome of each export stage; the first failure stops the export."""

    def __init__(self):
        self.stages = []

    @contextmanager
    def stage(self, name):
        entry = {
            "stage": name,
            "started_at": timezone.now().isoformat(),
            "duration_ms": None,
            "status": "running",
            "message": "",
        }
        self.stages.append(entry)
        started = time.perf_counter()
        try:
            yield entry
        except PdfExportError as exc:
            entry.update(status="failed", message=exc.detail)
            exc.trace = self.stages
            logger.error("PDF export failed at stage %s: %s", name, exc.detail)
            raise
        except Exception as exc:
            entry.update(status="failed", message=str(exc))
            logger.exception("PDF export crashed at stage %s", name)
            raise PdfExportError(name, f"PDF {name} failed: {exc}", trace=self.stages) from exc
        else:
            entry["status"] = "ok"
            logger.info("PDF export stage %s ok %s", name, entry["message"])
        finally:
            entry["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)


def company_block(company):
    if company is None:
        return {}
    return {
        "name": company.name,
        "address": company.address,
        "email": company.email,
        "phone": company.phone,
        "payment_methods": company.payment_methods,
    }


def build_invoice_document(invoice, today=None) -> InvoiceDocument:
    schedules = load_schedules(invoice)
    client = invoice.client
    return InvoiceDocument(
        number=invoice.number,
        date=invoice.date,
        due_date=invoice.due_date,
        currency=invoice.currency,
        total=invoice.amount,
        items=[
            {
                "name": item.name,
                "description": item.description,
                "quantity": item.quantity,
                "rate": item.rate,
                "amount": item.amount,
            }
            for item in invoice.items.all()
        ],
        schedule_rows=build_schedule_rows(schedules, invoice.currency),
        company=company_block(invoice.company),
        client={"name": client.name, "address": client.address, "email": client.email},
        notes=invoice.notes,
        contract_terms=invoice.contract_terms,
        invoice_accepted=invoice.invoice_accepted_at is not None,
        contract_accepted=invoice.contract_accepted_at is not None,
        generated_on=today or timezone.localdate(),
    )


def check_pdf_bytes(content: bytes, options: PdfExportOptions) -> str:
    size = len(content)
    limit = settings.INVOICE_PDF_MAX_LARGE_BYTES if options.allow_large_files else settings.INVOICE_PDF_MAX_BYTES
    problems = []
    if size > limit:
        problems.append(f"PDF is too large: {size} bytes (limit {limit} bytes)")
    if size < settings.INVOICE_PDF_MIN_BYTES:
        problems.append(f"PDF is too small to be valid: {size} bytes")
    if problems and not options.skip_size_validation:
        raise PdfExportError("validate", problems[0], status_code=422)
    for problem in problems:
        logger.warning("Size validation skipped: %s", problem)
    if not content.startswith(PDF_MAGIC):
        raise PdfExportError("validate", "Generated file is not a valid PDF")
    return f"{size} bytes"


def pdf_storage_path(invoice):
    name = slugify(invoice.number) or "invoice"
    return f"{settings.INVOICE_PDF_STORAGE_PREFIX}/{invoice.id}/{name}.pdf"


def export_invoice_pdf(invoice_id, options=None, today=None) -> PdfExportResult:
    """Render, check, store and verify the PDF of one invoice.

    Stages run in order (fetch, format, render, validate, upload, verify) and the
    first failing stage raises ``PdfExportError`` carrying the full stage trace.
    """
    options = options or PdfExportOptions()
    tracer = StageTracer()

    with tracer.stage("fetch") as entry:
        try:
            invoice = (
                Invoice.objects.select_related("client", "company")
                .prefetch_related("items", "payment_schedules")
                .filter(pk=invoice_id)
                .first()
            )
        except ValidationError:
            invoice = None
        if invoice is None:
            raise PdfExportError("fetch", "Invoice not found", status_code=404)
        entry["message"] = f"invoice {invoice.number or invoice.id}"

    if invoice.pdf_url and not options.force_regenerate:
        logger.info("Reusing stored PDF for invoice %s", invoice.id)
        return PdfExportResult(pdf_url=invoice.pdf_url, regenerated=False, trace=tracer.stages)

    with tracer.stage("format") as entry:
        document = build_invoice_document(invoice, today=today)
        entry["message"] = f"{len(document.items)} item(s), {len(document.schedule_rows)} schedule row(s)"

    with tracer.stage("render") as entry:
        content = render_invoice_pdf(document)
        entry["message"] = f"{len(content)} bytes"

    with tracer.stage("validate") as entry:
        entry["message"] = check_pdf_bytes(content, options)

    with tracer.stage("upload") as entry:
        path = pdf_storage_path(invoice)
        if default_storage.exists(path):
            default_storage.delete(path)
            logger.info("Removed previous PDF %s", path)
        saved_name = default_storage.save(path, ContentFile(content))
        entry["message"] = saved_name

    with tracer.stage("verify") as entry:
        if not default_storage.exists(saved_name):
            raise PdfExportError("verify", "Uploaded PDF could not be found in storage")
        stored_size = default_storage.size(saved_name)
        if stored_size != len(content):
            raise PdfExportError("verify", f"Stored PDF size {stored_size} does not match rendered size {len(content)}")
        pdf_url = f"{default_storage.url(saved_name)}?t={int(time.time() * 1000)}"
        Invoice.objects.filter(pk=invoice.pk).update(pdf_url=pdf_url, updated_at=timezone.now())
        entry["message"] = pdf_url

    return PdfExportResult(pdf_url=pdf_url, regenerated=True, size=len(content), trace=tracer.stages)

