import csv
import logging

from django.db import transaction
from django.db.models import F, Q
from django.http import HttpResponse
from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.generics import get_object_or_404
from rest_framework.response import Response

from apps.audit.services import history_for, record_audit, serialize_entry
from apps.common.exceptions import error_response
from apps.common.permissions import RolePermission, has_capability
from apps.invoices.models import ContractStatus, Invoice, InvoiceStatus, PaymentSchedule
from apps.invoices.schedules import ScheduleError, ScheduleStatus
from apps.invoices.serializers import (
    AcceptInvoiceSerializer,
    InvoiceSerializer,
    PaymentDateSerializer,
    PdfExportSerializer,
    ScheduleAddSerializer,
    ScheduleCommandSerializer,
)
from apps.invoices.services import (
    InvoiceValidationError,
    PdfExportError,
    PdfExportOptions,
    build_engine,
    export_invoice_pdf,
    initial_schedules,
    invoice_total,
    load_schedules,
    next_invoice_number,
    payment_row,
    reconcile_invoice_total,
    replace_items,
    save_schedules,
    schedule_payload,
    validate_invoice,
)

logger = logging.getLogger(__name__)

SCHEDULE_ITEM_PATH = r"schedule/(?P<schedule_id>[^/.]+)"


class InvoiceViewSet(viewsets.ModelViewSet):
    queryset = Invoice.objects.select_related("client", "company", "job").prefetch_related("items", "payment_schedules")
    serializer_class = InvoiceSerializer
    permission_classes = [RolePermission]
    # Schedule mutations only need read access here; the engine itself rejects
    # them when the caller lacks "schedules.manage".
    capability_map = {
        "list": ["invoices.view"],
        "retrieve": ["invoices.view"],
        "create": ["invoices.manage"],
        "update": ["invoices.manage"],
        "partial_update": ["invoices.manage"],
        "destroy": ["invoices.manage"],
        "schedule": ["invoices.view"],
        "add_schedule": ["invoices.view"],
        "schedule_item": ["invoices.view"],
        "remove_schedule": ["invoices.view"],
        "set_payment_date": ["invoices.view"],
        "validate": ["invoices.view"],
        "history": ["invoices.view"],
        "accept": ["invoices.manage"],
        "pdf": ["invoices.export"],
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("client"):
            queryset = queryset.filter(client_id=params["client"])
        if params.get("company"):
            queryset = queryset.filter(company_id=params["company"])
        if params.get("job"):
            queryset = queryset.filter(job_id=params["job"])
        if params.get("date_from"):
            queryset = queryset.filter(date__gte=params["date_from"])
        if params.get("date_to"):
            queryset = queryset.filter(date__lte=params["date_to"])
        if params.get("q"):
            query = params["q"]
            queryset = queryset.filter(Q(number__icontains=query) | Q(client__name__icontains=query))
        return queryset

    def _fresh(self, invoice):
        return self.get_serializer(self.get_queryset().get(pk=invoice.pk)).data

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        items = data.pop("items")
        schedules_data = data.pop("payment_schedules", None)

        try:
            with transaction.atomic():
                invoice = Invoice(created_by=request.user, **data)
                if not invoice.number.strip():
                    invoice.number = next_invoice_number()
                invoice.amount = invoice_total(items)
                schedules = initial_schedules(invoice, schedules_data)
                validate_invoice(invoice.number, items, schedules)
                invoice.save()
                replace_items(invoice, items)
                save_schedules(invoice, schedules)
                record_audit(
                    actor=request.user,
                    action="invoices.create",
                    entity_type="invoice",
                    entity_id=invoice.id,
                    payload={"number": invoice.number, "amount": str(invoice.amount), "schedules": len(schedules)},
                )
        except InvoiceValidationError as exc:
            return error_response(exc)

        return Response(self._fresh(invoice), status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        instance = self.get_object()
        serializer = self.get_serializer(instance, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        items = data.pop("items", None)

        # Items, total and schedules change together or not at all.
        try:
            with transaction.atomic():
                invoice = Invoice.objects.select_for_update().get(pk=instance.pk)
                before = {"number": invoice.number, "amount": str(invoice.amount)}
                for name, value in data.items():
                    setattr(invoice, name, value)
                notices = ()
                if items is not None:
                    replace_items(invoice, items)
                    new_total = invoice_total(items)
                    if new_total != invoice.amount:
                        notices = reconcile_invoice_total(invoice, new_total).notices
                else:
                    items = list(invoice.items.all())
                validate_invoice(invoice.number, items, load_schedules(invoice))
                invoice.pdf_url = ""
                invoice.save()
                record_audit(
                    actor=request.user,
                    action="invoices.update",
                    entity_type="invoice",
                    entity_id=invoice.id,
                    payload={"before": before, "after": {"number": invoice.number, "amount": str(invoice.amount)}},
                )
        except (ScheduleError, InvoiceValidationError) as exc:
            return error_response(exc)

        payload = self._fresh(invoice)
        payload["notices"] = list(notices)
        return Response(payload)

    def perform_destroy(self, instance):
        record_audit(
            actor=self.request.user,
            action="invoices.delete",
            entity_type="invoice",
            entity_id=instance.id,
            payload={"number": instance.number, "amount": str(instance.amount)},
        )
        super().perform_destroy(instance)

    # -- payment schedule -----------------------------------------------

    def _apply_schedule_operation(self, request, pk, audit_action, operation, payload):
        editable = has_capability(request.user, "schedules.manage")
        try:
            with transaction.atomic():
                invoice = get_object_or_404(Invoice.objects.select_for_update(), pk=pk)
                outcome = operation(build_engine(invoice, editable=editable))
                schedules = save_schedules(invoice, outcome.schedules)
                Invoice.objects.filter(pk=invoice.pk).update(pdf_url="", updated_at=timezone.now())
                record_audit(
                    actor=request.user,
                    action=f"invoices.{audit_action}",
                    entity_type="invoice",
                    entity_id=invoice.id,
                    payload=payload,
                )
        except ScheduleError as exc:
            logger.info("Schedule %s rejected for invoice %s: %s", audit_action, pk, exc.code)
            return error_response(exc)

        return Response(schedule_payload(schedules, invoice.currency, outcome.notices, editable=editable))

    @action(detail=True, methods=["get"])
    def schedule(self, request, pk=None):
        invoice = self.get_object()
        editable = has_capability(request.user, "schedules.manage")
        return Response(schedule_payload(load_schedules(invoice), invoice.currency, editable=editable))

    @schedule.mapping.post
    def add_schedule(self, request, pk=None):
        serializer = ScheduleAddSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        return self._apply_schedule_operation(
            request,
            pk,
            "schedule.add",
            lambda engine: engine.add(
                data["due_date"],
                percentage=data.get("percentage"),
                amount=data.get("amount"),
                status=data["status"],
            ),
            {key: str(value) for key, value in data.items() if value is not None},
        )

    @action(detail=True, methods=["patch"], url_path=SCHEDULE_ITEM_PATH)
    def schedule_item(self, request, pk=None, schedule_id=None):
        serializer = ScheduleCommandSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        command = serializer.validated_data["command"]
        return self._apply_schedule_operation(
            request,
            pk,
            "schedule.update",
            lambda engine: engine.update(schedule_id, command),
            {"schedule_id": schedule_id, "kind": serializer.validated_data["kind"], "value": str(command.value)},
        )

    @schedule_item.mapping.delete
    def remove_schedule(self, request, pk=None, schedule_id=None):
        return self._apply_schedule_operation(
            request,
            pk,
            "schedule.remove",
            lambda engine: engine.remove(schedule_id),
            {"schedule_id": schedule_id},
        )

    @action(detail=True, methods=["post"], url_path=f"{SCHEDULE_ITEM_PATH}/payment-date")
    def set_payment_date(self, request, pk=None, schedule_id=None):
        serializer = PaymentDateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment_date = serializer.validated_data["payment_date"]
        return self._apply_schedule_operation(
            request,
            pk,
            "schedule.payment_date",
            lambda engine: engine.set_payment_date(schedule_id, payment_date),
            {"schedule_id": schedule_id, "payment_date": str(payment_date)},
        )

    # -- invoice lifecycle ----------------------------------------------

    @action(detail=True, methods=["get"])
    def validate(self, request, pk=None):
        invoice = self.get_object()
        try:
            validate_invoice(invoice.number, list(invoice.items.all()), load_schedules(invoice))
        except InvoiceValidationError as exc:
            return Response({"is_valid": False, "code": exc.code, "detail": exc.detail, "fields": exc.fields})
        return Response({"is_valid": True, "code": None, "detail": "", "fields": {}})

    @action(detail=True, methods=["post"])
    def accept(self, request, pk=None):
        serializer = AcceptInvoiceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        with transaction.atomic():
            invoice = get_object_or_404(Invoice.objects.select_for_update(), pk=pk)
            now = timezone.now()
            if data["accept_invoice"] and invoice.invoice_accepted_at is None:
                invoice.invoice_accepted_at = now
                if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.SENT):
                    invoice.status = InvoiceStatus.ACCEPTED
            if data["accept_contract"] and invoice.contract_accepted_at is None:
                invoice.contract_accepted_at = now
                invoice.contract_accepted_by = data["signer_name"].strip()
                invoice.contract_status = ContractStatus.ACCEPTED
            invoice.pdf_url = ""
            invoice.save()
            record_audit(
                actor=request.user,
                action="invoices.accept",
                entity_type="invoice",
                entity_id=invoice.id,
                payload={
                    "invoice": data["accept_invoice"],
                    "contract": data["accept_contract"],
                    "signer_name": data.get("signer_name", ""),
                },
            )

        return Response(self._fresh(invoice))

    @action(detail=True, methods=["post"])
    def pdf(self, request, pk=None):
        serializer = PdfExportSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        options = PdfExportOptions(**serializer.validated_data)

        try:
            result = export_invoice_pdf(pk, options)
        except PdfExportError as exc:
            return Response(exc.as_dict(debug=options.debug_mode), status=exc.status_code)

        if result.regenerated:
            record_audit(
                actor=request.user,
                action="invoices.export_pdf",
                entity_type="invoice",
                entity_id=pk,
                payload={"size": result.size},
            )
        return Response(result.as_dict(debug=options.debug_mode))

    @action(detail=True, methods=["get"])
    def history(self, request, pk=None):
        invoice = self.get_object()
        return Response([serialize_entry(entry) for entry in history_for("invoice", invoice.id)])


class PaymentViewSet(viewsets.GenericViewSet):
    """Installments across all invoices, soonest due first."""

    queryset = PaymentSchedule.objects.select_related("invoice", "invoice__client", "invoice__job").order_by(
        F("due_date").asc(nulls_last=True), "invoice__number", "position"
    )
    permission_classes = [RolePermission]
    capability_map = {
        "list": ["invoices.view"],
        "export": ["invoices.export"],
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("client"):
            queryset = queryset.filter(invoice__client_id=params["client"])
        if params.get("date_from"):
            queryset = queryset.filter(due_date__gte=params["date_from"])
        if params.get("date_to"):
            queryset = queryset.filter(due_date__lte=params["date_to"])
        if params.get("q"):
            query = params["q"]
            queryset = queryset.filter(
                Q(invoice__number__icontains=query)
                | Q(invoice__client__name__icontains=query)
                | Q(invoice__job__title__icontains=query)
                | Q(description__icontains=query)
            )
        return queryset

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response([payment_row(row) for row in page])

    @action(detail=False, methods=["get"])
    def export(self, request):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = f'attachment; filename="payments_{timezone.localdate():%Y%m%d}.csv"'
        writer = csv.writer(response)
        writer.writerow(["Status", "Due Date", "Invoice Number", "Client", "Job", "Description", "Amount", "Currency"])
        for row in self.get_queryset():
            payment = payment_row(row)
            writer.writerow(
                [
                    ScheduleStatus(payment["status_code"]).label,
                    payment["due_on"].isoformat() if payment["due_on"] else "",
                    payment["invoice_number"],
                    payment["client_name"],
                    payment["job_title"] or "N/A",
                    payment["description"],
                    payment["amount_value"],
                    payment["currency"],
                ]
            )
        return response
