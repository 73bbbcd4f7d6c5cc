from decimal import Decimal

from django.conf import settings
from rest_framework import serializers

from apps.invoices.models import Invoice, InvoiceItem
from apps.invoices.schedules import (
    ScheduleStatus,
    SetAmount,
    SetDescription,
    SetDueDate,
    SetPercentage,
    SetStatus,
    check_schedules,
)
from apps.invoices.services import invoice_total, load_schedules, serialize_schedule

AMOUNT_FIELD = Invoice._meta.get_field("amount")
MAX_INVOICE_AMOUNT = Decimal(10) ** (AMOUNT_FIELD.max_digits - AMOUNT_FIELD.decimal_places) - Decimal("0.01")


class InvoiceItemSerializer(serializers.ModelSerializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, read_only=True)

    class Meta:
        model = InvoiceItem
        fields = ["id", "position", "name", "description", "quantity", "rate", "amount"]
        read_only_fields = ["id", "position", "amount"]


class ScheduleInputSerializer(serializers.Serializer):
    description = serializers.CharField(required=False, allow_blank=True, max_length=255)
    due_date = serializers.DateField(required=False, allow_null=True)
    percentage = serializers.DecimalField(max_digits=9, decimal_places=4, min_value=0, max_value=100)
    status = serializers.ChoiceField(choices=ScheduleStatus.choices, default=ScheduleStatus.UNPAID)
    payment_date = serializers.DateField(required=False, allow_null=True)


class InvoiceSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source="client.name", read_only=True)
    company_name = serializers.CharField(source="company.name", read_only=True, default="")
    items = InvoiceItemSerializer(many=True)
    payment_schedules = ScheduleInputSerializer(many=True, required=False, write_only=True)
    schedules = serializers.SerializerMethodField()
    schedule_check = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = [
            "id",
            "number",
            "client",
            "client_name",
            "company",
            "company_name",
            "job",
            "date",
            "due_date",
            "shooting_date",
            "status",
            "contract_status",
            "currency",
            "notes",
            "contract_terms",
            "amount",
            "pdf_url",
            "invoice_accepted_at",
            "contract_accepted_at",
            "contract_accepted_by",
            "created_by",
            "created_at",
            "updated_at",
            "items",
            "payment_schedules",
            "schedules",
            "schedule_check",
        ]
        read_only_fields = [
            "id",
            "contract_status",
            "amount",
            "pdf_url",
            "invoice_accepted_at",
            "contract_accepted_at",
            "contract_accepted_by",
            "created_by",
            "created_at",
            "updated_at",
        ]
        extra_kwargs = {"currency": {"required": False}}

    def get_schedules(self, obj):
        return [serialize_schedule(schedule) for schedule in load_schedules(obj)]

    def get_schedule_check(self, obj):
        return check_schedules(load_schedules(obj)).as_dict()

    def validate_currency(self, value):
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise serializers.ValidationError("Currency must be a 3-letter ISO code.")
        return value

    def validate(self, attrs):
        client = attrs.get("client", getattr(self.instance, "client", None))
        job = attrs.get("job", getattr(self.instance, "job", None))
        if job is not None and client is not None and job.client_id != client.pk:
            raise serializers.ValidationError({"job": "Job belongs to a different client."})
        items = attrs.get("items")
        if items is not None and abs(invoice_total(items)) > MAX_INVOICE_AMOUNT:
            raise serializers.ValidationError({"items": f"Invoice total cannot exceed {MAX_INVOICE_AMOUNT:,}."})
        if self.instance is None and not attrs.get("currency"):
            company = attrs.get("company")
            attrs["currency"] = company.currency if company else settings.DEFAULT_CURRENCY
        if self.instance is not None and "payment_schedules" in attrs:
            raise serializers.ValidationError(
                {"payment_schedules": "Use the schedule endpoints to change an existing invoice's schedule."}
            )
        return attrs


class ScheduleAddSerializer(serializers.Serializer):
    due_date = serializers.DateField()
    percentage = serializers.DecimalField(max_digits=9, decimal_places=4, required=False, allow_null=True)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    status = serializers.ChoiceField(choices=ScheduleStatus.choices, default=ScheduleStatus.UNPAID)

    def validate(self, attrs):
        if attrs.get("percentage") is not None and attrs.get("amount") is not None:
            raise serializers.ValidationError(
                {"amount": "Send either a percentage or an amount, not both."}
            )
        return attrs


class ScheduleCommandSerializer(serializers.Serializer):
    """``{"kind": ..., "value": ...}``; ``value`` is checked against the field type of its kind."""

    COMMANDS = {
        "set_amount": (SetAmount, lambda: serializers.DecimalField(max_digits=12, decimal_places=2)),
        "set_percentage": (SetPercentage, lambda: serializers.DecimalField(max_digits=9, decimal_places=4)),
        "set_status": (SetStatus, lambda: serializers.ChoiceField(choices=ScheduleStatus.choices)),
        "set_due_date": (SetDueDate, lambda: serializers.DateField(allow_null=True)),
        "set_description": (SetDescription, lambda: serializers.CharField(allow_blank=True, max_length=255)),
    }

    kind = serializers.ChoiceField(choices=sorted(COMMANDS))
    value = serializers.JSONField(allow_null=True)

    def validate(self, attrs):
        command_class, value_field = self.COMMANDS[attrs["kind"]]
        try:
            value = value_field().run_validation(attrs["value"])
        except serializers.ValidationError as exc:
            raise serializers.ValidationError({"value": exc.detail}) from exc
        attrs["command"] = command_class(value)
        return attrs


class PaymentDateSerializer(serializers.Serializer):
    payment_date = serializers.DateField(allow_null=True)


class AcceptInvoiceSerializer(serializers.Serializer):
    accept_invoice = serializers.BooleanField(default=False)
    accept_contract = serializers.BooleanField(default=False)
    signer_name = serializers.CharField(required=False, allow_blank=True, max_length=255)

    def validate(self, attrs):
        if not attrs["accept_invoice"] and not attrs["accept_contract"]:
            raise serializers.ValidationError("Nothing to accept.")
        if attrs["accept_contract"] and not attrs.get("signer_name", "").strip():
            raise serializers.ValidationError({"signer_name": "Signer name is required to accept the contract."})
        return attrs


class PdfExportSerializer(serializers.Serializer):
    force_regenerate = serializers.BooleanField(default=False)
    debug_mode = serializers.BooleanField(default=False)
    skip_size_validation = serializers.BooleanField(default=False)
    allow_large_files = serializers.BooleanField(default=False)
