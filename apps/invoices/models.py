import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.invoices.schedules import ScheduleStatus


def default_currency():
    return getattr(settings, "DEFAULT_CURRENCY", "USD")


class InvoiceStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    SENT = "sent", "Sent"
    ACCEPTED = "accepted", "Accepted"
    PAID = "paid", "Paid"


class ContractStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"


class Invoice(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=50, blank=True)
    client = models.ForeignKey("clients.Client", on_delete=models.PROTECT, related_name="invoices")
    company = models.ForeignKey("clients.Company", null=True, blank=True, on_delete=models.SET_NULL, related_name="invoices")
    job = models.ForeignKey("clients.Job", null=True, blank=True, on_delete=models.SET_NULL, related_name="invoices")
    date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    shooting_date = models.DateField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=InvoiceStatus.choices, default=InvoiceStatus.DRAFT)
    contract_status = models.CharField(max_length=20, choices=ContractStatus.choices, default=ContractStatus.PENDING)
    currency = models.CharField(max_length=3, default=default_currency)
    notes = models.TextField(blank=True)
    contract_terms = models.TextField(blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    pdf_url = models.CharField(max_length=500, blank=True)
    invoice_accepted_at = models.DateTimeField(null=True, blank=True)
    contract_accepted_at = models.DateTimeField(null=True, blank=True)
    contract_accepted_by = models.CharField(max_length=255, blank=True)
    created_by = models.ForeignKey("accounts.User", null=True, blank=True, on_delete=models.SET_NULL, related_name="invoices")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-date", "-created_at"]
        indexes = [
            models.Index(fields=["number"], name="invoice_number_idx"),
            models.Index(fields=["status", "date"], name="invoice_status_date_idx"),
        ]

    def __str__(self):
        return self.number or str(self.id)


class InvoiceItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField(default=0)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("1.00"))
    # Negative rates are discount lines.
    rate = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        ordering = ["position", "id"]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=0), name="invoice_item_quantity_non_negative"),
        ]

    @property
    def amount(self):
        return (self.quantity * self.rate).quantize(Decimal("0.01"))

    def __str__(self):
        return self.name


class PaymentSchedule(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="payment_schedules")
    position = models.PositiveIntegerField(default=0)
    description = models.CharField(max_length=255, blank=True)
    is_auto_description = models.BooleanField(default=True)
    due_date = models.DateField(null=True, blank=True)
    percentage = models.DecimalField(max_digits=9, decimal_places=4, default=Decimal("0.0000"))
    amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=20, choices=ScheduleStatus.choices, default=ScheduleStatus.UNPAID)
    payment_date = models.DateField(null=True, blank=True)

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["invoice", "position"], name="schedule_invoice_pos_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(percentage__gte=0) & Q(percentage__lte=100),
                name="schedule_percentage_range",
            ),
        ]

    def __str__(self):
        return f"{self.invoice} - {self.description}"
