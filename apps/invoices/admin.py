from django.contrib import admin

from apps.invoices.models import Invoice, InvoiceItem, PaymentSchedule


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0


class PaymentScheduleInline(admin.TabularInline):
    model = PaymentSchedule
    extra = 0
    fields = ("position", "description", "due_date", "percentage", "amount", "status", "payment_date")
    readonly_fields = ("percentage", "amount")


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("number", "client", "date", "due_date", "amount", "currency", "status", "contract_status")
    list_filter = ("status", "contract_status", "currency")
    search_fields = ("number", "client__name")
    autocomplete_fields = ("client", "company", "job")
    readonly_fields = ("amount", "pdf_url", "invoice_accepted_at", "contract_accepted_at", "contract_accepted_by")
    inlines = [InvoiceItemInline, PaymentScheduleInline]


@admin.register(PaymentSchedule)
class PaymentScheduleAdmin(admin.ModelAdmin):
    list_display = ("invoice", "description", "due_date", "percentage", "amount", "status", "payment_date")
    list_filter = ("status",)
    search_fields = ("invoice__number", "description")
    autocomplete_fields = ("invoice",)
