import shutil
import tempfile
from datetime import date
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.files.storage import default_storage
from django.core.management import call_command
from django.test import override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.clients.models import Client, Company
from apps.invoices.models import Invoice, PaymentSchedule

User = get_user_model()


class InvoiceApiTestCase(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_inv", password="admin123", role="ADMIN")
        self.staff = User.objects.create_user(username="staff_inv", password="staff123", role="STAFF")
        self.viewer = User.objects.create_user(username="viewer_inv", password="viewer123", role="VIEWER")
        self.company = Company.objects.create(
            name="North Light Studio",
            address="12 Harbour Rd",
            currency="USD",
            payment_methods="Bank transfer to 12-3456-7890",
        )
        self.customer = Client.objects.create(name="Ana Ruiz", email="ana@example.com", company=self.company)

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def create_invoice(self, rate="1000.00", schedules=None, number="INV-001"):
        payload = {
            "number": number,
            "client": str(self.customer.id),
            "company": str(self.company.id),
            "date": "2025-03-05",
            "items": [{"name": "Wedding coverage", "description": "Eight hours", "quantity": "1", "rate": rate}],
        }
        if schedules is not None:
            payload["payment_schedules"] = schedules
        return self.client.post("/api/v1/invoices/", payload, format="json")

    def schedule_url(self, invoice_id, schedule_id=None, suffix=""):
        url = f"/api/v1/invoices/{invoice_id}/schedule/"
        if schedule_id:
            url += f"{schedule_id}/"
        return url + suffix


class InvoiceLifecycleTests(InvoiceApiTestCase):
    def test_create_without_schedules_gets_single_full_installment(self):
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice()
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["amount"], "1000.00")
        self.assertEqual(response.data["currency"], "USD")

        schedules = response.data["schedules"]
        self.assertEqual(len(schedules), 1)
        self.assertEqual(schedules[0]["description"], "1st payment")
        self.assertEqual(schedules[0]["percentage"], "100.0000")
        self.assertEqual(schedules[0]["amount"], "1000.00")
        self.assertEqual(schedules[0]["due_date"], date(2025, 3, 5))
        self.assertTrue(response.data["schedule_check"]["is_valid"])
        self.assertTrue(AuditLog.objects.filter(action="invoices.create", entity_id=response.data["id"]).exists())

    def test_blank_number_on_create_gets_next_daily_number(self):
        self.auth_as("staff_inv", "staff123")
        prefix = f"{timezone.localdate():%Y%m%d}"
        Invoice.objects.create(number=f"{prefix}-7", client=self.customer)
        Invoice.objects.create(number=f"{prefix}-draft", client=self.customer)

        first = self.create_invoice(number="   ")
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.data["number"], f"{prefix}-8")
        second = self.create_invoice(number="")
        self.assertEqual(second.data["number"], f"{prefix}-9")

    def test_update_rejects_blank_number(self):
        self.auth_as("staff_inv", "staff123")
        invoice_id = self.create_invoice().data["id"]
        response = self.client.patch(f"/api/v1/invoices/{invoice_id}/", {"number": ""}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "missing_number")
        self.assertEqual(response.data["detail"], "Invoice number is required")
        self.assertEqual(Invoice.objects.get(pk=invoice_id).number, "INV-001")

    def test_create_rejects_negative_total(self):
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice(rate="-50.00")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "negative_total")
        self.assertEqual(response.data["detail"], "Invoice total cannot be negative")
        self.assertFalse(Invoice.objects.exists())

    def test_total_too_large_for_storage_is_rejected(self):
        self.auth_as("staff_inv", "staff123")
        response = self.client.post(
            "/api/v1/invoices/",
            {
                "number": "INV-BIG",
                "client": str(self.customer.id),
                "items": [{"name": "Archive licence", "quantity": "99999999.00", "rate": "9999999999.00"}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("items", response.data["fields"])
        self.assertFalse(Invoice.objects.exists())

    def test_leftover_cent_goes_to_last_unpaid_installment(self):
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice(
            rate="100.00",
            schedules=[
                {"due_date": "2025-03-05", "percentage": "33.3333"},
                {"due_date": "2025-04-05", "percentage": "33.3333"},
                {"due_date": "2025-05-05", "percentage": "33.3334"},
            ],
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual([row["amount"] for row in response.data["schedules"]], ["33.33", "33.33", "33.34"])
        stored = PaymentSchedule.objects.filter(invoice_id=response.data["id"]).values_list("amount", flat=True)
        self.assertEqual(sum(stored), Decimal("100.00"))

    def test_create_rejects_empty_items(self):
        self.auth_as("staff_inv", "staff123")
        response = self.client.post(
            "/api/v1/invoices/",
            {"number": "INV-002", "client": str(self.customer.id), "items": []},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "missing_items")
        self.assertEqual(response.data["detail"], "Please add at least one item to the invoice")

    def test_create_rejects_schedules_not_totalling_100(self):
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice(
            schedules=[
                {"due_date": "2025-03-05", "percentage": "50"},
                {"due_date": "2025-04-05", "percentage": "40"},
            ]
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_schedule_total")
        self.assertEqual(response.data["detail"], "Payment schedule percentages must total 100% (currently 90.00%)")
        self.assertFalse(Invoice.objects.exists())

    def test_viewer_cannot_create_invoice(self):
        self.auth_as("viewer_inv", "viewer123")
        response = self.create_invoice()
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "permission_denied")

    def test_job_must_belong_to_client(self):
        other = Client.objects.create(name="Someone Else")
        job = other.jobs.create(title="Portrait session")
        self.auth_as("staff_inv", "staff123")
        response = self.client.post(
            "/api/v1/invoices/",
            {
                "number": "INV-003",
                "client": str(self.customer.id),
                "job": str(job.id),
                "items": [{"name": "Session", "rate": "200.00"}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("job", response.data["fields"])

    def test_list_filters_by_query(self):
        self.auth_as("staff_inv", "staff123")
        self.create_invoice(number="INV-100")
        self.create_invoice(number="QUOTE-7")
        response = self.client.get("/api/v1/invoices/?q=QUOTE")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["number"] for row in response.data["results"]], ["QUOTE-7"])

    def test_accept_invoice_and_contract(self):
        self.auth_as("staff_inv", "staff123")
        invoice_id = self.create_invoice().data["id"]

        missing_signer = self.client.post(f"/api/v1/invoices/{invoice_id}/accept/", {"accept_contract": True}, format="json")
        self.assertEqual(missing_signer.status_code, 400)

        response = self.client.post(
            f"/api/v1/invoices/{invoice_id}/accept/",
            {"accept_invoice": True, "accept_contract": True, "signer_name": "Ana Ruiz"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "accepted")
        self.assertEqual(response.data["contract_status"], "accepted")
        self.assertEqual(response.data["contract_accepted_by"], "Ana Ruiz")
        self.assertIsNotNone(response.data["invoice_accepted_at"])

    def test_history_lists_audit_entries(self):
        self.auth_as("staff_inv", "staff123")
        invoice_id = self.create_invoice().data["id"]
        response = self.client.get(f"/api/v1/invoices/{invoice_id}/history/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]["action"], "invoices.create")
        self.assertEqual(response.data[0]["actor"], "staff_inv")


class ScheduleReconciliationApiTests(InvoiceApiTestCase):
    def setUp(self):
        super().setUp()
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice(
            schedules=[
                {"due_date": "2025-03-05", "percentage": "50"},
                {"due_date": "2025-06-05", "percentage": "50"},
            ]
        )
        self.assertEqual(response.status_code, 201)
        self.invoice_id = response.data["id"]
        self.first_id, self.second_id = [row["id"] for row in response.data["schedules"]]

    def mark_first_paid(self):
        response = self.client.patch(
            self.schedule_url(self.invoice_id, self.first_id),
            {"kind": "set_status", "value": "paid"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        return response

    def test_mark_paid_stamps_payment_date(self):
        response = self.mark_first_paid()
        first = response.data["schedules"][0]
        self.assertEqual(first["status"], "paid")
        self.assertEqual(first["amount"], "500.00")
        self.assertEqual(first["payment_date"], timezone.localdate())
        self.assertEqual(response.data["rows"][0]["status"], "PAID")

    def test_total_increase_keeps_paid_amount(self):
        self.mark_first_paid()
        response = self.client.patch(
            f"/api/v1/invoices/{self.invoice_id}/",
            {"items": [{"name": "Wedding coverage", "quantity": "1", "rate": "1200.00"}]},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["amount"], "1200.00")
        paid, unpaid = response.data["schedules"]
        self.assertEqual(paid["amount"], "500.00")
        self.assertEqual(paid["percentage"], "41.6667")
        self.assertEqual(unpaid["amount"], "700.00")
        self.assertEqual(unpaid["percentage"], "58.3333")
        self.assertEqual(
            response.data["notices"],
            ["Payment schedules adjusted. 1 paid payment(s) unchanged, 1 unpaid payment(s) redistributed."],
        )

    def test_total_below_paid_amount_rolls_back_whole_update(self):
        self.mark_first_paid()
        response = self.client.patch(
            f"/api/v1/invoices/{self.invoice_id}/",
            {"number": "INV-CHANGED", "items": [{"name": "Smaller package", "quantity": "1", "rate": "400.00"}]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "paid_exceeds_total")

        invoice = Invoice.objects.get(pk=self.invoice_id)
        self.assertEqual(invoice.amount, Decimal("1000.00"))
        self.assertEqual(invoice.number, "INV-001")
        self.assertEqual(list(invoice.items.values_list("name", flat=True)), ["Wedding coverage"])
        self.assertEqual(
            sorted(PaymentSchedule.objects.filter(invoice=invoice).values_list("amount", flat=True)),
            [Decimal("500.00"), Decimal("500.00")],
        )

    def test_add_overflow_adjusts_latest_unpaid_schedule(self):
        response = self.client.post(
            self.schedule_url(self.invoice_id),
            {"due_date": "2025-09-05", "percentage": "20"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["percentage"] for row in response.data["schedules"]], ["50.0000", "30.0000", "20.0000"])
        self.assertEqual(response.data["schedules"][2]["description"], "3rd payment")
        self.assertEqual(
            response.data["notices"],
            ["Adjusted 2nd payment by 20.00% ($200.00) to accommodate new payment"],
        )
        self.assertTrue(response.data["check"]["is_valid"])

    def test_add_rejected_when_all_paid(self):
        self.mark_first_paid()
        self.client.patch(self.schedule_url(self.invoice_id, self.second_id), {"kind": "set_status", "value": "paid"}, format="json")
        response = self.client.post(
            self.schedule_url(self.invoice_id),
            {"due_date": "2025-09-05", "percentage": "10"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "overflow_all_paid")
        self.assertEqual(PaymentSchedule.objects.filter(invoice_id=self.invoice_id).count(), 2)

    def test_paid_schedule_cannot_be_edited_or_removed(self):
        self.mark_first_paid()
        edit = self.client.patch(
            self.schedule_url(self.invoice_id, self.first_id),
            {"kind": "set_amount", "value": "100.00"},
            format="json",
        )
        self.assertEqual(edit.status_code, 400)
        self.assertEqual(edit.data["detail"], "Cannot modify amount or percentage of a paid payment schedule")

        remove = self.client.delete(self.schedule_url(self.invoice_id, self.first_id))
        self.assertEqual(remove.status_code, 400)
        self.assertEqual(remove.data["detail"], "Cannot remove a paid payment schedule")

    def test_remove_leaves_warning_and_blocks_validation(self):
        self.client.patch(
            self.schedule_url(self.invoice_id, self.second_id),
            {"kind": "set_description", "value": "Balance"},
            format="json",
        )
        response = self.client.delete(self.schedule_url(self.invoice_id, self.first_id))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["notices"], ["Payment schedule removed"])
        self.assertEqual([row["description"] for row in response.data["schedules"]], ["Balance"])
        self.assertEqual(response.data["warning"], "Total payment percentage is 50.00%. It should be exactly 100%.")

        validation = self.client.get(f"/api/v1/invoices/{self.invoice_id}/validate/")
        self.assertEqual(validation.status_code, 200)
        self.assertFalse(validation.data["is_valid"])
        self.assertEqual(validation.data["code"], "invalid_schedule_total")

        update = self.client.patch(f"/api/v1/invoices/{self.invoice_id}/", {"notes": "Updated"}, format="json")
        self.assertEqual(update.status_code, 400)
        self.assertEqual(update.data["code"], "invalid_schedule_total")

    def test_set_percentage_and_payment_date(self):
        response = self.client.patch(
            self.schedule_url(self.invoice_id, self.second_id),
            {"kind": "set_percentage", "value": "25"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["schedules"][1]["amount"], "250.00")
        self.assertFalse(response.data["check"]["is_valid"])

        response = self.client.post(
            self.schedule_url(self.invoice_id, self.second_id, "payment-date/"),
            {"payment_date": "2025-05-01"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["schedules"][1]["payment_date"], date(2025, 5, 1))
        self.assertEqual(response.data["schedules"][1]["status"], "unpaid")

    def test_command_value_is_type_checked(self):
        response = self.client.patch(
            self.schedule_url(self.invoice_id, self.second_id),
            {"kind": "set_amount", "value": "lots"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("value", response.data["fields"])

        response = self.client.patch(
            self.schedule_url(self.invoice_id, self.second_id),
            {"kind": "rename", "value": "x"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("kind", response.data["fields"])

    def test_unknown_schedule_returns_404(self):
        response = self.client.delete(self.schedule_url(self.invoice_id, "00000000-0000-0000-0000-000000000000"))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "schedule_not_found")

    def test_viewer_sees_read_only_schedule(self):
        self.auth_as("viewer_inv", "viewer123")
        schedule = self.client.get(self.schedule_url(self.invoice_id))
        self.assertEqual(schedule.status_code, 200)
        self.assertFalse(schedule.data["editable"])
        self.assertEqual(len(schedule.data["rows"]), 2)

        response = self.client.post(
            self.schedule_url(self.invoice_id),
            {"due_date": "2025-09-05", "percentage": "10"},
            format="json",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "read_only")


class InvoiceTotalChangeTests(InvoiceApiTestCase):
    def setUp(self):
        super().setUp()
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice(
            schedules=[
                {"due_date": "2025-03-05", "percentage": "50"},
                {"due_date": "2025-06-05", "percentage": "50"},
            ]
        )
        self.invoice_id = response.data["id"]

    def update_items(self, *rates):
        return self.client.patch(
            f"/api/v1/invoices/{self.invoice_id}/",
            {"items": [{"name": f"Line {n}", "quantity": "1", "rate": rate} for n, rate in enumerate(rates, start=1)]},
            format="json",
        )

    def test_negative_total_on_update_is_rejected_like_create(self):
        response = self.update_items("100.00", "-150.00")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "negative_total")
        self.assertEqual(response.data["detail"], "Invoice total cannot be negative")

        invoice = Invoice.objects.get(pk=self.invoice_id)
        self.assertEqual(invoice.amount, Decimal("1000.00"))
        self.assertEqual(invoice.items.count(), 1)

    def test_zero_total_keeps_split_and_clears_amounts(self):
        response = self.update_items("100.00", "-100.00")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["amount"], "0.00")
        self.assertEqual([row["amount"] for row in response.data["schedules"]], ["0.00", "0.00"])
        self.assertEqual([row["percentage"] for row in response.data["schedules"]], ["50.0000", "50.0000"])

    def test_equal_thirds_keep_every_cent(self):
        schedule_ids = [row["id"] for row in self.client.get(self.schedule_url(self.invoice_id)).data["schedules"]]
        for schedule_id in schedule_ids:
            self.client.patch(
                self.schedule_url(self.invoice_id, schedule_id),
                {"kind": "set_percentage", "value": "33.3333"},
                format="json",
            )
        self.client.post(self.schedule_url(self.invoice_id), {"due_date": "2025-09-05", "percentage": "33.3334"}, format="json")

        response = self.update_items("100.00")
        self.assertEqual(response.status_code, 200)
        amounts = [Decimal(row["amount"]) for row in response.data["schedules"]]
        self.assertEqual(amounts, [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")])
        self.assertEqual(sum(amounts), Decimal("100.00"))

    def test_add_rejects_percentage_and_amount_together(self):
        response = self.client.post(
            self.schedule_url(self.invoice_id),
            {"due_date": "2025-09-05", "percentage": "10", "amount": "250.00"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.data["fields"])
        self.assertEqual(PaymentSchedule.objects.filter(invoice_id=self.invoice_id).count(), 2)


class PaymentOverviewApiTests(InvoiceApiTestCase):
    def setUp(self):
        super().setUp()
        self.auth_as("staff_inv", "staff123")
        self.other_client = Client.objects.create(name="Bruno Diaz", company=self.company)
        first = self.create_invoice(
            schedules=[
                {"due_date": "2025-03-05", "percentage": "40"},
                {"due_date": "2025-07-05", "percentage": "60"},
            ]
        )
        self.paid_id = first.data["schedules"][0]["id"]
        self.client.patch(
            self.schedule_url(first.data["id"], self.paid_id),
            {"kind": "set_status", "value": "paid"},
            format="json",
        )
        second = self.client.post(
            "/api/v1/invoices/",
            {
                "number": "INV-002",
                "client": str(self.other_client.id),
                "date": "2025-05-01",
                "items": [{"name": "Portrait session", "quantity": "2", "rate": "150.00"}],
            },
            format="json",
        )
        self.assertEqual(second.status_code, 201)

    def test_lists_installments_across_invoices_by_due_date(self):
        response = self.client.get("/api/v1/payments/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 3)
        rows = response.data["results"]
        self.assertEqual([row["invoice_number"] for row in rows], ["INV-001", "INV-002", "INV-001"])
        self.assertEqual(rows[0]["status"], "PAID")
        self.assertEqual(rows[0]["amount"], "$400.00")
        self.assertEqual(rows[1]["client_name"], "Bruno Diaz")
        self.assertEqual(rows[1]["amount_value"], "300.00")
        self.assertEqual(rows[2]["due_date"], "Jul 5, 2025")

    def test_filters(self):
        unpaid = self.client.get("/api/v1/payments/", {"status": "unpaid"})
        self.assertEqual(unpaid.data["count"], 2)

        by_client = self.client.get("/api/v1/payments/", {"q": "bruno"})
        self.assertEqual(by_client.data["count"], 1)
        self.assertEqual(by_client.data["results"][0]["invoice_number"], "INV-002")

        in_range = self.client.get("/api/v1/payments/", {"date_from": "2025-04-01", "date_to": "2025-06-30"})
        self.assertEqual(in_range.data["count"], 1)
        self.assertEqual(in_range.data["results"][0]["due_on"], date(2025, 5, 1))

    def test_csv_export(self):
        response = self.client.get("/api/v1/payments/export/", {"status": "unpaid"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("attachment;", response["Content-Disposition"])
        lines = response.content.decode().splitlines()
        self.assertEqual(lines[0], "Status,Due Date,Invoice Number,Client,Job,Description,Amount,Currency")
        self.assertEqual(lines[1], "Unpaid,2025-05-01,INV-002,Bruno Diaz,N/A,1st payment,300.00,USD")
        self.assertEqual(lines[2], "Unpaid,2025-07-05,INV-001,Ana Ruiz,N/A,2nd payment,600.00,USD")

    def test_viewer_can_list_and_export(self):
        self.auth_as("viewer_inv", "viewer123")
        self.assertEqual(self.client.get("/api/v1/payments/").status_code, 200)
        self.assertEqual(self.client.get("/api/v1/payments/export/").status_code, 200)


class InvoicePdfExportTests(InvoiceApiTestCase):
    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.override = override_settings(MEDIA_ROOT=self.media_root)
        self.override.enable()
        self.auth_as("staff_inv", "staff123")
        response = self.create_invoice()
        self.invoice_id = response.data["id"]
        Invoice.objects.filter(pk=self.invoice_id).update(
            notes="<p>Thank you for choosing us.</p>",
            contract_terms="<h2>TERMS</h2><p>The deposit is non-refundable.</p>",
        )

    def tearDown(self):
        self.override.disable()
        shutil.rmtree(self.media_root, ignore_errors=True)
        super().tearDown()

    def export(self, **payload):
        return self.client.post(f"/api/v1/invoices/{self.invoice_id}/pdf/", payload, format="json")

    def test_export_stores_pdf_and_reuses_it(self):
        response = self.export()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["regenerated"])
        pdf_url = response.data["pdf_url"]
        self.assertIn(f"/media/invoices/{self.invoice_id}/inv-001.pdf?t=", pdf_url)
        self.assertEqual(Invoice.objects.get(pk=self.invoice_id).pdf_url, pdf_url)

        path = f"invoices/{self.invoice_id}/inv-001.pdf"
        self.assertTrue(default_storage.exists(path))
        with default_storage.open(path, "rb") as handle:
            self.assertTrue(handle.read().startswith(b"%PDF-"))

        again = self.export()
        self.assertFalse(again.data["regenerated"])
        self.assertEqual(again.data["pdf_url"], pdf_url)

        forced = self.export(force_regenerate=True)
        self.assertTrue(forced.data["regenerated"])
        self.assertEqual(sorted(default_storage.listdir(f"invoices/{self.invoice_id}")[1]), ["inv-001.pdf"])

    def test_debug_mode_returns_stage_trace(self):
        response = self.export(debug_mode=True)
        self.assertEqual(response.status_code, 200)
        stages = response.data["debug_info"]["stages"]
        self.assertEqual([stage["stage"] for stage in stages], ["fetch", "format", "render", "validate", "upload", "verify"])
        self.assertTrue(all(stage["status"] == "ok" for stage in stages))
        self.assertGreater(response.data["debug_info"]["size"], 1000)

    @override_settings(INVOICE_PDF_MIN_BYTES=10**9)
    def test_size_policy_rejects_unless_skipped(self):
        response = self.export(debug_mode=True)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.data["fields"]["stage"], "validate")
        self.assertIn("too small", response.data["error"])
        self.assertEqual(response.data["debug_info"]["stages"][-1]["status"], "failed")
        self.assertEqual(Invoice.objects.get(pk=self.invoice_id).pdf_url, "")

        skipped = self.export(skip_size_validation=True)
        self.assertEqual(skipped.status_code, 200)

    @override_settings(INVOICE_PDF_MAX_BYTES=100)
    def test_large_file_allowance(self):
        rejected = self.export()
        self.assertEqual(rejected.status_code, 422)
        self.assertIn("too large", rejected.data["detail"])

        allowed = self.export(allow_large_files=True)
        self.assertEqual(allowed.status_code, 200)

    def test_missing_invoice(self):
        response = self.client.post("/api/v1/invoices/00000000-0000-0000-0000-000000000000/pdf/", {}, format="json")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["fields"]["stage"], "fetch")

    def test_schedule_change_invalidates_stored_pdf(self):
        self.export()
        schedule_id = PaymentSchedule.objects.get(invoice_id=self.invoice_id).id
        self.client.patch(self.schedule_url(self.invoice_id, schedule_id), {"kind": "set_description", "value": "Deposit"}, format="json")
        self.assertEqual(Invoice.objects.get(pk=self.invoice_id).pdf_url, "")

    def test_management_command(self):
        out = StringIO()
        call_command("export_invoice_pdf", self.invoice_id, "--debug", stdout=out)
        output = out.getvalue()
        self.assertIn("generated:", output)
        self.assertIn('"stage": "verify"', output)
