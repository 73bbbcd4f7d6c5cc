from django.contrib.auth import get_user_model
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.clients.models import Client, Company, Job
from apps.invoices.models import Invoice

User = get_user_model()


class ClientsApiTestCase(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_cli", password="admin123", role="ADMIN")
        self.staff = User.objects.create_user(username="staff_cli", password="staff123", role="STAFF")
        self.viewer = User.objects.create_user(username="viewer_cli", password="viewer123", role="VIEWER")

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")


class ClientsApiTests(ClientsApiTestCase):
    def test_staff_can_crud_clients_with_filters(self):
        self.auth_as("staff_cli", "staff123")
        company = Company.objects.create(name="North Light Studio")
        create_response = self.client.post(
            "/api/v1/clients/",
            {"name": "  Ana Ruiz ", "email": "Ana@Example.com", "phone": "555-0101", "company": str(company.id)},
            format="json",
        )
        self.assertEqual(create_response.status_code, 201)
        self.assertEqual(create_response.data["name"], "Ana Ruiz")
        self.assertEqual(create_response.data["company_name"], "North Light Studio")
        client_id = create_response.data["id"]
        self.assertEqual(Client.objects.get(pk=client_id).email, "ana@example.com")
        self.assertEqual(Client.objects.get(pk=client_id).created_by, self.staff)

        Client.objects.create(name="Bruno Diaz", email="bruno@example.com")

        update_response = self.client.patch(f"/api/v1/clients/{client_id}/", {"phone": "555-0199"}, format="json")
        self.assertEqual(update_response.status_code, 200)

        search_response = self.client.get("/api/v1/clients/", {"q": "0199"})
        self.assertEqual(search_response.status_code, 200)
        self.assertEqual(search_response.data["count"], 1)
        self.assertEqual(search_response.data["results"][0]["id"], client_id)

        company_response = self.client.get("/api/v1/clients/", {"company": str(company.id)})
        self.assertEqual(company_response.data["count"], 1)

        delete_response = self.client.delete(f"/api/v1/clients/{client_id}/")
        self.assertEqual(delete_response.status_code, 204)
        self.assertFalse(Client.objects.filter(pk=client_id).exists())

        actions = set(AuditLog.objects.filter(entity_id=client_id).values_list("action", flat=True))
        self.assertEqual(actions, {"client.create", "client.update", "client.delete"})

    def test_blank_client_name_is_rejected(self):
        self.auth_as("staff_cli", "staff123")
        response = self.client.post("/api/v1/clients/", {"name": "   "}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("name", response.data["fields"])

    def test_client_with_invoices_cannot_be_deleted(self):
        self.auth_as("admin_cli", "admin123")
        customer = Client.objects.create(name="Ana Ruiz")
        Invoice.objects.create(number="INV-900", client=customer)

        response = self.client.delete(f"/api/v1/clients/{customer.id}/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "protected")
        self.assertEqual(response.data["detail"], "This client still has invoices and cannot be deleted.")
        self.assertTrue(Client.objects.filter(pk=customer.id).exists())
        self.assertFalse(AuditLog.objects.filter(action="client.delete").exists())

    def test_viewer_can_read_but_not_write(self):
        Client.objects.create(name="Ana Ruiz")
        self.auth_as("viewer_cli", "viewer123")

        list_response = self.client.get("/api/v1/clients/")
        self.assertEqual(list_response.status_code, 200)
        self.assertEqual(list_response.data["count"], 1)

        create_response = self.client.post("/api/v1/clients/", {"name": "Bruno Diaz"}, format="json")
        self.assertEqual(create_response.status_code, 403)
        self.assertEqual(create_response.data["code"], "permission_denied")

    def test_anonymous_requests_are_rejected(self):
        response = self.client.get("/api/v1/clients/")
        self.assertEqual(response.status_code, 401)


class CompanyApiTests(ClientsApiTestCase):
    def test_new_default_company_replaces_previous_default(self):
        self.auth_as("staff_cli", "staff123")
        first = self.client.post(
            "/api/v1/companies/",
            {"name": "North Light Studio", "currency": "usd", "is_default": True},
            format="json",
        )
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.data["currency"], "USD")
        self.assertEqual(str(first.data["owner"]), str(self.staff.id))

        second = self.client.post(
            "/api/v1/companies/",
            {"name": "Second Frame", "currency": "EUR", "is_default": True},
            format="json",
        )
        self.assertEqual(second.status_code, 201)
        self.assertFalse(Company.objects.get(pk=first.data["id"]).is_default)
        self.assertTrue(Company.objects.get(pk=second.data["id"]).is_default)

        defaults = self.client.get("/api/v1/companies/", {"default": "true"})
        self.assertEqual(defaults.data["count"], 1)
        self.assertEqual(defaults.data["results"][0]["name"], "Second Frame")

    def test_invalid_currency_is_rejected(self):
        self.auth_as("staff_cli", "staff123")
        response = self.client.post("/api/v1/companies/", {"name": "Studio", "currency": "US1"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("currency", response.data["fields"])


class JobApiTests(ClientsApiTestCase):
    def setUp(self):
        super().setUp()
        self.customer = Client.objects.create(name="Ana Ruiz")

    def test_create_and_filter_jobs(self):
        self.auth_as("staff_cli", "staff123")
        response = self.client.post(
            "/api/v1/jobs/",
            {
                "client": str(self.customer.id),
                "title": "Wedding",
                "date": "2025-06-14",
                "location": "Harbour Chapel",
                "start_time": "10:00",
                "end_time": "18:00",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["client_name"], "Ana Ruiz")
        self.assertEqual(response.data["status"], "active")

        Job.objects.create(client=self.customer, title="Engagement", date="2025-02-01", status="completed")

        in_range = self.client.get("/api/v1/jobs/", {"date_from": "2025-06-01", "date_to": "2025-06-30"})
        self.assertEqual(in_range.data["count"], 1)
        self.assertEqual(in_range.data["results"][0]["title"], "Wedding")

        completed = self.client.get("/api/v1/jobs/", {"status": "completed", "client": str(self.customer.id)})
        self.assertEqual(completed.data["count"], 1)
        self.assertEqual(completed.data["results"][0]["title"], "Engagement")

    def test_end_time_before_start_is_rejected(self):
        self.auth_as("staff_cli", "staff123")
        response = self.client.post(
            "/api/v1/jobs/",
            {"client": str(self.customer.id), "title": "Portrait", "start_time": "15:00", "end_time": "09:00"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("end_time", response.data["fields"])

    def test_full_day_job_clears_times(self):
        self.auth_as("staff_cli", "staff123")
        response = self.client.post(
            "/api/v1/jobs/",
            {
                "client": str(self.customer.id),
                "title": "Festival",
                "is_full_day": True,
                "start_time": "15:00",
                "end_time": "09:00",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertIsNone(response.data["start_time"])
        self.assertIsNone(response.data["end_time"])
