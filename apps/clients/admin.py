from django.contrib import admin

from apps.clients.models import Client, Company, Job


@admin.register(Company)
class CompanyAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "currency", "is_default", "owner", "updated_at")
    list_filter = ("currency", "is_default")
    search_fields = ("name", "email")


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "phone", "company", "updated_at")
    search_fields = ("name", "email", "phone")
    autocomplete_fields = ("company",)


@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ("title", "client", "status", "date", "location")
    list_filter = ("status",)
    search_fields = ("title", "location", "client__name")
    autocomplete_fields = ("client", "company")
