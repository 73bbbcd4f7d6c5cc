from rest_framework import serializers

from apps.clients.models import Client, Company, Job


class CompanySerializer(serializers.ModelSerializer):
    class Meta:
        model = Company
        fields = [
            "id",
            "name",
            "address",
            "phone",
            "email",
            "website",
            "logo_url",
            "country",
            "currency",
            "payment_methods",
            "is_default",
            "owner",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "owner", "created_at", "updated_at"]

    def validate_currency(self, value):
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise serializers.ValidationError("Currency must be a 3-letter ISO code.")
        return value


class ClientSerializer(serializers.ModelSerializer):
    company_name = serializers.CharField(source="company.name", read_only=True, default="")

    class Meta:
        model = Client
        fields = [
            "id",
            "company",
            "company_name",
            "name",
            "email",
            "phone",
            "address",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("Client name is required.")
        return value.strip()


class JobSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source="client.name", read_only=True)

    class Meta:
        model = Job
        fields = [
            "id",
            "client",
            "client_name",
            "company",
            "title",
            "description",
            "status",
            "date",
            "location",
            "start_time",
            "end_time",
            "is_full_day",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        start_time = attrs.get("start_time", getattr(self.instance, "start_time", None))
        end_time = attrs.get("end_time", getattr(self.instance, "end_time", None))
        if attrs.get("is_full_day"):
            attrs["start_time"] = None
            attrs["end_time"] = None
        elif start_time and end_time and end_time < start_time:
            raise serializers.ValidationError({"end_time": "End time must be after start time."})
        return attrs
