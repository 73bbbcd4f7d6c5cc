from django.db.models import ProtectedError, Q
from rest_framework import status, viewsets
from rest_framework.response import Response

from apps.audit.services import record_audit
from apps.clients.models import Client, Company, Job
from apps.clients.serializers import ClientSerializer, CompanySerializer, JobSerializer
from apps.common.permissions import RolePermission

TRUTHY = {"1", "true", "yes"}


class AuditedModelViewSet(viewsets.ModelViewSet):
    """ModelViewSet that writes an audit entry for every create, update and delete."""

    permission_classes = [RolePermission]
    audit_entity = ""
    audit_fields = ()

    def audit_payload(self, instance):
        return {name: str(getattr(instance, name)) for name in self.audit_fields}

    def perform_create(self, serializer):
        instance = serializer.save()
        record_audit(
            actor=self.request.user,
            action=f"{self.audit_entity}.create",
            entity_type=self.audit_entity,
            entity_id=instance.id,
            payload=self.audit_payload(instance),
        )

    def perform_update(self, serializer):
        before = self.audit_payload(serializer.instance)
        instance = serializer.save()
        record_audit(
            actor=self.request.user,
            action=f"{self.audit_entity}.update",
            entity_type=self.audit_entity,
            entity_id=instance.id,
            payload={"before": before, "after": self.audit_payload(instance)},
        )

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        payload = self.audit_payload(instance)
        try:
            instance.delete()
        except ProtectedError:
            return Response(
                {
                    "code": "protected",
                    "detail": f"This {self.audit_entity} still has invoices and cannot be deleted.",
                    "fields": {},
                },
                status=status.HTTP_400_BAD_REQUEST,
            )
        record_audit(
            actor=request.user,
            action=f"{self.audit_entity}.delete",
            entity_type=self.audit_entity,
            entity_id=kwargs.get("pk"),
            payload=payload,
        )
        return Response(status=status.HTTP_204_NO_CONTENT)


CLIENT_CAPABILITIES = {
    "list": ["clients.view"],
    "retrieve": ["clients.view"],
    "create": ["clients.manage"],
    "update": ["clients.manage"],
    "partial_update": ["clients.manage"],
    "destroy": ["clients.manage"],
}


class CompanyViewSet(AuditedModelViewSet):
    queryset = Company.objects.all()
    serializer_class = CompanySerializer
    capability_map = CLIENT_CAPABILITIES
    audit_entity = "company"
    audit_fields = ("name", "currency", "is_default")

    def get_queryset(self):
        queryset = super().get_queryset()
        query = self.request.query_params.get("q")
        if query:
            queryset = queryset.filter(Q(name__icontains=query) | Q(email__icontains=query))
        if str(self.request.query_params.get("default")).lower() in TRUTHY:
            queryset = queryset.filter(is_default=True)
        return queryset

    def perform_create(self, serializer):
        if serializer.validated_data.get("is_default"):
            Company.objects.filter(owner=self.request.user, is_default=True).update(is_default=False)
        serializer.validated_data["owner"] = self.request.user
        super().perform_create(serializer)

    def perform_update(self, serializer):
        if serializer.validated_data.get("is_default"):
            Company.objects.filter(owner=serializer.instance.owner, is_default=True).exclude(
                pk=serializer.instance.pk
            ).update(is_default=False)
        super().perform_update(serializer)


class ClientViewSet(AuditedModelViewSet):
    queryset = Client.objects.select_related("company")
    serializer_class = ClientSerializer
    capability_map = CLIENT_CAPABILITIES
    audit_entity = "client"
    audit_fields = ("name", "email", "company_id")

    def get_queryset(self):
        queryset = super().get_queryset()
        query = self.request.query_params.get("q")
        company = self.request.query_params.get("company")
        if query:
            queryset = queryset.filter(Q(name__icontains=query) | Q(email__icontains=query) | Q(phone__icontains=query))
        if company:
            queryset = queryset.filter(company_id=company)
        return queryset

    def perform_create(self, serializer):
        serializer.validated_data["created_by"] = self.request.user
        super().perform_create(serializer)


class JobViewSet(AuditedModelViewSet):
    queryset = Job.objects.select_related("client", "company")
    serializer_class = JobSerializer
    capability_map = CLIENT_CAPABILITIES
    audit_entity = "job"
    audit_fields = ("title", "status", "date", "client_id")

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("client"):
            queryset = queryset.filter(client_id=params["client"])
        if params.get("company"):
            queryset = queryset.filter(company_id=params["company"])
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("date_from"):
            queryset = queryset.filter(date__gte=params["date_from"])
        if params.get("date_to"):
            queryset = queryset.filter(date__lte=params["date_to"])
        if params.get("q"):
            queryset = queryset.filter(Q(title__icontains=params["q"]) | Q(location__icontains=params["q"]))
        return queryset
