from rest_framework.routers import DefaultRouter

from apps.clients.views import ClientViewSet, CompanyViewSet, JobViewSet

router = DefaultRouter()
router.register("companies", CompanyViewSet, basename="company")
router.register("clients", ClientViewSet, basename="client")
router.register("jobs", JobViewSet, basename="job")

urlpatterns = router.urls
