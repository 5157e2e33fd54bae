from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AdminUserViewSet, AuditLogViewSet, MeView, RegisterView, healthz

router = DefaultRouter()
router.register(r"admin/users", AdminUserViewSet, basename="admin-user")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("register/", RegisterView.as_view(), name="register"),
    path("me/", MeView.as_view(), name="me"),
    path("healthz/", healthz, name="healthz"),
]
