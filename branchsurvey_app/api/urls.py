import os

from django.urls import include, path
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from . import views


# Custom token views without throttling for tests
class TestTokenObtainPairView(TokenObtainPairView):
    throttle_classes = []


class TestTokenRefreshView(TokenRefreshView):
    throttle_classes = []


# Use non-throttled views during tests
if os.environ.get("PYTEST_CURRENT_TEST"):
    TokenObtainView = TestTokenObtainPairView
    TokenRefView = TestTokenRefreshView
else:
    TokenObtainView = TokenObtainPairView
    TokenRefView = TokenRefreshView

router = DefaultRouter()
router.register(r"surveys", views.SurveyViewSet, basename="survey")
router.register(r"responses", views.ResponseViewSet, basename="response")

urlpatterns = [
    path("health", views.healthcheck, name="healthcheck"),
    path("token", TokenObtainView.as_view(), name="token_obtain_pair"),
    path("token/refresh", TokenRefView.as_view(), name="token_refresh"),
    path("", include(router.urls)),
]
