from django.urls import path
from .views import (
    ConvertToCashView,
    VerificationHistoryView,
    VisitAdvanceView,
    VisitCancelView,
    VisitCompleteView,
    VisitCreateView,
    VisitDetailView,
    VisitGateView,
    VisitReverifyView,
    VisitVerifyView,
)

urlpatterns = [
    path('visits/', VisitCreateView.as_view(), name='visit-create'),
    path('visits/<uuid:visit_id>/', VisitDetailView.as_view(), name='visit-detail'),
    path('visits/<uuid:visit_id>/advance/', VisitAdvanceView.as_view(), name='visit-advance'),
    path('visits/<uuid:visit_id>/complete/', VisitCompleteView.as_view(), name='visit-complete'),
    path('visits/<uuid:visit_id>/cancel/', VisitCancelView.as_view(), name='visit-cancel'),
    path('visits/<uuid:visit_id>/verify/', VisitVerifyView.as_view(), name='visit-verify'),
    path('visits/<uuid:visit_id>/reverify/', VisitReverifyView.as_view(), name='visit-reverify'),
    path('visits/<uuid:visit_id>/verifications/', VerificationHistoryView.as_view(), name='visit-verifications'),
    path('visits/<uuid:visit_id>/gate/', VisitGateView.as_view(), name='visit-gate'),
    path('visits/<uuid:visit_id>/convert-to-cash/', ConvertToCashView.as_view(), name='visit-convert-to-cash'),
]
