from django.urls import path

from .views import (
    LoginView,
    LogoutView,
    PrescriptionCreateOrderView,
    PrescriptionDetailView,
    PrescriptionFillView,
    PrescriptionItemsView,
    PrescriptionListCreateView,
    PrescriptionProcessRefillView,
    PrescriptionStatusView,
    RefillRequestCreateView,
    RefillRequestDecisionView,
    RefillRequestListView,
)

urlpatterns = [
    path('auth/login', LoginView.as_view(), name='auth-login'),
    path('auth/logout', LogoutView.as_view(), name='auth-logout'),

    path('prescriptions/', PrescriptionListCreateView.as_view(), name='prescription-list'),
    path('prescriptions/<uuid:prescription_id>/', PrescriptionDetailView.as_view(), name='prescription-detail'),
    path('prescriptions/<uuid:prescription_id>/request-refill/', RefillRequestCreateView.as_view(),
         name='prescription-request-refill'),
    path('refill-requests/', RefillRequestListView.as_view(), name='refill-request-list'),

    path('admin/prescriptions/<uuid:prescription_id>/status/', PrescriptionStatusView.as_view(),
         name='admin-prescription-status'),
    path('admin/prescriptions/<uuid:prescription_id>/items/', PrescriptionItemsView.as_view(),
         name='admin-prescription-items'),
    path('admin/prescriptions/<uuid:prescription_id>/fill/', PrescriptionFillView.as_view(),
         name='admin-prescription-fill'),
    path('admin/prescriptions/<uuid:prescription_id>/process-refill/', PrescriptionProcessRefillView.as_view(),
         name='admin-prescription-process-refill'),
    path('admin/prescriptions/<uuid:prescription_id>/create-order/', PrescriptionCreateOrderView.as_view(),
         name='admin-prescription-create-order'),
    path('admin/refill-requests/<uuid:refill_request_id>/', RefillRequestDecisionView.as_view(),
         name='admin-refill-request-decision'),
]
