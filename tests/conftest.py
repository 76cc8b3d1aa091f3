"""
Shared fixtures for all tests.

factories / helpers 在 tests/factories.py。
"""
from decimal import Decimal

import pytest
from django.test import Client

from tests.factories import PrescriptionFactory, PrescriptionItemFactory, as_principal, make_user


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def patient_user(db):
    return make_user('patient', full_name='Alice Wang')


@pytest.fixture
def doctor_user(db):
    return make_user('doctor', full_name='Dr. Smith')


@pytest.fixture
def admin_user(db):
    return make_user('admin', full_name='Pat Pharmacist')


@pytest.fixture
def patient(patient_user):
    return as_principal(patient_user)


@pytest.fixture
def doctor(doctor_user):
    return as_principal(doctor_user)


@pytest.fixture
def admin(admin_user):
    return as_principal(admin_user)


@pytest.fixture
def fillable_prescription(patient_user):
    """processing 状态、两个 item（30 + 10）的处方。"""
    prescription = PrescriptionFactory(
        patient=patient_user, status='processing', is_refillable=True, refill_limit=2,
    )
    PrescriptionItemFactory(prescription=prescription, medication_name='Amoxicillin', quantity=30)
    PrescriptionItemFactory(prescription=prescription, medication_name='Ibuprofen', quantity=10, price=Decimal('8.50'))
    return prescription
