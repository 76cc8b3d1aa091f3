"""
Unit tests for the refill lifecycle.

覆盖：request_refill, decide_refill_request, process_refill。

重点：
1. refill_count 只在 process_refill 里递增，永远不超过 refill_limit
2. 非本人处方按 404 处理，不做任何修改
3. 同一处方同时只有一个 pending / approved 的 refill 申请
4. 并发 process_refill 读到旧 refill_count → ConcurrentUpdateError
"""
import uuid
from unittest.mock import patch

import pytest
from django.db import IntegrityError, transaction
from django.db.models import F

from pharmacy.exceptions import (
    BlockError,
    ConcurrentUpdateError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    RefillsExhaustedError,
    UnauthorizedError,
    ValidationError,
)
from pharmacy.models import Prescription, RefillRequest
from pharmacy.services import decide_refill_request, process_refill, request_refill
from pharmacy.types import RefillQuantity
from tests.factories import (
    PrescriptionFactory,
    PrescriptionItemFactory,
    RefillRequestFactory,
    as_principal,
    make_user,
)


@pytest.fixture
def refillable(patient_user):
    """partially_filled、refill_limit=2 的处方。"""
    prescription = PrescriptionFactory(
        patient=patient_user, status='partially_filled', is_refillable=True, refill_limit=2,
    )
    PrescriptionItemFactory(prescription=prescription, quantity=10, quantity_filled=20)
    return prescription


# -------------------------------------------------------------------
# request_refill
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestRequestRefill:

    def test_creates_pending_request(self, refillable, patient):
        refill_request = request_refill(refillable.id, patient, reason='Running out')

        assert refill_request.status == 'pending'
        assert refill_request.patient_id == patient.user_id
        assert refill_request.reason == 'Running out'

        refillable.refresh_from_db()
        assert refillable.status == 'refill_requested'
        # 申请不消耗 refill 次数
        assert refillable.refill_count == 0

    def test_default_reason(self, refillable, patient):
        refill_request = request_refill(refillable.id, patient)
        assert refill_request.reason == 'Refill requested'

    def test_other_patients_prescription_is_not_found(self, refillable):
        stranger = as_principal(make_user('patient'))

        with pytest.raises(NotFoundError) as exc_info:
            request_refill(refillable.id, stranger)

        assert exc_info.value.http_status == 404
        refillable.refresh_from_db()
        assert refillable.status == 'partially_filled'
        assert not RefillRequest.objects.exists()

    def test_admin_is_not_owner(self, refillable, admin):
        with pytest.raises(NotFoundError):
            request_refill(refillable.id, admin)

    @pytest.mark.parametrize('status', ['pending', 'approved', 'processing', 'filled', 'refill_requested'])
    def test_only_partially_filled(self, patient_user, patient, status):
        prescription = PrescriptionFactory(patient=patient_user, status=status, is_refillable=True, refill_limit=2)

        with pytest.raises(ValidationError) as exc_info:
            request_refill(prescription.id, patient)

        assert exc_info.value.code == 'REFILL_NOT_ALLOWED'
        prescription.refresh_from_db()
        assert prescription.status == status

    def test_not_refillable(self, patient_user, patient):
        prescription = PrescriptionFactory(patient=patient_user, status='partially_filled', is_refillable=False)

        with pytest.raises(ValidationError) as exc_info:
            request_refill(prescription.id, patient)

        assert exc_info.value.code == 'NOT_REFILLABLE'

    def test_exhausted(self, patient_user, patient):
        prescription = PrescriptionFactory(
            patient=patient_user, status='partially_filled', is_refillable=True, refill_limit=2, refill_count=2,
        )

        with pytest.raises(RefillsExhaustedError) as exc_info:
            request_refill(prescription.id, patient)

        assert exc_info.value.refills_used == 2
        assert exc_info.value.refill_limit == 2
        prescription.refresh_from_db()
        assert prescription.status == 'partially_filled'

    @pytest.mark.parametrize('open_status', ['pending', 'approved'])
    def test_duplicate_open_request(self, refillable, patient, open_status):
        existing = RefillRequestFactory(prescription=refillable, status=open_status)

        with pytest.raises(BlockError) as exc_info:
            request_refill(refillable.id, patient)

        assert exc_info.value.code == 'DUPLICATE_REFILL_REQUEST'
        assert exc_info.value.detail['refill_request_id'] == str(existing.id)
        assert RefillRequest.objects.count() == 1

    def test_closed_requests_do_not_block(self, refillable, patient):
        RefillRequestFactory(prescription=refillable, status='rejected')
        RefillRequestFactory(prescription=refillable, status='fulfilled')

        refill_request = request_refill(refillable.id, patient)

        assert refill_request.status == 'pending'

    def test_anonymous(self, refillable):
        with pytest.raises(UnauthorizedError):
            request_refill(refillable.id, None)


# -------------------------------------------------------------------
# decide_refill_request
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestDecideRefillRequest:

    @pytest.fixture
    def pending_request(self, refillable):
        refillable.status = 'refill_requested'
        refillable.save()
        return RefillRequestFactory(prescription=refillable)

    def test_approve(self, pending_request, admin, django_capture_on_commit_callbacks, mailoutbox):
        with django_capture_on_commit_callbacks(execute=True):
            result = decide_refill_request(pending_request.id, 'approved', admin, notes='ok')

        assert result.status == 'approved'
        assert result.approved_by_id == admin.user_id
        assert result.approved_at is not None
        assert result.notes == 'ok'

        prescription = Prescription.objects.get(pk=pending_request.prescription_id)
        assert prescription.refill_status == 'refill_pending'
        assert prescription.refill_count == 0

        assert len(mailoutbox) == 1
        assert mailoutbox[0].subject == 'Your refill request has been approved'
        assert 'Refills remaining: 2' in mailoutbox[0].body

    def test_reject_leaves_prescription_status(self, pending_request, admin, django_capture_on_commit_callbacks, mailoutbox):
        with django_capture_on_commit_callbacks(execute=True):
            result = decide_refill_request(pending_request.id, 'rejected', admin, notes='Too early')

        assert result.status == 'rejected'
        prescription = Prescription.objects.get(pk=pending_request.prescription_id)
        assert prescription.status == 'refill_requested'
        assert prescription.refill_status == 'active'
        assert 'Reason: Too early' in mailoutbox[0].body

    @pytest.mark.parametrize('status', ['approved', 'rejected', 'fulfilled'])
    def test_only_pending_can_be_decided(self, refillable, admin, status):
        refill_request = RefillRequestFactory(prescription=refillable, status=status)

        with pytest.raises(InvalidStateError):
            decide_refill_request(refill_request.id, 'approved', admin)

        refill_request.refresh_from_db()
        assert refill_request.status == status

    def test_invalid_decision(self, pending_request, admin):
        with pytest.raises(ValidationError) as exc_info:
            decide_refill_request(pending_request.id, 'fulfilled', admin)

        assert exc_info.value.code == 'INVALID_DECISION'

    def test_patient_forbidden(self, pending_request, patient):
        with pytest.raises(ForbiddenError):
            decide_refill_request(pending_request.id, 'approved', patient)

    def test_unknown_request(self, admin):
        with pytest.raises(NotFoundError) as exc_info:
            decide_refill_request(uuid.uuid4(), 'approved', admin)

        assert exc_info.value.code == 'REFILL_REQUEST_NOT_FOUND'


# -------------------------------------------------------------------
# process_refill
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestProcessRefill:

    def test_increments_count_and_restarts_cycle(self, refillable, admin):
        approved = RefillRequestFactory(prescription=refillable, status='approved')

        prescription = process_refill(refillable.id, [], admin)

        assert prescription.refill_count == 1
        assert prescription.refills_remaining == 1
        assert prescription.status == 'processing'
        assert prescription.refill_status == 'active'
        assert prescription.last_refilled_at is not None

        approved.refresh_from_db()
        assert approved.status == 'fulfilled'

    def test_item_quantity_defaults_to_prescribed_amount(self, refillable, admin):
        item = refillable.items.get()

        process_refill(refillable.id, [RefillQuantity(item.id)], admin)

        item.refresh_from_db()
        assert item.quantity == 30
        assert item.quantity_filled == 0

    def test_explicit_item_quantity(self, refillable, admin):
        item = refillable.items.get()

        process_refill(refillable.id, [RefillQuantity(item.id, 14)], admin)

        item.refresh_from_db()
        assert item.quantity == 14
        assert item.quantity_filled == 0

    def test_items_not_listed_are_untouched(self, refillable, admin):
        item = refillable.items.get()

        process_refill(refillable.id, None, admin)

        item.refresh_from_db()
        assert (item.quantity, item.quantity_filled) == (10, 20)

    def test_count_never_exceeds_limit(self, refillable, admin):
        process_refill(refillable.id, [], admin)
        process_refill(refillable.id, [], admin)

        with pytest.raises(RefillsExhaustedError) as exc_info:
            process_refill(refillable.id, [], admin)

        assert exc_info.value.detail == {'refillsUsed': 2, 'refillLimit': 2}
        refillable.refresh_from_db()
        assert refillable.refill_count == 2

    def test_exhausted_makes_no_changes(self, patient_user, admin):
        prescription = PrescriptionFactory(
            patient=patient_user, status='filled', is_refillable=True, refill_limit=1, refill_count=1,
        )

        with pytest.raises(RefillsExhaustedError):
            process_refill(prescription.id, [], admin)

        prescription.refresh_from_db()
        assert prescription.status == 'filled'
        assert prescription.last_refilled_at is None

    def test_non_positive_quantity(self, refillable, admin):
        item = refillable.items.get()

        with pytest.raises(ValidationError):
            process_refill(refillable.id, [RefillQuantity(item.id, 0)], admin)

        refillable.refresh_from_db()
        assert refillable.refill_count == 0

    def test_unknown_item(self, refillable, admin):
        with pytest.raises(NotFoundError):
            process_refill(refillable.id, [RefillQuantity(uuid.uuid4(), 5)], admin)

        refillable.refresh_from_db()
        assert refillable.refill_count == 0

    def test_patient_forbidden(self, refillable, patient):
        with pytest.raises(ForbiddenError):
            process_refill(refillable.id, [], patient)

    def test_stale_refill_count_is_rejected(self, refillable, admin):
        # 两个药剂师同时读到 refill_count=0
        stale = Prescription.objects.get(pk=refillable.pk)
        process_refill(refillable.id, [], admin)

        with patch('pharmacy.services._get_for_update', return_value=stale):
            with pytest.raises(ConcurrentUpdateError):
                process_refill(refillable.id, [], admin)

        refillable.refresh_from_db()
        assert refillable.refill_count == 1

    def test_store_rejects_count_above_limit(self, refillable):
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                Prescription.objects.filter(pk=refillable.pk).update(refill_count=F('refill_limit') + 1)
