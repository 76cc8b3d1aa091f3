"""
处方 / refill 生命周期。

状态机：
  pending          --approve-->        approved
  pending          --reject-->         rejected（终态）
  approved         --start-->          processing
  approved | processing | partially_filled --fill--> partially_filled | filled
  partially_filled --request_refill--> refill_requested
  refill_requested --admin approve-->  refill_status=refill_pending（status 不变）
  (任意)           --process_refill--> processing（refill_count < refill_limit）

refill_count 只在 process_refill() 里递增。
所有写操作在 transaction.atomic() 内完成；数量 / 计数的写回都带旧值条件（compare-and-swap），
并发请求读到的旧值被别人改掉时抛 ConcurrentUpdateError，整个操作回滚。
"""
import functools
import logging

from django.contrib.auth import get_user_model
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from .auth import require_role
from .billing import billed_quantity, compute_totals, current_payment_config, generate_order_number, line_total
from .exceptions import (
    BlockError,
    ConcurrentUpdateError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    RefillsExhaustedError,
    ValidationError,
)
from .models import (
    DoctorPatientLink,
    Order,
    OrderItem,
    Prescription,
    PrescriptionItem,
    Profile,
    RefillRequest,
    Role,
)
from .notifications import notify
from .storage import upload_prescription_file

logger = logging.getLogger(__name__)

ADMIN_ONLY = [Role.ADMIN]
FILLABLE_STATUSES = ('approved', 'processing', 'partially_filled')
REVIEW_TRANSITIONS = {
    'pending': ('approved', 'rejected'),
    'approved': ('processing',),
    # 拒绝 refill 后由药剂师手动退回
    'refill_requested': ('partially_filled',),
}
ITEMS_LOCKED_STATUSES = ('rejected', 'filled')
QUANTITY_EDITABLE_STATUSES = ('pending', 'approved')
REFILL_DECISIONS = ('approved', 'rejected')


def store_operation(func):
    """存储层失败（超时 / 断连 / 约束冲突）统一转成 InternalError。"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as exc:
            logger.error('%s failed in the store: %s', func.__name__, exc)
            raise InternalError(cause=exc) from exc

    return wrapper


# ── helpers ──────────────────────────────────────────────────────────────────

def generate_prescription_number(when=None):
    """DDDMMMDD-HHMMSS，例如 MONJAN12-103055。"""
    when = timezone.localtime(when or timezone.now())
    return when.strftime('%a%b%d-%H%M%S').upper()


def _display_name(principal):
    """药剂师显示名：profile.full_name → email → Unknown。"""
    name = Profile.objects.filter(user_id=principal.user_id).values_list('full_name', flat=True).first()
    if name:
        return name
    email = get_user_model().objects.filter(pk=principal.user_id).values_list('email', flat=True).first()
    return email or 'Unknown'


def _prescription_not_found(prescription_id):
    return NotFoundError(
        message='Prescription not found',
        code='PRESCRIPTION_NOT_FOUND',
        detail={'prescription_id': str(prescription_id)},
    )


def _get_for_update(prescription_id):
    prescription = Prescription.objects.select_for_update().filter(pk=prescription_id).first()
    if prescription is None:
        raise _prescription_not_found(prescription_id)
    return prescription


def _load_items(prescription):
    return list(PrescriptionItem.objects.filter(prescription_id=prescription.pk))


def _item_not_found(item_id):
    return NotFoundError(
        message=f'Prescription item not found: {item_id}',
        code='ITEM_NOT_FOUND',
        detail={'item_id': str(item_id)},
    )


def visible_prescriptions(principal):
    """
    调用者视角下可见的处方。

    patient → 自己的；doctor → 自己提交的；admin → 全部。
    """
    require_role(principal, Role.values)
    queryset = Prescription.objects.all()
    if principal.role == Role.PATIENT:
        return queryset.filter(patient_id=principal.user_id)
    if principal.role == Role.DOCTOR:
        return queryset.filter(doctor_id=principal.user_id)
    return queryset


# ── 创建 / 查询 ──────────────────────────────────────────────────────────────

@store_operation
def create_prescription(actor, submission):
    """
    患者上传或医生提交处方。

    - patient: 只能给自己建，必须带文件，items 可选（药剂师之后录入）
    - doctor:  patient 必须是已关联的患者，至少一个 item
    """
    require_role(actor, [Role.PATIENT, Role.DOCTOR])

    if actor.role == Role.PATIENT:
        source, patient_id, doctor_id = 'patient', actor.user_id, None
        refill_limit = 0
        if submission.file is None:
            raise ValidationError('A prescription file is required', code='FILE_REQUIRED')
    else:
        source, patient_id, doctor_id = 'doctor', submission.patient_id, actor.user_id
        refill_limit = submission.refill_limit
        if patient_id is None:
            raise ValidationError('patientId is required for doctor submissions', code='PATIENT_REQUIRED')
        if not DoctorPatientLink.objects.filter(doctor_id=actor.user_id, patient_id=patient_id).exists():
            raise NotFoundError('Patient not found', code='PATIENT_NOT_FOUND', detail={'patient_id': patient_id})
        if not submission.items:
            raise ValidationError('At least one medication is required', code='NO_ITEMS')

    if any(item.id is not None for item in submission.items):
        raise ValidationError('New prescription items cannot carry an id', code='VALIDATION_ERROR')

    file_url = None
    if submission.file is not None:
        file_url = upload_prescription_file(
            submission.file.content, submission.file.content_type, submission.file.filename,
        )

    with transaction.atomic():
        prescription = Prescription.objects.create(
            prescription_number=generate_prescription_number(),
            source=source,
            patient_id=patient_id,
            doctor_id=doctor_id,
            status='pending',
            refill_limit=refill_limit,
            is_refillable=refill_limit > 0,
            file_url=file_url,
            notes=submission.notes or None,
        )
        PrescriptionItem.objects.bulk_create([
            PrescriptionItem(
                prescription=prescription,
                medication_name=item.medication_name,
                dosage=item.dosage,
                quantity=item.quantity,
                price=item.price,
                notes=item.notes or None,
            )
            for item in submission.items
        ])

    logger.info('prescription %s created (source=%s, patient_id=%s, items=%d)',
                prescription.prescription_number, source, patient_id, len(submission.items))
    return prescription


@store_operation
def get_prescription(prescription_id, actor):
    prescription = visible_prescriptions(actor).filter(pk=prescription_id).prefetch_related('items').first()
    if prescription is None:
        raise _prescription_not_found(prescription_id)
    return prescription


@store_operation
def list_prescriptions(actor, status=None):
    queryset = visible_prescriptions(actor).prefetch_related('items').order_by('-created_at')
    if status:
        queryset = queryset.filter(status=status)
    return list(queryset)


@store_operation
def list_refill_requests(actor, status=None):
    require_role(actor, [Role.PATIENT, Role.ADMIN])
    queryset = RefillRequest.objects.select_related('prescription')
    if actor.role == Role.PATIENT:
        queryset = queryset.filter(patient_id=actor.user_id)
    if status:
        queryset = queryset.filter(status=status)
    return list(queryset)


# ── 药剂师审核 / 录入 ────────────────────────────────────────────────────────

@store_operation
def review_prescription(prescription_id, new_status, actor, notes=None, refill_limit=None):
    """
    药剂师变更处方状态：pending → approved | rejected，approved → processing，
    refill_requested → partially_filled（refill 被拒后退回）。
    """
    require_role(actor, ADMIN_ONLY)

    allowed = {status for targets in REVIEW_TRANSITIONS.values() for status in targets}
    if new_status not in allowed:
        raise ValidationError(
            f'Invalid status: {new_status!r}',
            code='INVALID_STATUS',
            detail={'allowed': sorted(allowed)},
        )

    with transaction.atomic():
        prescription = _get_for_update(prescription_id)
        if new_status not in REVIEW_TRANSITIONS.get(prescription.status, ()):
            raise InvalidStateError(
                f'Cannot move prescription from {prescription.status} to {new_status}',
                detail={'status': prescription.status, 'requested': new_status},
            )

        if refill_limit is not None:
            if refill_limit < prescription.refill_count:
                raise ValidationError(
                    'Refill limit cannot be lower than refills already used',
                    code='INVALID_REFILL_LIMIT',
                    detail={'refillsUsed': prescription.refill_count},
                )
            prescription.refill_limit = refill_limit
            prescription.is_refillable = refill_limit > 0

        prescription.status = new_status
        if notes is not None:
            prescription.pharmacist_notes = notes
        prescription.save()

        if new_status == 'approved':
            notify('prescription_approved', prescription.patient, {
                'prescription_number': prescription.prescription_number,
                'medications': ', '.join(item.medication_name for item in _load_items(prescription)),
            })

    logger.info('prescription %s → %s by user_id=%s', prescription.pk, new_status, actor.user_id)
    return prescription


@store_operation
def save_prescription_items(prescription_id, items, actor):
    """
    药剂师录入 / 修改处方药品和价格。

    有 id 的更新，没有 id 的新建。开始发药后不允许再改数量。
    """
    require_role(actor, ADMIN_ONLY)

    with transaction.atomic():
        prescription = _get_for_update(prescription_id)
        if prescription.status in ITEMS_LOCKED_STATUSES:
            raise InvalidStateError(
                f'Cannot edit items of a {prescription.status} prescription',
                detail={'status': prescription.status},
            )

        existing = {item.id: item for item in _load_items(prescription)}
        for data in items:
            if data.price is not None and data.price < 0:
                raise ValidationError('Price cannot be negative', code='INVALID_PRICE')

            if data.id is None:
                PrescriptionItem.objects.create(
                    prescription=prescription,
                    medication_name=data.medication_name,
                    dosage=data.dosage,
                    quantity=data.quantity,
                    price=data.price,
                    notes=data.notes or None,
                )
                continue

            item = existing.get(data.id)
            if item is None:
                raise _item_not_found(data.id)
            if data.quantity != item.quantity and prescription.status not in QUANTITY_EDITABLE_STATUSES:
                raise ValidationError(
                    'Quantity cannot be changed once filling has started',
                    code='QUANTITY_LOCKED',
                    detail={'item_id': str(item.id), 'status': prescription.status},
                )
            item.medication_name = data.medication_name
            item.dosage = data.dosage
            item.quantity = data.quantity
            item.price = data.price
            item.notes = data.notes or None
            item.save()

    return _load_items(prescription)


# ── 发药 ─────────────────────────────────────────────────────────────────────

@store_operation
def fill_prescription(prescription_id, lines, actor):
    """
    按 item 发药。

    整批先全部校验，再写；每个 item 的写回以读到的 quantity 为条件。
    全部 item 的剩余数量为 0 → filled，否则 partially_filled。

    Raises:
        InvalidStateError:     状态不可发药
        NotFoundError:         item 不属于该处方
        ValidationError:       数量为负 / 超过未发数量 / 重复 item
        ConcurrentUpdateError: 读到的数量已被并发请求改掉
    """
    require_role(actor, ADMIN_ONLY)
    if not lines:
        raise ValidationError('At least one item is required', code='NO_FILL_ITEMS')

    pharmacist_name = _display_name(actor)

    with transaction.atomic():
        prescription = _get_for_update(prescription_id)
        if prescription.status not in FILLABLE_STATUSES:
            raise InvalidStateError(
                f'Cannot fill prescription with status: {prescription.status}',
                detail={'status': prescription.status, 'allowed': list(FILLABLE_STATUSES)},
            )

        items = {item.id: item for item in _load_items(prescription)}

        planned = []
        seen = set()
        for line in lines:
            item = items.get(line.item_id)
            if item is None:
                raise _item_not_found(line.item_id)
            if item.id in seen:
                raise ValidationError(
                    f'Item {item.id} appears more than once',
                    code='DUPLICATE_ITEM',
                    detail={'item_id': str(item.id)},
                )
            seen.add(item.id)
            if line.quantity_filled < 0:
                raise ValidationError(
                    'Quantity filled cannot be negative',
                    code='INVALID_QUANTITY',
                    detail={'item_id': str(item.id)},
                )
            if line.quantity_filled > item.quantity:
                raise ValidationError(
                    f'Quantity filled cannot exceed outstanding quantity for item {item.id}',
                    code='QUANTITY_EXCEEDS_OUTSTANDING',
                    detail={'item_id': str(item.id), 'outstanding': item.quantity, 'requested': line.quantity_filled},
                )
            planned.append((item, line.quantity_filled))

        now = timezone.now()
        for item, quantity_filled in planned:
            updated = PrescriptionItem.objects.filter(pk=item.pk, quantity=item.quantity).update(
                quantity=item.quantity - quantity_filled,
                quantity_filled=F('quantity_filled') + quantity_filled,
                updated_at=now,
            )
            if updated != 1:
                raise ConcurrentUpdateError(
                    'Prescription item was modified by another request; reload and retry',
                    detail={'item_id': str(item.id), 'expected_quantity': item.quantity},
                )
            item.quantity -= quantity_filled
            item.quantity_filled += quantity_filled

        fully_filled = all(item.quantity == 0 for item in items.values())
        prescription.status = 'filled' if fully_filled else 'partially_filled'
        prescription.filled_at = now
        prescription.pharmacist_name = pharmacist_name
        prescription.save(update_fields=['status', 'filled_at', 'pharmacist_name', 'updated_at'])

    logger.info('prescription %s filled by %s → %s (%d items)',
                prescription.pk, pharmacist_name, prescription.status, len(planned))
    return prescription, list(items.values())


# ── Refill ───────────────────────────────────────────────────────────────────

@store_operation
def request_refill(prescription_id, actor, reason=''):
    """
    患者申请 refill。

    非本人的处方按不存在处理（404），不做任何修改。
    同一处方已有 pending / approved 的申请时拒绝重复申请。
    """
    require_role(actor, Role.values)

    with transaction.atomic():
        prescription = (
            Prescription.objects.select_for_update()
            .filter(pk=prescription_id, patient_id=actor.user_id)
            .first()
        )
        if prescription is None:
            raise _prescription_not_found(prescription_id)

        if prescription.status != 'partially_filled':
            raise ValidationError(
                'Refill can only be requested while the prescription is partially filled',
                code='REFILL_NOT_ALLOWED',
                detail={'status': prescription.status},
            )
        if not prescription.is_refillable:
            raise ValidationError('This prescription is not refillable', code='NOT_REFILLABLE')
        if prescription.refill_count >= prescription.refill_limit:
            raise RefillsExhaustedError(prescription.refill_count, prescription.refill_limit)

        open_request = (
            RefillRequest.objects.filter(prescription=prescription, status__in=RefillRequest.OPEN_STATUSES)
            .only('id', 'status')
            .first()
        )
        if open_request is not None:
            raise BlockError(
                'A refill request for this prescription is already in progress',
                code='DUPLICATE_REFILL_REQUEST',
                detail={'refill_request_id': str(open_request.id), 'status': open_request.status},
            )

        refill_request = RefillRequest.objects.create(
            prescription=prescription,
            patient_id=actor.user_id,
            reason=reason or 'Refill requested',
            status='pending',
        )
        prescription.status = 'refill_requested'
        prescription.save(update_fields=['status', 'updated_at'])

    logger.info('refill requested for prescription %s by user_id=%s', prescription.pk, actor.user_id)
    return refill_request


@store_operation
def decide_refill_request(refill_request_id, decision, actor, notes=None):
    """
    药剂师批准 / 拒绝 refill 申请。

    批准：refill_status → refill_pending；拒绝：处方状态不自动变更。
    """
    require_role(actor, ADMIN_ONLY)
    if decision not in REFILL_DECISIONS:
        raise ValidationError("Status must be 'approved' or 'rejected'", code='INVALID_DECISION')

    with transaction.atomic():
        refill_request = RefillRequest.objects.select_for_update().filter(pk=refill_request_id).first()
        if refill_request is None:
            raise NotFoundError(
                'Refill request not found',
                code='REFILL_REQUEST_NOT_FOUND',
                detail={'refill_request_id': str(refill_request_id)},
            )
        if refill_request.status != 'pending':
            raise InvalidStateError(
                f'Refill request is already {refill_request.status}',
                detail={'status': refill_request.status},
            )

        refill_request.status = decision
        refill_request.approved_at = timezone.now()
        refill_request.approved_by_id = actor.user_id
        refill_request.notes = notes
        refill_request.save()

        prescription = _get_for_update(refill_request.prescription_id)
        if decision == 'approved':
            prescription.refill_status = 'refill_pending'
            prescription.save(update_fields=['refill_status', 'updated_at'])

        notify(f'refill_{decision}', refill_request.patient, {
            'prescription_number': prescription.prescription_number,
            'refills_remaining': prescription.refills_remaining,
            'reason': notes or '',
        })

    logger.info('refill request %s %s by user_id=%s', refill_request.pk, decision, actor.user_id)
    return refill_request


@store_operation
def process_refill(prescription_id, refill_quantities, actor):
    """
    药剂师执行 refill：refill_count + 1，处方回到 processing。

    refill_quantities 里列出的 item 重置为新一轮数量（quantity_filled = 0）；
    未给数量时恢复为原处方数量（quantity + quantity_filled）。
    已批准的 refill 申请标记为 fulfilled。

    Raises:
        RefillsExhaustedError: refill_count 已到 refill_limit
        ConcurrentUpdateError: refill_count 被并发请求改掉
    """
    require_role(actor, ADMIN_ONLY)

    with transaction.atomic():
        prescription = _get_for_update(prescription_id)
        if prescription.refill_count >= prescription.refill_limit:
            raise RefillsExhaustedError(prescription.refill_count, prescription.refill_limit)

        items = {item.id: item for item in _load_items(prescription)}
        resets = []
        for entry in refill_quantities or []:
            item = items.get(entry.item_id)
            if item is None:
                raise _item_not_found(entry.item_id)
            quantity = entry.quantity if entry.quantity is not None else item.quantity + item.quantity_filled
            if quantity <= 0:
                raise ValidationError(
                    'Refill quantity must be positive',
                    code='INVALID_QUANTITY',
                    detail={'item_id': str(item.id)},
                )
            resets.append((item, quantity))

        now = timezone.now()
        updated = Prescription.objects.filter(pk=prescription.pk, refill_count=prescription.refill_count).update(
            refill_count=F('refill_count') + 1,
            last_refilled_at=now,
            status='processing',
            refill_status='active',
            updated_at=now,
        )
        if updated != 1:
            raise ConcurrentUpdateError(
                'Prescription was refilled by another request; reload and retry',
                detail={'expected_refill_count': prescription.refill_count},
            )

        for item, quantity in resets:
            PrescriptionItem.objects.filter(pk=item.pk).update(quantity=quantity, quantity_filled=0, updated_at=now)

        fulfilled = RefillRequest.objects.filter(prescription=prescription, status='approved').update(
            status='fulfilled', updated_at=now,
        )
        prescription.refresh_from_db()

    logger.info('prescription %s refilled (%d/%d), %d refill request(s) fulfilled',
                prescription.pk, prescription.refill_count, prescription.refill_limit, fulfilled)
    return prescription


# ── 下单 ─────────────────────────────────────────────────────────────────────

@store_operation
def create_order_from_prescription(prescription_id, actor):
    """
    处方 → 订单。

    Order 先落库，再批量写 OrderItem；OrderItem 失败时删除刚建的 Order（补偿），
    然后抛 InternalError（cause 为原始插入异常）。

    Raises:
        ValidationError: 没有 item，或有 item 没有价格
        InternalError:   OrderItem 写入失败，或金额相关配置无效
    """
    require_role(actor, ADMIN_ONLY)

    prescription = Prescription.objects.select_related('patient').filter(pk=prescription_id).first()
    if prescription is None:
        raise _prescription_not_found(prescription_id)

    items = _load_items(prescription)
    if not items:
        raise ValidationError('Prescription has no items', code='NO_ITEMS')

    unpriced = [item for item in items if item.price is None or item.price <= 0]
    if unpriced:
        raise ValidationError(
            'All medications must have prices before creating an order',
            code='MISSING_PRICES',
            detail={'items': [{'id': str(item.id), 'medication_name': item.medication_name} for item in unpriced]},
        )

    config = current_payment_config()
    try:
        totals = compute_totals(items, config)
    except ValueError as exc:
        # PRESCRIPTION_PRICE_MODE / SHIPPING_RATE_PROVIDER / tax_type 配置错误
        logger.error('order pricing failed for prescription %s: %s', prescription.pk, exc)
        raise InternalError('Order pricing is misconfigured', cause=exc, code='PRICING_MISCONFIGURED') from exc

    order = Order.objects.create(
        order_number=generate_order_number(),
        user_id=prescription.patient_id,
        prescription=prescription,
        status='pending',
        subtotal_amount=totals.subtotal,
        tax_amount=totals.tax,
        shipping_amount=totals.shipping,
        total_amount=totals.total,
        payment_status='unpaid',
        is_prescription_order=True,
    )

    try:
        with transaction.atomic():
            OrderItem.objects.bulk_create([
                OrderItem(
                    order=order,
                    drug_name=item.medication_name,
                    quantity=billed_quantity(item),
                    total_price=line_total(item),
                )
                for item in items
            ])
    except DatabaseError as exc:
        logger.error('order items insert failed for order %s: %s; removing order', order.order_number, exc)
        Order.objects.filter(pk=order.pk).delete()
        raise InternalError('Failed to create order items', cause=exc, code='ORDER_ITEMS_FAILED') from exc

    notify('order_created', prescription.patient, {
        'order_number': order.order_number,
        'total': str(order.total_amount),
    })

    logger.info('order %s created from prescription %s (total=%s)',
                order.order_number, prescription.pk, order.total_amount)
    return order
