"""
请求体 → 标准输入结构（types.py）。

每个 parse_* 收集全部字段错误后一次性抛出 ValidationError，
detail 格式：{"errors": [{"field": "...", "message": "..."}]}
"""
import json
import uuid
from decimal import Decimal, InvalidOperation

from .exceptions import ValidationError
from .types import FillLine, ItemInput, PrescriptionSubmission, RefillQuantity, UploadedFile


def _raise_if(errors):
    if errors:
        raise ValidationError(
            message='Request validation failed.',
            code='VALIDATION_ERROR',
            detail={'errors': errors},
        )


def _uuid(value, field, errors):
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        errors.append({'field': field, 'message': f'Invalid id: {value!r}.'})
        return None


def _int(value, field, errors):
    # bool 是 int 的子类，单独排除
    if isinstance(value, bool):
        errors.append({'field': field, 'message': 'Must be an integer.'})
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        errors.append({'field': field, 'message': 'Must be an integer.'})
        return None
    return number


def _decimal(value, field, errors):
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        errors.append({'field': field, 'message': 'Must be a number.'})
        return None


def _list(data, key, errors):
    value = (data or {}).get(key)
    if not isinstance(value, list):
        errors.append({'field': key, 'message': 'Must be a list.'})
        return []
    return value


def parse_fill_lines(data):
    """{"items": [{"itemId": ..., "quantityFilled": n}, ...]} → list[FillLine]"""
    errors = []
    rows = _list(data, 'items', errors)
    if not errors and not rows:
        errors.append({'field': 'items', 'message': 'At least one item is required.'})

    lines = []
    seen = set()
    for i, row in enumerate(rows):
        row = row if isinstance(row, dict) else {}
        item_id = _uuid(row.get('itemId'), f'items[{i}].itemId', errors)
        qty = _int(row.get('quantityFilled'), f'items[{i}].quantityFilled', errors)
        if item_id is not None and item_id in seen:
            errors.append({'field': f'items[{i}].itemId', 'message': 'Duplicate item in fill request.'})
        seen.add(item_id)
        if item_id is not None and qty is not None:
            lines.append(FillLine(item_id=item_id, quantity_filled=qty))

    _raise_if(errors)
    return lines


def parse_refill_quantities(data):
    """{"items": [{"itemId": ..., "quantity": n?}, ...]}，items 可省略。"""
    if not (data or {}).get('items'):
        return []

    errors = []
    result = []
    for i, row in enumerate(_list(data, 'items', errors)):
        row = row if isinstance(row, dict) else {}
        item_id = _uuid(row.get('itemId'), f'items[{i}].itemId', errors)
        qty = None
        if row.get('quantity') is not None:
            qty = _int(row.get('quantity'), f'items[{i}].quantity', errors)
        if item_id is not None:
            result.append(RefillQuantity(item_id=item_id, quantity=qty))

    _raise_if(errors)
    return result


def parse_item_inputs(rows, field='items'):
    errors = []
    items = []
    if not isinstance(rows, list):
        _raise_if([{'field': field, 'message': 'Must be a list.'}])

    for i, row in enumerate(rows):
        row = row if isinstance(row, dict) else {}
        prefix = f'{field}[{i}]'
        name = (row.get('medicationName') or row.get('medication_name') or '').strip()
        if not name:
            errors.append({'field': f'{prefix}.medicationName', 'message': 'Medication name is required.'})
        qty = _int(row.get('quantity'), f'{prefix}.quantity', errors)
        if qty is not None and qty < 0:
            errors.append({'field': f'{prefix}.quantity', 'message': 'Quantity cannot be negative.'})
        price = None
        if row.get('price') not in (None, ''):
            price = _decimal(row.get('price'), f'{prefix}.price', errors)
        item_id = _uuid(row['id'], f'{prefix}.id', errors) if row.get('id') else None

        items.append(ItemInput(
            id=item_id,
            medication_name=name,
            quantity=qty or 0,
            dosage=(row.get('dosage') or '').strip(),
            price=price,
            notes=(row.get('notes') or '').strip(),
        ))

    _raise_if(errors)
    return items


def parse_submission(data, uploaded=None):
    """
    POST /api/prescriptions/ 的请求体。

    JSON 或 multipart 都可以；multipart 时 items 以 JSON 字符串传入。
    """
    data = data or {}
    errors = []

    patient_id = None
    if data.get('patientId') not in (None, ''):
        patient_id = _int(data.get('patientId'), 'patientId', errors)

    refill_limit = 0
    if data.get('refillLimit') not in (None, ''):
        refill_limit = _int(data.get('refillLimit'), 'refillLimit', errors) or 0
        if refill_limit < 0:
            errors.append({'field': 'refillLimit', 'message': 'Cannot be negative.'})

    raw_items = data.get('items') or []
    if isinstance(raw_items, str):
        try:
            raw_items = json.loads(raw_items)
        except ValueError:
            errors.append({'field': 'items', 'message': 'Must be a JSON list.'})
            raw_items = []

    _raise_if(errors)

    file = None
    if uploaded is not None:
        file = UploadedFile(
            content=uploaded.read(),
            content_type=getattr(uploaded, 'content_type', '') or '',
            filename=getattr(uploaded, 'name', '') or '',
        )

    return PrescriptionSubmission(
        patient_id=patient_id,
        items=parse_item_inputs(raw_items),
        refill_limit=refill_limit,
        notes=(data.get('notes') or '').strip(),
        file=file,
    )


def parse_review(data):
    """PATCH /api/admin/prescriptions/<id>/status/ → (status, notes, refill_limit)"""
    data = data or {}
    errors = []

    status = data.get('status')
    if not isinstance(status, str) or not status.strip():
        errors.append({'field': 'status', 'message': 'Status is required.'})
        status = None

    refill_limit = None
    if data.get('refillLimit') not in (None, ''):
        refill_limit = _int(data.get('refillLimit'), 'refillLimit', errors)
        if refill_limit is not None and refill_limit < 0:
            errors.append({'field': 'refillLimit', 'message': 'Cannot be negative.'})

    _raise_if(errors)
    return status.strip(), data.get('notes'), refill_limit


def parse_decision(data):
    """PATCH /api/admin/refill-requests/<id>/ → (decision, notes)"""
    data = data or {}
    status = data.get('status')
    if status not in ('approved', 'rejected'):
        _raise_if([{'field': 'status', 'message': "Must be 'approved' or 'rejected'."}])
    return status, data.get('notes')
