"""
Response serializers — ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 pharmacy/intake.py。
"""


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return str(value) if value is not None else None


def serialize_item(item):
    return {
        'id': str(item.id),
        'medication_name': item.medication_name,
        'dosage': item.dosage,
        'quantity': item.quantity,
        'quantity_filled': item.quantity_filled,
        'price': _money(item.price),
        'notes': item.notes,
    }


def serialize_prescription(prescription, items=None):
    """Serialize prescription with its items."""
    if items is None:
        items = prescription.items.all()
    return {
        'id': str(prescription.id),
        'prescription_number': prescription.prescription_number,
        'source': prescription.source,
        'patient_id': prescription.patient_id,
        'doctor_id': prescription.doctor_id,
        'status': prescription.status,
        'refill_status': prescription.refill_status,
        'is_refillable': prescription.is_refillable,
        'refill_limit': prescription.refill_limit,
        'refill_count': prescription.refill_count,
        'refills_remaining': prescription.refills_remaining,
        'last_refilled_at': _iso(prescription.last_refilled_at),
        'file_url': prescription.file_url,
        'notes': prescription.notes,
        'pharmacist_notes': prescription.pharmacist_notes,
        'pharmacist_name': prescription.pharmacist_name,
        'filled_at': _iso(prescription.filled_at),
        'created_at': _iso(prescription.created_at),
        'updated_at': _iso(prescription.updated_at),
        'items': [serialize_item(item) for item in items],
    }


def serialize_prescription_list(prescriptions):
    results = [serialize_prescription(p) for p in prescriptions]
    return {
        'count': len(results),
        'prescriptions': results,
    }


def serialize_refill_request(refill_request):
    return {
        'id': str(refill_request.id),
        'prescription_id': str(refill_request.prescription_id),
        'patient_id': refill_request.patient_id,
        'status': refill_request.status,
        'reason': refill_request.reason,
        'notes': refill_request.notes,
        'requested_at': _iso(refill_request.requested_at),
        'approved_at': _iso(refill_request.approved_at),
        'approved_by': refill_request.approved_by_id,
    }


def serialize_refill_request_list(refill_requests):
    results = [serialize_refill_request(r) for r in refill_requests]
    return {
        'count': len(results),
        'refill_requests': results,
    }


def serialize_order(order):
    """Serialize order for 201 creation response."""
    return {
        'id': str(order.id),
        'order_number': order.order_number,
        'prescription_id': str(order.prescription_id) if order.prescription_id else None,
        'user_id': order.user_id,
        'status': order.status,
        'payment_status': order.payment_status,
        'is_prescription_order': order.is_prescription_order,
        'subtotal_amount': _money(order.subtotal_amount),
        'tax_amount': _money(order.tax_amount),
        'shipping_amount': _money(order.shipping_amount),
        'total_amount': _money(order.total_amount),
        'items': [
            {
                'drug_name': item.drug_name,
                'quantity': item.quantity,
                'total_price': _money(item.total_price),
            }
            for item in order.items.all()
        ],
        'created_at': _iso(order.created_at),
    }
