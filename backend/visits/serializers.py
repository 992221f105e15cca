"""
Response serializers — ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
response_payload（保险机构原始响应）只在 history 里按需输出，详情页不返回。
"""


def serialize_verification(verification, include_payload=False):
    if verification is None:
        return None

    data = {
        'verification_id': str(verification.id),
        'card_no': verification.card_no,
        'visit_type_id': verification.visit_type_id,
        'referral_no': verification.referral_no or None,
        'remarks_sent': verification.remarks_sent or None,
        'card_status': verification.card_status or None,
        'authorization_status': verification.authorization_status,
        'authorization_no': verification.authorization_no or None,
        'member_name': verification.member_name or None,
        'remarks': verification.response_remarks or None,
        'verified_by': verification.verified_by,
        'verified_at': verification.verified_at.isoformat(),
        'is_active': verification.is_active,
    }
    if include_payload:
        data['response_payload'] = verification.response_payload
    return data


def serialize_visit(visit, authorization=None, gate=None):
    """Serialize visit detail; authorization / gate 由调用方传入，serializer 不查库。"""
    response = {
        'visit_id': str(visit.id),
        'patient_id': visit.patient_id,
        'visit_date': visit.visit_date.isoformat(),
        'visit_time': visit.visit_time.isoformat(timespec='seconds'),
        'department': visit.department,
        'funding_type': visit.funding_type,
        'insurer': visit.insurer or None,
        'status': visit.status,
        'created_at': visit.created_at.isoformat(),
        'updated_at': visit.updated_at.isoformat(),
        'created_by': visit.created_by,
        'updated_by': visit.updated_by or None,
    }

    if visit.cancel_reason:
        response['cancel_reason'] = visit.cancel_reason
    if visit.converted_to_cash_at:
        response['cash_conversion'] = {
            'reason': visit.cash_conversion_reason,
            'converted_at': visit.converted_to_cash_at.isoformat(),
        }

    response['authorization'] = serialize_verification(authorization)
    if gate is not None:
        response['gate'] = gate.to_dict()
    return response


def serialize_verify_result(verification, result, gate):
    """Serialize 一次 verify 调用的结果。"""
    return {
        'outcome': result.outcome.value,
        'verification': serialize_verification(verification),
        'gate': gate.to_dict(),
    }


def serialize_history(verifications, total, limit, offset):
    results = [serialize_verification(v, include_payload=True) for v in verifications]
    return {
        'count': total,
        'limit': limit,
        'offset': offset,
        'verifications': results,
    }
