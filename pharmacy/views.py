import logging

from django.contrib.auth import authenticate, login, logout
from django.conf import settings
from django.http import JsonResponse
from django.middleware.csrf import get_token
from rest_framework.views import APIView

from . import services
from .auth import create_session_token, issue_access_token, lookup_role, revoke_session_token
from .auth.authentication import PrincipalAuthentication
from .exceptions import UnauthorizedError, ValidationError
from .intake import (
    parse_decision,
    parse_fill_lines,
    parse_item_inputs,
    parse_refill_quantities,
    parse_review,
    parse_submission,
)
from .serializers import (
    serialize_item,
    serialize_order,
    serialize_prescription,
    serialize_prescription_list,
    serialize_refill_request,
    serialize_refill_request_list,
)

logger = logging.getLogger(__name__)


class LoginView(APIView):
    """POST /api/auth/login - Password login; returns access token and fallback session token"""

    authentication_classes = []

    def post(self, request):
        username = (request.data.get('username') or request.data.get('email') or '').strip()
        password = request.data.get('password') or ''
        if not username or not password:
            raise ValidationError('Username and password are required', code='VALIDATION_ERROR')

        user = authenticate(request._request, username=username, password=password)
        if user is None:
            logger.info('login failed for %s', username)
            raise UnauthorizedError('Invalid credentials', code='INVALID_CREDENTIALS')

        role = lookup_role(user.pk)
        if role is None:
            logger.warning('user_id=%s has no profile; login refused', user.pk)
            raise UnauthorizedError('Account is not set up', code='PROFILE_MISSING')

        login(request._request, user)
        session = create_session_token(user)
        # cookie session 的写请求要带 X-CSRFToken；login() 会轮换 token，这里取新的并下发 csrftoken cookie
        csrf_token = get_token(request._request)

        response = JsonResponse({
            'user_id': user.pk,
            'role': role,
            'access_token': issue_access_token(user),
            'token_type': 'Bearer',
            'expires_in': settings.ACCESS_TOKEN_TTL_SECONDS,
            'session_token': session.token,
            'session_expires_at': session.expires_at.isoformat(),
            'csrf_token': csrf_token,
        })
        response.set_cookie(
            settings.SESSION_TOKEN_COOKIE,
            session.token,
            max_age=settings.SESSION_TOKEN_TTL_SECONDS,
            httponly=True,
            samesite='Lax',
        )
        return response


class LogoutView(APIView):
    """POST /api/auth/logout - Revoke fallback session token and end cookie session"""

    authentication_classes = []

    def post(self, request):
        # 结束 cookie session 也是写操作，和其他接口一样要过 CSRF
        if request._request.user.is_authenticated:
            PrincipalAuthentication().enforce_csrf(request)

        token = (
            request.headers.get(settings.SESSION_TOKEN_HEADER)
            or request.COOKIES.get(settings.SESSION_TOKEN_COOKIE)
        )
        revoked = revoke_session_token(token.strip()) if token else False
        logout(request._request)

        response = JsonResponse({'logged_out': True, 'session_token_revoked': revoked})
        response.delete_cookie(settings.SESSION_TOKEN_COOKIE)
        return response


class PrescriptionListCreateView(APIView):
    """
    GET  /api/prescriptions/ - List prescriptions visible to the caller
    POST /api/prescriptions/ - Patient upload or doctor submission
    """

    def get(self, request):
        prescriptions = services.list_prescriptions(request.auth, status=request.query_params.get('status'))
        return JsonResponse(serialize_prescription_list(prescriptions))

    def post(self, request):
        submission = parse_submission(request.data, request.FILES.get('file'))
        prescription = services.create_prescription(request.auth, submission)
        return JsonResponse(serialize_prescription(prescription), status=201)


class PrescriptionDetailView(APIView):
    """GET /api/prescriptions/<id>/ - Prescription detail with items"""

    def get(self, request, prescription_id):
        prescription = services.get_prescription(prescription_id, request.auth)
        return JsonResponse(serialize_prescription(prescription))


class RefillRequestCreateView(APIView):
    """POST /api/prescriptions/<id>/request-refill/ - Patient asks for a refill"""

    def post(self, request, prescription_id):
        reason = (request.data.get('reason') or '').strip()
        refill_request = services.request_refill(prescription_id, request.auth, reason=reason)
        return JsonResponse(serialize_refill_request(refill_request), status=201)


class RefillRequestListView(APIView):
    """GET /api/refill-requests/ - Patient: own requests; admin: all"""

    def get(self, request):
        refill_requests = services.list_refill_requests(request.auth, status=request.query_params.get('status'))
        return JsonResponse(serialize_refill_request_list(refill_requests))


# ── admin ────────────────────────────────────────────────────────────────────

class PrescriptionStatusView(APIView):
    """PATCH /api/admin/prescriptions/<id>/status/ - Approve / reject / start processing"""

    def patch(self, request, prescription_id):
        status, notes, refill_limit = parse_review(request.data)
        prescription = services.review_prescription(
            prescription_id, status, request.auth, notes=notes, refill_limit=refill_limit,
        )
        return JsonResponse(serialize_prescription(prescription))


class PrescriptionItemsView(APIView):
    """PUT /api/admin/prescriptions/<id>/items/ - Enter medications and prices"""

    def put(self, request, prescription_id):
        items = parse_item_inputs(request.data.get('items'))
        saved = services.save_prescription_items(prescription_id, items, request.auth)
        return JsonResponse({'items': [serialize_item(item) for item in saved]})


class PrescriptionFillView(APIView):
    """POST /api/admin/prescriptions/<id>/fill/ - Dispense quantities per item"""

    def post(self, request, prescription_id):
        lines = parse_fill_lines(request.data)
        prescription, items = services.fill_prescription(prescription_id, lines, request.auth)
        return JsonResponse(serialize_prescription(prescription, items))


class PrescriptionProcessRefillView(APIView):
    """POST /api/admin/prescriptions/<id>/process-refill/ - Start the next refill cycle"""

    def post(self, request, prescription_id):
        quantities = parse_refill_quantities(request.data)
        prescription = services.process_refill(prescription_id, quantities, request.auth)
        return JsonResponse(serialize_prescription(prescription))


class PrescriptionCreateOrderView(APIView):
    """POST /api/admin/prescriptions/<id>/create-order/ - Convert prescription into an order"""

    def post(self, request, prescription_id):
        order = services.create_order_from_prescription(prescription_id, request.auth)
        return JsonResponse(serialize_order(order), status=201)


class RefillRequestDecisionView(APIView):
    """PATCH /api/admin/refill-requests/<id>/ - Approve or reject a refill request"""

    def patch(self, request, refill_request_id):
        decision, notes = parse_decision(request.data)
        refill_request = services.decide_refill_request(refill_request_id, decision, request.auth, notes=notes)
        return JsonResponse(serialize_refill_request(refill_request))
