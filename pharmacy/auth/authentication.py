from rest_framework.authentication import BaseAuthentication, CSRFCheck
from rest_framework.exceptions import PermissionDenied

from .resolver import resolve_principal


class PrincipalAuthentication(BaseAuthentication):
    """
    DRF authentication class，包装 resolve_principal()。

    成功时 request.user = Django user，request.auth = Principal。
    cookie session 这条路径和 DRF SessionAuthentication 一样强制 CSRF。
    """

    def authenticate(self, request):
        principal = resolve_principal(request)
        if principal is None:
            return None

        if principal.via == 'cookie':
            self.enforce_csrf(request)
        return (principal.user, principal)

    def authenticate_header(self, request):
        return 'Bearer'

    def enforce_csrf(self, request):
        def dummy_get_response(request):
            return None

        check = CSRFCheck(dummy_get_response)
        check.process_request(request)
        reason = check.process_view(request, None, (), {})
        if reason:
            raise PermissionDenied('CSRF Failed: %s' % reason)
