from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError
from rest_framework.exceptions import AuthenticationFailed
from django.conf import settings


class CookieJWTAuthentication(JWTAuthentication):
    """
    JWT authentication for lottery users.

    The access-token cookie is tried first, then the Authorization header,
    so an expired cookie does not hide a valid header token. Blocked users
    are rejected outright instead of falling through to anonymous access.
    """

    def candidate_tokens(self, request):
        cookie_token = request.COOKIES.get(settings.COOKIE_ACCESS_TOKEN_NAME)
        if cookie_token:
            yield cookie_token

        header = self.get_header(request)
        if header is not None:
            header_token = self.get_raw_token(header)
            if header_token is not None:
                yield header_token

    def authenticate(self, request):
        for raw_token in self.candidate_tokens(request):
            try:
                validated_token = self.get_validated_token(raw_token)
                user = self.get_user(validated_token)
            except (InvalidToken, TokenError):
                continue

            if user.is_blocked:
                raise AuthenticationFailed('This account has been blocked', code='user_blocked')

            return user, validated_token

        return None
