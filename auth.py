import sys
from typing import Any, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings, get_settings
from errors import AuthError


class TokenVerifier:
    """Signs and verifies the bearer tokens that carry a caller's identity."""

    def __init__(self, secret: str, max_age_secs: int) -> None:
        self._serializer = URLSafeTimedSerializer(secret, salt="access-token")
        self.max_age_secs = max_age_secs

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifier":
        return cls(settings.auth_secret, settings.token_max_age_secs)

    def issue(self, user_id: str) -> str:
        return self._serializer.dumps({"sub": user_id})

    def verify(self, token: str) -> str:
        try:
            data: Any = self._serializer.loads(token, max_age=self.max_age_secs)
        except BadSignature as exc:
            raise AuthError("Invalid or expired token") from exc

        subject = data.get("sub") if isinstance(data, dict) else None
        if not subject:
            raise AuthError("Invalid or expired token")
        return str(subject)


def resolve_user_id(
    authorization: Optional[str], verifier: TokenVerifier, settings: Settings
) -> str:
    if not authorization:
        if settings.is_development:
            return settings.dev_user_id
        raise AuthError("Authorization header is required")

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme != "Bearer" or not token:
        raise AuthError("Invalid authorization format. Use Bearer token")
    return verifier.verify(token)


def main() -> None:
    if len(sys.argv) != 2:
        print("usage: budget-api-token <user-id>", file=sys.stderr)
        raise SystemExit(2)
    print(TokenVerifier.from_settings(get_settings()).issue(sys.argv[1]))


if __name__ == "__main__":
    main()
