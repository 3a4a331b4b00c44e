from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from fastapi import Header, HTTPException, Request, status

ACCESS_TOKEN_TTL = timedelta(hours=1)


@dataclass(slots=True)
class Account:
    user_id: str
    email: str
    password: str


@dataclass(slots=True)
class IssuedToken:
    user_id: str
    expires_at: datetime


@dataclass(slots=True)
class Principal:
    user_id: str
    access_token: str
    email: str | None = None


@dataclass
class TokenRegistry:
    """In-memory accounts, bearer tokens and one-shot OAuth codes."""

    ttl: timedelta = ACCESS_TOKEN_TTL
    accounts: dict[str, Account] = field(default_factory=dict)
    access_tokens: dict[str, IssuedToken] = field(default_factory=dict)
    refresh_tokens: dict[str, str] = field(default_factory=dict)
    oauth_codes: dict[str, str] = field(default_factory=dict)

    def register(self, email: str, password: str, *, user_id: str | None = None) -> Account:
        account = Account(user_id=user_id or secrets.token_hex(8), email=email.lower(), password=password)
        self.accounts[account.email] = account
        return account

    def issue_code(self, email: str) -> str:
        """Mint the code an OAuth provider would hand back to the client."""

        account = self._account(email)
        code = secrets.token_urlsafe(16)
        self.oauth_codes[code] = account.email
        return code

    def login(self, email: str, password: str) -> dict[str, object]:
        account = self.accounts.get(email.lower())
        if account is None or not secrets.compare_digest(account.password, password):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credentials")
        return self._issue(account)

    def exchange(self, code: str) -> dict[str, object]:
        email = self.oauth_codes.pop(code, None)
        if email is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid code")
        return self._issue(self._account(email))

    def refresh(self, refresh_token: str) -> dict[str, object]:
        email = self.refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid refresh token")
        return self._issue(self._account(email))

    def revoke(self, access_token: str) -> None:
        self.access_tokens.pop(access_token, None)

    def authenticate(self, access_token: str) -> Principal:
        issued = self.access_tokens.get(access_token)
        if issued is None or issued.expires_at <= datetime.now(tz=UTC):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid or expired token")
        email = next((acc.email for acc in self.accounts.values() if acc.user_id == issued.user_id), None)
        return Principal(user_id=issued.user_id, access_token=access_token, email=email)

    def _account(self, email: str) -> Account:
        account = self.accounts.get(email.lower())
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown account")
        return account

    def _issue(self, account: Account) -> dict[str, object]:
        access_token = secrets.token_urlsafe(24)
        refresh_token = secrets.token_urlsafe(24)
        expires_at = datetime.now(tz=UTC) + self.ttl
        self.access_tokens[access_token] = IssuedToken(user_id=account.user_id, expires_at=expires_at)
        self.refresh_tokens[refresh_token] = account.email
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": int(self.ttl.total_seconds()),
            "user": {"id": account.user_id, "email": account.email},
        }


def _bearer(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "missing_token"},
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_authorization", "scheme": scheme},
        )
    return token.strip()


async def principal_dependency(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
) -> Principal:
    registry: TokenRegistry = request.app.state.auth
    return registry.authenticate(_bearer(authorization))


__all__ = [
    "ACCESS_TOKEN_TTL",
    "Account",
    "Principal",
    "TokenRegistry",
    "principal_dependency",
]
