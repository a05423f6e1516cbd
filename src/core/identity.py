from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import requests
from jose import JWTError, jwt

from src.core.config import settings

logger = logging.getLogger(__name__)

ORG_ADMIN_ROLE = "org:admin"


class IdentityGatewayError(RuntimeError):
    pass


class InvalidTokenError(IdentityGatewayError):
    pass


@dataclass(slots=True)
class UserProfile:
    email: str
    first_name: str = ""
    last_name: str = ""


@dataclass(slots=True)
class IdentityClaims:
    user_ref: str
    email: str | None = None
    org_ref: str | None = None
    claims: dict = field(default_factory=dict)


class JwksCache:
    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._jwks: dict | None = None
        self._fetched_at = 0.0

    def get(self, url: str) -> dict:
        now = time.time()
        if self._jwks is None or (now - self._fetched_at) > self.ttl_seconds:
            response = requests.get(url, timeout=5)
            response.raise_for_status()
            self._jwks = response.json()
            self._fetched_at = now
        return self._jwks


class ClerkIdentityGateway:
    """Clerk Backend API client covering organizations, users, memberships and session tokens.

    Every write tolerates being replayed: user creation looks the email up first and
    membership creation treats "already a member" as success.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        secret_key: str | None = None,
        jwks_url: str | None = None,
        issuer: str | None = None,
        audience: str | None = None,
        jwks_cache: JwksCache | None = None,
        timeout: int = 8,
    ) -> None:
        self.base_url = (base_url or settings.clerk_api_base_url).rstrip("/")
        self.secret_key = settings.clerk_secret_key if secret_key is None else secret_key
        self.jwks_url = jwks_url or settings.clerk_jwks_url
        self.issuer = issuer or settings.clerk_issuer
        self.audience = settings.clerk_audience if audience is None else audience
        self.jwks_cache = jwks_cache or JwksCache()
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> requests.Response:
        if not self.is_configured():
            raise IdentityGatewayError("CLERK_SECRET_KEY is not configured")

        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.secret_key}"},
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise IdentityGatewayError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response, action: str) -> None:
        if response.status_code >= 400:
            raise IdentityGatewayError(f"{action} failed with status={response.status_code}: {response.text[:300]}")

    def create_organization(self, name: str, external_id: str) -> str:
        response = self._request(
            "POST",
            "/organizations",
            json={"name": name, "private_metadata": {"external_id": external_id}},
        )
        self._raise_for_status(response, "create organization")
        org_ref = response.json().get("id")
        if not org_ref:
            raise IdentityGatewayError("create organization returned no id")
        return org_ref

    def find_user_by_email(self, email: str) -> str | None:
        response = self._request("GET", "/users", params={"email_address": [email]})
        self._raise_for_status(response, "lookup user")
        users = response.json() or []
        if isinstance(users, dict):
            users = users.get("data") or []
        return users[0].get("id") if users else None

    def create_user(self, profile: UserProfile, *, org_ref: str | None = None) -> str:
        existing = self.find_user_by_email(profile.email)
        if existing:
            return existing

        payload: dict[str, object] = {
            "email_address": [profile.email],
            "first_name": profile.first_name or None,
            "last_name": profile.last_name or None,
            "skip_password_requirement": True,
        }
        if org_ref:
            payload["public_metadata"] = {"primary_org_ref": org_ref}

        response = self._request("POST", "/users", json=payload)
        self._raise_for_status(response, "create user")
        user_ref = response.json().get("id")
        if not user_ref:
            raise IdentityGatewayError("create user returned no id")
        return user_ref

    def get_user_organizations(self, user_ref: str) -> list[str]:
        response = self._request("GET", f"/users/{user_ref}/organization_memberships")
        self._raise_for_status(response, "list memberships")
        body = response.json() or {}
        memberships = body.get("data", []) if isinstance(body, dict) else body
        return [
            (membership.get("organization") or {}).get("id")
            for membership in memberships
            if (membership.get("organization") or {}).get("id")
        ]

    def remove_user_from_organization(self, user_ref: str, org_ref: str) -> None:
        response = self._request("DELETE", f"/organizations/{org_ref}/memberships/{user_ref}")
        if response.status_code == 404:
            return
        self._raise_for_status(response, "remove membership")

    def assign_user_to_organization(self, user_ref: str, org_ref: str, *, exclusive: bool = False) -> None:
        if "@" in user_ref:
            resolved = self.find_user_by_email(user_ref)
            if not resolved:
                raise IdentityGatewayError(f"No identity user exists for email={user_ref}")
            user_ref = resolved

        if exclusive:
            for other_org in self.get_user_organizations(user_ref):
                if other_org != org_ref:
                    self.remove_user_from_organization(user_ref, other_org)

        response = self._request(
            "POST",
            f"/organizations/{org_ref}/memberships",
            json={"user_id": user_ref, "role": ORG_ADMIN_ROLE},
        )
        if response.status_code in {400, 409, 422} and "already" in response.text.lower():
            return
        self._raise_for_status(response, "create membership")

    def _signing_key(self, token: str) -> dict:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError("Invalid authentication header") from exc

        kid = header.get("kid")
        if not kid:
            raise InvalidTokenError("JWT is missing key id")

        try:
            jwks = self.jwks_cache.get(self.jwks_url)
        except requests.RequestException as exc:
            raise IdentityGatewayError(f"JWKS fetch failed: {exc}") from exc

        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        raise InvalidTokenError("No matching signing key found")

    def validate_token(self, token: str) -> IdentityClaims:
        key = self._signing_key(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                issuer=self.issuer,
                audience=self.audience or None,
                options={"verify_aud": bool(self.audience)},
            )
        except JWTError as exc:
            raise InvalidTokenError("Invalid or expired token") from exc

        subject = claims.get("sub")
        if not subject:
            raise InvalidTokenError("Token is missing subject")

        return IdentityClaims(
            user_ref=subject,
            email=claims.get("email") or claims.get("primary_email"),
            org_ref=claims.get("org_id"),
            claims=claims,
        )
