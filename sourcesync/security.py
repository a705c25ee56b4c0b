from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import jwt

from sourcesync.errors import UnauthorizedError

_SENSITIVE_KEYS = {
    "authorization",
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "access_token",
    "credentials",
    "authentication",
}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def redact_sensitive(value: object) -> object:
    if isinstance(value, Mapping):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass
class AuthContext:
    tenant_id: str
    subject: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(env.get("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")),
            tenant_claim=env.get("JWT_TENANT_CLAIM", "tenant_id").strip() or "tenant_id",
        )


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise UnauthorizedError("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise UnauthorizedError("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise UnauthorizedError("empty bearer token")
    if not cfg.shared_secret:
        raise UnauthorizedError("jwt shared secret not configured")

    try:
        claims = jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=["HS256"],
            issuer=cfg.issuer or None,
            audience=cfg.audience or None,
            options={
                "require": cfg.required_claims,
                "verify_aud": bool(cfg.audience),
                "verify_iss": bool(cfg.issuer),
            },
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("token expired") from None
    except jwt.InvalidIssuerError:
        raise UnauthorizedError("jwt issuer mismatch") from None
    except jwt.InvalidAudienceError:
        raise UnauthorizedError("jwt audience mismatch") from None
    except jwt.MissingRequiredClaimError as exc:
        raise UnauthorizedError(f"missing required claim: {exc.claim}") from None
    except jwt.InvalidTokenError:
        raise UnauthorizedError("invalid token") from None

    tenant_id = str(claims.get(cfg.tenant_claim) or "").strip()
    subject = str(claims.get("sub") or "").strip()
    if not tenant_id or not subject:
        raise UnauthorizedError("missing tenant or subject claim")
    return AuthContext(tenant_id=tenant_id, subject=subject, claims=claims)
