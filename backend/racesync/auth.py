from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import redis
from authlib.jose import JsonWebToken
from authlib.jose.errors import ExpiredTokenError, JoseError
from fastapi import Depends, Header, Request

from .errors import AuthError, ValidationError
from .keys import CHIEF_JUDGE_PIN_KEY, CLIENT_PIN_KEY
from .settings import Settings, settings

log = logging.getLogger(__name__)

ROLES = ("timer", "gateJudge", "chiefJudge")
DEFAULT_ROLE = "timer"
CHIEF_JUDGE = "chiefJudge"

JWT_ALGORITHM = "HS256"
TOKEN_TYPE = "race-management"

_jwt = JsonWebToken([JWT_ALGORITHM])

# ---------------------------
# PIN hashing
# ---------------------------

PBKDF2_ITERATIONS = 100_000
PBKDF2_KEY_LENGTH = 32
SALT_LENGTH = 16

_PIN_RE = re.compile(r"^\d{4}$")


@dataclass(frozen=True)
class Pbkdf2Hash:
    salt: str  # hex
    digest: str  # hex

    def __str__(self) -> str:
        return f"{self.salt}:{self.digest}"


@dataclass(frozen=True)
class LegacySha256Hash:
    """Unsalted hex digest written by older deployments."""
    digest: str

    def __str__(self) -> str:
        return self.digest


PinHash = Union[Pbkdf2Hash, LegacySha256Hash]


def parse_pin_hash(stored: str) -> PinHash:
    if ":" in stored:
        salt, digest = stored.split(":", 1)
        return Pbkdf2Hash(salt=salt, digest=digest)
    return LegacySha256Hash(digest=stored)


def _pbkdf2(pin: str, salt: str) -> bytes:
    # The salt is used as its hex text, matching hashes already in the store
    return hashlib.pbkdf2_hmac(
        "sha256", pin.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS, PBKDF2_KEY_LENGTH
    )


def hash_pin(pin: str) -> str:
    salt = os.urandom(SALT_LENGTH).hex()
    return str(Pbkdf2Hash(salt=salt, digest=_pbkdf2(pin, salt).hex()))


def verify_pin(pin: str, stored: Union[str, PinHash]) -> bool:
    parsed = parse_pin_hash(stored) if isinstance(stored, str) else stored
    if isinstance(parsed, Pbkdf2Hash):
        try:
            expected = bytes.fromhex(parsed.digest)
        except ValueError:
            return False
        return hmac.compare_digest(_pbkdf2(pin, parsed.salt), expected)
    if isinstance(parsed, LegacySha256Hash):
        computed = hashlib.sha256(pin.encode("utf-8")).hexdigest()
        return hmac.compare_digest(computed.encode("ascii"), parsed.digest.encode("utf-8"))
    raise TypeError(f"Unknown PIN hash variant: {type(parsed).__name__}")


def is_valid_pin(pin: Any) -> bool:
    return isinstance(pin, str) and bool(_PIN_RE.match(pin))

# ---------------------------
# Tokens
# ---------------------------

def _jwt_secret(cfg: Settings) -> str:
    if not cfg.RACESYNC_JWT_SECRET:
        raise RuntimeError("RACESYNC_JWT_SECRET must be set")
    return cfg.RACESYNC_JWT_SECRET


def validate_jwt_config(cfg: Settings = settings) -> Optional[str]:
    """Return an error message when tokens cannot be issued, else None."""
    try:
        _jwt_secret(cfg)
    except RuntimeError as exc:
        return str(exc)
    return None


def generate_token(payload: Optional[dict[str, Any]] = None, *, cfg: Settings = settings, now: Optional[int] = None) -> str:
    issued = int(time.time()) if now is None else now
    claims = {
        **(payload or {}),
        "type": TOKEN_TYPE,
        "iss": cfg.RACESYNC_JWT_ISSUER,
        "iat": issued,
        "exp": issued + cfg.RACESYNC_JWT_EXPIRY_SECONDS,
    }
    token = _jwt.encode({"alg": JWT_ALGORITHM, "typ": "JWT"}, claims, _jwt_secret(cfg))
    return token.decode("ascii")


@dataclass
class TokenCheck:
    valid: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    expired: bool = False


def verify_token(token: str, *, cfg: Settings = settings, now: Optional[int] = None) -> TokenCheck:
    if not token:
        return TokenCheck(valid=False, error="No token provided")
    secret = _jwt_secret(cfg)
    try:
        claims = _jwt.decode(
            token,
            secret,
            claims_options={
                "iss": {"essential": True, "value": cfg.RACESYNC_JWT_ISSUER},
                "exp": {"essential": True},
            },
        )
        claims.validate(now=now, leeway=0)
    except ExpiredTokenError:
        return TokenCheck(valid=False, error="Token expired", expired=True)
    except (JoseError, ValueError):
        return TokenCheck(valid=False, error="Invalid token")

    if claims.get("type") != TOKEN_TYPE:
        return TokenCheck(valid=False, error="Invalid token type")
    return TokenCheck(valid=True, payload=dict(claims))


def extract_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]

# ---------------------------
# Request gate
# ---------------------------

@dataclass
class AuthResult:
    method: str  # "none" | "jwt"
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Optional[str]:
        role = self.payload.get("role")
        return role if role in ROLES else None

    @property
    def is_chief_judge(self) -> bool:
        return self.method == "jwt" and self.role == CHIEF_JUDGE


def validate_auth(
    authorization: Optional[str],
    client: redis.Redis,
    *,
    pin_key: str = CLIENT_PIN_KEY,
    cfg: Settings = settings,
) -> AuthResult:
    """Decide whether a request may proceed.

    Without a header the request passes only while no PIN is configured
    (``method="none"``). With a header it must carry a valid bearer token.
    Raises :class:`AuthError` otherwise.
    """
    if not authorization:
        if not client.get(pin_key):
            return AuthResult(method="none")
        raise AuthError("Authorization required. Set Race Management PIN in settings.")

    token = extract_token(authorization)
    if token is None:
        raise AuthError("Invalid authorization format. Use: Bearer <token>")

    check = verify_token(token, cfg=cfg)
    if check.valid:
        return AuthResult(method="jwt", payload=check.payload)
    if check.expired:
        raise AuthError("Token expired. Please re-authenticate.", expired=True)
    raise AuthError("Invalid token. Please re-authenticate.")


def require_role(auth: AuthResult, role: str, action: str) -> None:
    if auth.method != "jwt" or auth.role != role:
        log.warning("role_denied", extra={"action": action, "role": auth.role, "expected": role})
        raise AuthError(f"{action} requires Chief Judge role" if role == CHIEF_JUDGE else f"{action} requires {role} role", status_code=403)

# ---------------------------
# PIN exchange
# ---------------------------

def exchange_pin(
    client: redis.Redis,
    pin: Any,
    role: Any = None,
    *,
    cfg: Settings = settings,
) -> dict[str, Any]:
    """Trade a 4-digit PIN for a bearer token.

    The first PIN ever submitted for a role family becomes that family's
    PIN. Chief judges have their own PIN; timers and gate judges share one.
    """
    if not pin or not isinstance(pin, str):
        raise ValidationError("PIN is required")
    if not is_valid_pin(pin):
        raise ValidationError("PIN must be exactly 4 digits")

    user_role = role if role in ROLES else DEFAULT_ROLE
    pin_key = CHIEF_JUDGE_PIN_KEY if user_role == CHIEF_JUDGE else CLIENT_PIN_KEY
    label = "Chief Judge PIN" if user_role == CHIEF_JUDGE else "PIN"

    stored = client.get(pin_key)
    if not stored:
        was_set = bool(client.set(pin_key, hash_pin(pin), nx=True))
        if not was_set:
            # Lost the race to a concurrent first submission
            concurrent = client.get(pin_key)
            if not concurrent or not verify_pin(pin, concurrent):
                raise AuthError(f"Invalid {label}")
        else:
            log.info("pin_established", extra={"role": user_role})
        token = generate_token({"createdAt": int(time.time() * 1000), "role": user_role}, cfg=cfg)
        return {
            "success": True,
            "token": token,
            "isNewPin": was_set,
            "role": user_role,
            "message": f"{label} set successfully",
        }

    parsed = parse_pin_hash(stored)
    if not verify_pin(pin, parsed):
        raise AuthError(f"Invalid {label}")

    if isinstance(parsed, LegacySha256Hash):
        client.set(pin_key, hash_pin(pin))
        log.info("pin_hash_upgraded", extra={"role": user_role})

    token = generate_token({"authenticatedAt": int(time.time() * 1000), "role": user_role}, cfg=cfg)
    return {"success": True, "token": token, "role": user_role}

# ---------------------------
# FastAPI dependencies
# ---------------------------

def current_auth(request: Request, authorization: Optional[str] = Header(default=None)) -> AuthResult:
    return validate_auth(authorization, request.app.state.redis, cfg=request.app.state.settings)


def write_auth(auth: AuthResult = Depends(current_auth)) -> AuthResult:
    if auth.method == "none":
        raise AuthError("Authentication required to write data")
    return auth


def chief_judge_required(action: str):
    def dependency(auth: AuthResult = Depends(current_auth)) -> AuthResult:
        require_role(auth, CHIEF_JUDGE, action)
        return auth
    return dependency
