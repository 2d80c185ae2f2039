"""
auth.py — Identity, credential and rate limiting for Itinerizer (FastAPI)

Provides:
  - JWT helpers (encode / decode) for the 'itinerizer_session' cookie
  - Dependencies:
      get_current_identity  — cookie JWT, else X-User-Email (if allowed), else None
      require_identity      — same, but 401 when anonymous
      require_credential    — X-Anthropic-API-Key header, else the server default, else 401
  - RateLimiter: sliding-window limits (Redis sorted sets, in-memory fallback)
  - Routes: POST /api/auth/login, POST /api/auth/logout, GET /api/auth/status

Identity (who owns itineraries) and credential (which designer instance serves
the request) are independent: one user may switch API keys, and one key may be
shared by a team. The credential is never logged; only its fingerprint is.

Token TTL: TOKEN_TTL_HOURS, sliding (re-issued on every authenticated request
through request.state.slide_token, written by the middleware in app.py).
"""

import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
import redis
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from container import ServiceContainer, get_container
from schemas import LoginRequest, normalise_identity

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix='/api/auth', tags=['auth'])

# ── Constants ────────────────────────────────────────────────────────────────

COOKIE_NAME       = 'itinerizer_session'
CREDENTIAL_HEADER = 'X-Anthropic-API-Key'
IDENTITY_HEADER   = 'X-User-Email'
BCRYPT_ROUNDS     = 12

# ── Rate limiting ─────────────────────────────────────────────────────────────
# bucket -> (max_requests, window_seconds)
#
# Redis path:  sorted set  ratelimit:{bucket}:{subject}
#              members are timestamps; ZREMRANGEBYSCORE prunes the window.
# Fallback:    in-memory dict per-worker (resets on restart).

RATE_LIMIT_RULES: dict[str, tuple[int, int]] = {
    'login':            (10, 300),   # failed logins per IP per 5 minutes
    'designer_message': (30, 60),    # chat turns per credential per minute
}


class RateLimiter:
    def __init__(self, redis_client=None, rules: dict[str, tuple[int, int]] | None = None,
                 clock=time.time):
        self._r      = redis_client
        self._rules  = dict(RATE_LIMIT_RULES if rules is None else rules)
        self._clock  = clock
        self._hits: dict = defaultdict(list)   # (bucket, subject) -> [timestamp, ...]
        self._lock   = threading.Lock()

    def _rule(self, bucket: str) -> tuple[int, int] | None:
        return self._rules.get(bucket)

    def check(self, bucket: str, subject: str) -> tuple[bool, int]:
        """
        Check subject against the bucket's limit and, if allowed, record the hit.

        Returns (allowed, retry_after_seconds). retry_after is the number of
        seconds until the oldest hit in the window expires.
        """
        rule = self._rule(bucket)
        if rule is None:
            return True, 0
        max_requests, window = rule
        now = self._clock()

        if self._r is not None:
            try:
                rkey = f'ratelimit:{bucket}:{subject}'
                pipe = self._r.pipeline()
                pipe.zremrangebyscore(rkey, '-inf', now - window)
                pipe.zrange(rkey, 0, -1, withscores=True)
                pipe.expire(rkey, window)
                _, entries, _ = pipe.execute()

                if len(entries) >= max_requests:
                    oldest = min(score for _, score in entries)
                    return False, int(window - (now - oldest)) + 1

                self._r.zadd(rkey, {str(now): now})
                self._r.expire(rkey, window)
                return True, 0
            except redis.RedisError as exc:
                logger.warning("Redis rate-limit error (%s): %s — falling back", bucket, exc)

        key = (bucket, subject)
        with self._lock:
            self._hits[key] = [t for t in self._hits[key] if now - t < window]
            if len(self._hits[key]) >= max_requests:
                oldest = min(self._hits[key])
                return False, int(window - (now - oldest)) + 1
            self._hits[key].append(now)
            return True, 0

    def is_blocked(self, bucket: str, subject: str) -> bool:
        """Check without recording; pair with record() to count only failures."""
        rule = self._rule(bucket)
        if rule is None:
            return False
        max_requests, window = rule
        now = self._clock()

        if self._r is not None:
            try:
                rkey = f'ratelimit:{bucket}:{subject}'
                pipe = self._r.pipeline()
                pipe.zremrangebyscore(rkey, '-inf', now - window)
                pipe.zcard(rkey)
                pipe.expire(rkey, window)
                _, count, _ = pipe.execute()
                return count >= max_requests
            except redis.RedisError as exc:
                logger.warning("Redis rate-limit check error (%s): %s — falling back", bucket, exc)

        key = (bucket, subject)
        with self._lock:
            self._hits[key] = [t for t in self._hits[key] if now - t < window]
            return len(self._hits[key]) >= max_requests

    def record(self, bucket: str, subject: str) -> None:
        rule = self._rule(bucket)
        if rule is None:
            return
        _, window = rule
        now = self._clock()

        if self._r is not None:
            try:
                rkey = f'ratelimit:{bucket}:{subject}'
                pipe = self._r.pipeline()
                pipe.zadd(rkey, {str(now): now})
                pipe.expire(rkey, window)
                pipe.execute()
                return
            except redis.RedisError as exc:
                logger.warning("Redis rate-limit record error (%s): %s — falling back", bucket, exc)

        with self._lock:
            self._hits[(bucket, subject)].append(now)


# ── JWT helpers ──────────────────────────────────────────────────────────────

def _encode_token(email: str, secret: str, ttl_hours: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        'sub': email,
        'iat': now,
        'exp': now + timedelta(hours=ttl_hours),
    }
    return jwt.encode(payload, secret, algorithm='HS256')


def _decode_token(token: str, secret: str) -> dict:
    """Raise jwt.PyJWTError if invalid or expired."""
    return jwt.decode(token, secret, algorithms=['HS256'])


def set_auth_cookie(response, token: str, container: ServiceContainer) -> None:
    response.set_cookie(
        COOKIE_NAME,
        token,
        httponly=True,
        samesite='lax',
        secure=container.settings.production,
        max_age=container.settings.token_ttl_hours * 3600,
        path='/',
    )


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_current_identity(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> str | None:
    """
    Resolve the caller's identity (lower-cased email) or None if anonymous.

    A valid cookie wins and is slid forward. An invalid or expired cookie does
    not fall through to the header; the caller is treated as anonymous.
    """
    settings = container.settings
    token    = request.cookies.get(COOKIE_NAME)
    if token:
        try:
            payload = _decode_token(token, settings.jwt_secret)
        except jwt.ExpiredSignatureError:
            logger.info("Expired session cookie presented")
            return None
        except jwt.PyJWTError:
            logger.warning("Invalid session cookie presented")
            return None
        identity = normalise_identity(payload.get('sub'))
        if identity:
            request.state.slide_token = _encode_token(identity, settings.jwt_secret,
                                                      settings.token_ttl_hours)
        return identity

    if settings.allow_identity_header:
        return normalise_identity(request.headers.get(IDENTITY_HEADER))
    return None


def require_identity(identity: str | None = Depends(get_current_identity)) -> str:
    if not identity:
        raise HTTPException(status_code=401, detail='Authentication required')
    return identity


def require_credential(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> str:
    """The API credential that selects (and pays for) the designer instance."""
    credential = (request.headers.get(CREDENTIAL_HEADER) or '').strip()
    if not credential:
        credential = container.settings.default_api_key
    if not credential:
        raise HTTPException(
            status_code=401,
            detail=f'An API key is required: send the {CREDENTIAL_HEADER} header',
        )
    return credential


# ── Routes ───────────────────────────────────────────────────────────────────

def _check_password(password: str, pw_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), pw_hash.encode('utf-8'))
    except ValueError as exc:
        logger.warning("bcrypt check error: %s", exc)
        return False


@auth_router.post('/login')
async def login(
    body: LoginRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """POST /api/auth/login — { email, password? } → sets httpOnly cookie."""
    settings  = container.settings
    client_ip = request.client.host if request.client else '0.0.0.0'
    limiter   = container.rate_limiter

    if limiter.is_blocked('login', client_ip):
        logger.warning("Login rate limit exceeded for IP %s", client_ip)
        raise HTTPException(status_code=429,
                            detail='Too many login attempts. Please wait and try again.')

    if '@' not in body.email:
        raise HTTPException(status_code=400, detail='A valid email address is required')

    if settings.auth_mode == 'password':
        if not settings.auth_password_hash:
            logger.error("AUTH_MODE=password but AUTH_PASSWORD_HASH is not set")
            raise HTTPException(status_code=503, detail='Password login is not configured')
        if not body.password or not await run_in_threadpool(
            _check_password, body.password, settings.auth_password_hash
        ):
            limiter.record('login', client_ip)
            raise HTTPException(status_code=401, detail='Invalid email or password')

    token = _encode_token(body.email, settings.jwt_secret, settings.token_ttl_hours)
    resp  = JSONResponse({'status': 'ok', 'email': body.email})
    set_auth_cookie(resp, token, container)
    logger.info("Login: %s", body.email)
    return resp


@auth_router.post('/logout')
async def logout():
    """POST /api/auth/logout — clears the auth cookie."""
    resp = JSONResponse({'status': 'ok'})
    resp.delete_cookie(COOKIE_NAME, path='/')
    return resp


@auth_router.get('/status')
async def status(
    identity: str | None = Depends(get_current_identity),
    container: ServiceContainer = Depends(get_container),
):
    """GET /api/auth/status — who am I, and how may I log in."""
    return {
        'authenticated': identity is not None,
        'email':         identity,
        'authMode':      container.settings.auth_mode,
    }


def hash_password(password: str) -> str:
    """bcrypt hash suitable for AUTH_PASSWORD_HASH."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')
