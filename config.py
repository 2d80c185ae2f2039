"""
config.py — Runtime settings for Itinerizer.

Settings.from_env() loads .env (python-dotenv) and reads every knob once at
startup; the resulting object is passed into build_container() and create_app()
rather than read from os.environ all over the codebase. Tests construct
Settings(...) directly.

Production (APP_ENV=production) refuses to start without JWT_SECRET_KEY, and
the X-User-Email identity header is off there unless ALLOW_IDENTITY_HEADER
turns it on explicitly.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEV_JWT_SECRET = 'dev-insecure-secret-change-me'


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name: str, default: str) -> list[str]:
    return [o.strip() for o in os.getenv(name, default).split(',') if o.strip()]


@dataclass
class Settings:
    database_url:               str        = 'sqlite:///itinerizer.db'
    redis_url:                  str        = ''
    session_backend:            str        = 'memory'     # 'memory' | 'redis'
    session_idle_seconds:       int        = 30 * 60
    sweep_interval_seconds:     int        = 60
    designer_cache_max_entries: int        = 256
    designer_cache_ttl_seconds: int        = 6 * 3600
    designer_model:             str        = 'claude-haiku-4-5-20251001'
    designer_max_tokens:        int        = 2048
    upstream_max_retries:       int        = 2
    upstream_retry_delay:       float      = 1.0
    default_api_key:            str        = ''
    jwt_secret:                 str        = DEV_JWT_SECRET
    token_ttl_hours:            int        = 24 * 7
    auth_mode:                  str        = 'open'       # 'open' | 'password'
    auth_password_hash:         str        = ''
    allow_identity_header:      bool       = True
    allow_cross_owner_reads:    bool       = False
    cors_origins:               list[str]  = field(default_factory=lambda: ['http://localhost:5173'])
    import_service_url:         str        = ''
    import_timeout_seconds:     float      = 120.0
    production:                 bool       = False

    def __post_init__(self):
        if self.production and self.jwt_secret in ('', DEV_JWT_SECRET):
            raise RuntimeError('JWT_SECRET_KEY must be set when APP_ENV=production')

    @classmethod
    def from_env(cls) -> 'Settings':
        load_dotenv(os.path.join(BASE_DIR, '.env'), override=True)
        production = os.getenv('APP_ENV', 'development') == 'production'
        return cls(
            database_url               = os.getenv('DATABASE_URL', 'sqlite:///itinerizer.db'),
            redis_url                  = os.getenv('REDIS_URL', '').strip(),
            session_backend            = os.getenv('SESSION_BACKEND', 'memory').strip().lower(),
            session_idle_seconds       = int(os.getenv('SESSION_IDLE_SECONDS', '1800')),
            sweep_interval_seconds     = int(os.getenv('SESSION_SWEEP_INTERVAL', '60')),
            designer_cache_max_entries = int(os.getenv('DESIGNER_CACHE_MAX_ENTRIES', '256')),
            designer_cache_ttl_seconds = int(os.getenv('DESIGNER_CACHE_TTL_SECONDS', '21600')),
            designer_model             = os.getenv('DESIGNER_MODEL', 'claude-haiku-4-5-20251001'),
            designer_max_tokens        = int(os.getenv('DESIGNER_MAX_TOKENS', '2048')),
            upstream_max_retries       = int(os.getenv('UPSTREAM_MAX_RETRIES', '2')),
            upstream_retry_delay       = float(os.getenv('UPSTREAM_RETRY_DELAY', '1.0')),
            default_api_key            = os.getenv('ANTHROPIC_API_KEY', '').strip(),
            jwt_secret                 = os.getenv('JWT_SECRET_KEY', '').strip() or DEV_JWT_SECRET,
            token_ttl_hours            = int(os.getenv('TOKEN_TTL_HOURS', '168')),
            auth_mode                  = os.getenv('AUTH_MODE', 'open').strip().lower(),
            auth_password_hash         = os.getenv('AUTH_PASSWORD_HASH', '').strip(),
            allow_identity_header      = _env_bool('ALLOW_IDENTITY_HEADER', not production),
            allow_cross_owner_reads    = _env_bool('ALLOW_CROSS_OWNER_READS', False),
            cors_origins               = _env_list('CORS_ORIGINS', 'http://localhost:5173'),
            import_service_url         = os.getenv('IMPORT_SERVICE_URL', '').strip().rstrip('/'),
            import_timeout_seconds     = float(os.getenv('IMPORT_TIMEOUT', '120')),
            production                 = production,
        )
