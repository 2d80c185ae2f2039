"""
Unit tests for config.py (Settings.from_env and production guards).
"""
import pytest

from config import DEV_JWT_SECRET, Settings

_ENV = ('APP_ENV', 'JWT_SECRET_KEY', 'ALLOW_IDENTITY_HEADER')


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_development_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.production is False
    assert settings.jwt_secret == DEV_JWT_SECRET
    assert settings.allow_identity_header is True


def test_production_without_jwt_secret_refuses_to_start(clean_env):
    clean_env.setenv('APP_ENV', 'production')
    with pytest.raises(RuntimeError, match='JWT_SECRET_KEY'):
        Settings.from_env()


def test_production_rejects_the_development_secret():
    with pytest.raises(RuntimeError):
        Settings(production=True)


def test_production_disables_identity_header_by_default(clean_env):
    clean_env.setenv('APP_ENV', 'production')
    clean_env.setenv('JWT_SECRET_KEY', 'a-long-random-secret')

    settings = Settings.from_env()

    assert settings.jwt_secret == 'a-long-random-secret'
    assert settings.allow_identity_header is False


def test_identity_header_can_be_enabled_in_production(clean_env):
    clean_env.setenv('APP_ENV', 'production')
    clean_env.setenv('JWT_SECRET_KEY', 'a-long-random-secret')
    clean_env.setenv('ALLOW_IDENTITY_HEADER', 'true')
    assert Settings.from_env().allow_identity_header is True
