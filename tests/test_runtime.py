from conftest import make_settings
from linkguard.service.captcha import HttpCaptchaVerifier
from linkguard.service.email import SmtpMailer
from linkguard.service.geo import HttpGeoResolver
from linkguard.service.runtime import _mask_url_password, build_engine
from linkguard.storage.memory import MemoryStore
from linkguard.storage.redis_cache import MemoryGeoCache


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:secret@db:5432/linkguard")
        == "postgresql://app:***@db:5432/linkguard"
    )
    assert _mask_url_password("postgresql://db/linkguard") == "postgresql://db/linkguard"
    assert _mask_url_password(None) is None


async def test_build_engine_from_settings():
    settings = make_settings(
        geoip_url="https://geo.test/json/{ip}",
        captcha_secret="shh",
        smtp_host="smtp.test",
        email_from_address="auth@example.com",
    )

    engine = build_engine(settings)

    assert isinstance(engine.store, MemoryStore)
    assert isinstance(engine.orchestrator.geo, HttpGeoResolver)
    assert isinstance(engine.geo_cache, MemoryGeoCache)
    assert isinstance(engine.captcha.verifier, HttpCaptchaVerifier)
    assert isinstance(engine.orchestrator.mailer, SmtpMailer)
    assert engine.orchestrator.mailer.is_configured
    assert engine.tokens.store is engine.sessions.store is engine.audit.store
    await engine.close()


def test_optional_integrations_off_by_default():
    engine = build_engine(make_settings())

    assert engine.orchestrator.geo is None
    assert engine.geo_cache is None
    assert engine.captcha.verifier is None
