import base58
import pytest
from nacl.signing import SigningKey

from zknon.api import build_service, build_settlement
from zknon.config import DEFAULT_ORIGINS, Settings
from zknon.storage import InMemoryStorage


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "RPC_ENDPOINT", "RPC_API_KEY", "POOL_SECRET_KEY_BASE58", "POOL_PUBKEY", "DATABASE_URL",
        "ALLOWED_ORIGINS", "SETTLEMENT_TIMEOUT", "CONFIRM_TIMEOUT", "DRAIN_TIMEOUT",
        "HISTORY_LIMIT", "LOG_LEVEL", "PORT", "SETTLE_INLINE",
    ):
        monkeypatch.delenv("ZKNON_" + name, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.rpc_endpoint == "https://api.mainnet-beta.solana.com"
        assert settings.allowed_origins == DEFAULT_ORIGINS
        assert settings.history_limit == 200
        assert settings.port == 3000
        assert not settings.settlement_enabled
        assert not settings.settle_inline

    def test_overrides(self, clean_env):
        clean_env.setenv("ZKNON_RPC_ENDPOINT", "https://rpc.example")
        clean_env.setenv("ZKNON_ALLOWED_ORIGINS", "https://a.example, https://b.example,")
        clean_env.setenv("ZKNON_SETTLEMENT_TIMEOUT", "12.5")
        clean_env.setenv("ZKNON_HISTORY_LIMIT", "50")
        clean_env.setenv("ZKNON_LOG_LEVEL", "debug")
        clean_env.setenv("ZKNON_POOL_SECRET_KEY_BASE58", "secret")
        clean_env.setenv("ZKNON_SETTLE_INLINE", "true")

        settings = Settings.from_env()

        assert settings.rpc_endpoint == "https://rpc.example"
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.settlement_timeout == 12.5
        assert settings.history_limit == 50
        assert settings.log_level == "DEBUG"
        assert settings.settlement_enabled
        assert settings.settle_inline
        # The pool key never shows up in logs
        assert "secret" not in repr(settings)

    def test_malformed_number(self, clean_env):
        clean_env.setenv("ZKNON_PORT", "eighty")

        with pytest.raises(ValueError):
            Settings.from_env()


class TestWiring:
    """Tests for building the service from settings."""

    def test_without_pool_key(self):
        service = build_service(Settings())

        assert service.settlement is None
        assert isinstance(service.storage, InMemoryStorage)

    def test_pool_key_loaded(self):
        key = SigningKey(bytes(range(32)))
        address = base58.b58encode(bytes(key.verify_key)).decode()
        secret = base58.b58encode(bytes(key) + bytes(key.verify_key)).decode()

        settlement = build_settlement(Settings(pool_secret_key=secret, pool_pubkey=address))

        assert settlement.pool_address == address

    def test_pool_pubkey_mismatch(self):
        secret = base58.b58encode(bytes(range(32))).decode()

        with pytest.raises(ValueError):
            build_settlement(Settings(pool_secret_key=secret, pool_pubkey="11111111111111111111111111111111"))

    def test_inline_settlement_reaches_the_engine(self):
        service = build_service(Settings(settle_inline=True))

        assert service.withdrawals.settle_inline
