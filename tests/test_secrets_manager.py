"""Tests for secret lookup, caching, and rotation pickup."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import DictBackend
from secrets_manager import EnvironmentBackend, SecretsManager


class TestEnvironmentBackend:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("FM_PASSWORD", "from-env")
        assert EnvironmentBackend().get_secret("FM_PASSWORD") == "from-env"

    def test_empty_value_is_missing(self, monkeypatch):
        monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET_PREVIOUS", "")
        assert EnvironmentBackend().get_secret("RAZORPAY_WEBHOOK_SECRET_PREVIOUS") is None


class TestSecretsManager:
    def test_value_cached_until_invalidated(self):
        backend = DictBackend({"RAZORPAY_WEBHOOK_SECRET": "old"})
        manager = SecretsManager(backend, cache_ttl_seconds=300)
        assert manager.get_secret("RAZORPAY_WEBHOOK_SECRET") == "old"

        backend.values["RAZORPAY_WEBHOOK_SECRET"] = "new"
        assert manager.get_secret("RAZORPAY_WEBHOOK_SECRET") == "old"

        manager.invalidate_cache("RAZORPAY_WEBHOOK_SECRET")
        assert manager.get_secret("RAZORPAY_WEBHOOK_SECRET") == "new"

    def test_invalidate_all(self):
        backend = DictBackend({"A": "1", "B": "2"})
        manager = SecretsManager(backend)
        manager.get_secret("A")
        manager.get_secret("B")
        backend.values.update({"A": "10", "B": "20"})
        manager.invalidate_cache()
        assert (manager.get_secret("A"), manager.get_secret("B")) == ("10", "20")

    def test_expired_entry_reloaded(self):
        backend = DictBackend({"FM_PASSWORD": "first"})
        manager = SecretsManager(backend, cache_ttl_seconds=0)
        manager.get_secret("FM_PASSWORD")
        backend.values["FM_PASSWORD"] = "second"
        assert manager.get_secret("FM_PASSWORD") == "second"

    def test_miss_not_cached(self):
        backend = DictBackend({})
        manager = SecretsManager(backend)
        assert manager.get_secret("RAZORPAY_WEBHOOK_SECRET") is None
        backend.values["RAZORPAY_WEBHOOK_SECRET"] = "added-later"
        assert manager.get_secret("RAZORPAY_WEBHOOK_SECRET") == "added-later"

    def test_value_never_logged(self, caplog):
        manager = SecretsManager(DictBackend({"FM_PASSWORD": "hunter2-secret"}))
        with caplog.at_level("DEBUG"):
            manager.get_secret("FM_PASSWORD", requester="filemaker_login")
        assert "requester=filemaker_login" in caplog.text
        assert "hunter2-secret" not in caplog.text
