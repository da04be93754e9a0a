import logging
from unittest import mock

import pytest

from baseapp import config


def test_local_profile_is_default():
    with mock.patch.dict("os.environ", {}, clear=True):
        assert config.get_profile() == "local"
        config.apply_profile_defaults()
        import os

        assert os.environ["BASEAPP_DB_BACKEND"] == "sqlite"
        assert "BASEAPP_REQUIRE_SIGNED" not in os.environ
        config.enforce_profile_requirements()


def test_unknown_profile_falls_back_to_local():
    with mock.patch.dict("os.environ", {"BASEAPP_PROFILE": "staging"}, clear=True):
        assert config.get_profile() == "local"


def test_production_profile():
    env = {"BASEAPP_PROFILE": "Production", "BASEAPP_QUERY_MAX_KEYS": "7"}
    with mock.patch.dict("os.environ", env, clear=True):
        import os

        assert config.apply_profile_defaults() == "production"
        assert os.environ["BASEAPP_REQUIRE_SIGNED"] == "1"
        # explicit settings win over profile defaults
        assert os.environ["BASEAPP_QUERY_MAX_KEYS"] == "7"
        with pytest.raises(RuntimeError, match="BASEAPP_RPC_TOKEN"):
            config.enforce_profile_requirements()
        os.environ["BASEAPP_RPC_TOKEN"] = "t"
        config.enforce_profile_requirements()


def test_parse_log_level():
    assert config.parse_log_level("debug") == logging.DEBUG
    assert config.parse_log_level("WARN") == logging.WARNING
    assert config.parse_log_level("none") > logging.CRITICAL
    with pytest.raises(ValueError):
        config.parse_log_level("verbose")
