import logging

import pytest
import structlog

from inbox_triage import main
from inbox_triage.features.triage.session import TriageSession


@pytest.fixture
def fresh_logging(monkeypatch):
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(main, "_bootstrapped", False)
    yield
    root.setLevel(level)
    structlog.reset_defaults()


def _renderers():
    return [
        p for p in structlog.get_config()["processors"] if isinstance(p, structlog.processors.JSONRenderer)
    ]


def test_bootstrap_configures_json_logging_once(fresh_logging, test_settings):
    cfg = test_settings(LOG_LEVEL="warning")

    assert main.bootstrap(cfg) is True
    assert len(_renderers()) == 1
    assert logging.getLogger().level == logging.WARNING

    assert main.bootstrap(test_settings(LOG_LEVEL="ERROR")) is False
    assert logging.getLogger().level == logging.WARNING


def test_debug_flag_forces_debug_level(fresh_logging, test_settings):
    cfg = test_settings(debug=True, LOG_LEVEL="ERROR")

    assert main.resolve_log_level(cfg) == "DEBUG"
    main.bootstrap(cfg)
    assert logging.getLogger().level == logging.DEBUG


def test_force_reconfigures(fresh_logging, test_settings):
    main.bootstrap(test_settings(LOG_LEVEL="INFO"))
    assert main.bootstrap(test_settings(LOG_LEVEL="ERROR"), force=True) is True
    assert logging.getLogger().level == logging.ERROR


def test_session_construction_bootstraps_logging(fresh_logging, test_settings, audit, fake_mailbox):
    TriageSession("user-123", mailbox=fake_mailbox, config=test_settings(LOG_LEVEL="WARNING"), audit=audit)

    assert main._bootstrapped is True
    assert len(_renderers()) == 1
    assert logging.getLogger().level == logging.WARNING
