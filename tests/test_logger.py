from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from fleetslot.utils import logger as logger_module


def test_get_logger_from_many_threads_configures_once(monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(logger_module, "_configured", False)
    monkeypatch.setattr(logger_module.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    with ThreadPoolExecutor(max_workers=8) as executor:
        loggers = list(executor.map(logger_module.get_logger, ["fleetslot.test"] * 16))

    assert len(calls) == 1
    assert calls[0]["format"] == logger_module.LOG_FORMAT
    assert "%(threadName)s" in logger_module.LOG_FORMAT
    assert all(item.name == "fleetslot.test" for item in loggers)
    assert logging.getLogger("apscheduler").level == logging.WARNING
