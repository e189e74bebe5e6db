import logging

import pytest

from lilroot.modules import log


def test_module_loggers_hang_off_the_package_logger():
    assert log.get_logger() is logging.getLogger("lilroot")
    assert log.get_logger("layers").name == "lilroot.layers"
    assert log.get_logger("layers").parent is log.get_logger()


def test_set_level_rejects_unknown_names():
    with pytest.raises(ValueError):
        log.set_level("verbose")


def test_color_formatter_tags_the_module():
    record = logging.LogRecord("lilroot.supervisor", logging.WARNING, __file__, 1, "SIGKILL em %s", ("gateway",), None)
    line = log.ColorFormatter("%(message)s").format(record)
    assert "warning" in line
    assert "[lilroot.supervisor]" in line
    assert line.endswith("SIGKILL em gateway")
