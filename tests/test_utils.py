import re

import pytest

from ssrelay import utils
from ssrelay.utils import (
    Module,
    RunAsError,
    configure_logging,
    is_numeric,
    log_error,
    log_info,
    run_as,
    set_nofile,
    strndup,
    usage_text,
)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    configure_logging(False, False, None)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("123", True),
        ("0", True),
        ("", False),
        (None, False),
        ("12a", False),
        ("-1", False),
        (" 1", False),
        ("\u00b2", False),
    ],
)
def test_is_numeric(value, expected):
    assert is_numeric(value) is expected


def test_strndup_truncates():
    assert strndup("hello", 3) == "hel"


def test_strndup_shorter_string_unchanged():
    assert strndup("hi", 5) == "hi"


def test_strndup_negative_rejected():
    with pytest.raises(ValueError):
        strndup("hi", -1)


def test_log_to_file_plain_format(tmp_path):
    path = tmp_path / "ss.log"
    configure_logging(False, False, path)
    log_info("hello")
    log_error("broken")
    configure_logging(False, False, None)
    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert re.fullmatch(r" \d{4}-\d\d-\d\d \d\d:\d\d:\d\d INFO: hello", lines[0])
    assert re.fullmatch(r" \d{4}-\d\d-\d\d \d\d:\d\d:\d\d ERROR: broken", lines[1])


def test_log_to_tty_is_coloured(capsys):
    configure_logging(False, True, None)
    log_error("boom")
    log_info("fine")
    err = capsys.readouterr().err
    assert "\x1b[01;35m " in err
    assert "ERROR: \x1b[0mboom" in err
    assert "\x1b[01;32m " in err
    assert "INFO: \x1b[0mfine" in err


def test_log_to_plain_stderr(capsys):
    configure_logging(False, False, None)
    log_info("plain")
    err = capsys.readouterr().err
    assert "\x1b" not in err
    assert err.rstrip("\n").endswith(" INFO: plain")


def test_run_as_empty_user_is_noop():
    assert run_as("") is None


def test_run_as_unknown_name():
    with pytest.raises(RunAsError):
        run_as("no-such-user-for-ssrelay-tests")


def test_run_as_unknown_uid():
    with pytest.raises(RunAsError):
        run_as("987654321")


def test_usage_header_and_command():
    text = usage_text(Module.LOCAL, "TestCrypto 1.0")
    assert text.startswith("\n")
    assert f"ssrelay {utils.VERSION} with TestCrypto 1.0" in text
    assert "    ss-local\n" in text
    assert "The default cipher is rc4-md5." in text


def test_usage_redir_has_no_interface_option():
    text = usage_text(Module.REDIR, "x")
    assert "-i <interface>" not in text
    assert "TPROXY is required in redir mode." in text


def test_usage_tunnel_has_forwarding_option():
    text = usage_text(Module.TUNNEL, "x")
    assert "[-L <addr>:<port>]" in text
    assert "--fast-open" not in text


def test_usage_remote_specific_options():
    text = usage_text(Module.REMOTE, "x")
    assert "[-d <addr>]" in text
    assert "[-6]" in text
    assert "--manager-address" in text
    assert "--executable" not in text


def test_usage_manager_specific_options():
    text = usage_text(Module.MANAGER, "x")
    assert "[--executable <path>]" in text
    assert "--acl" not in text
    assert "    ss-manager\n" in text


@pytest.mark.parametrize("value", [0, -5])
def test_set_nofile_rejects_non_positive(value):
    with pytest.raises(ValueError):
        set_nofile(value)