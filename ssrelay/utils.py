"""Logging, privilege dropping, daemonizing and other process utilities."""

from __future__ import annotations

import enum
import logging
import os
import re
import ssl
import sys
import time
from pathlib import Path

__all__ = [
    "VERSION",
    "Module",
    "RunAsError",
    "is_numeric",
    "strndup",
    "configure_logging",
    "log_info",
    "log_error",
    "run_as",
    "usage_text",
    "daemonize",
    "set_nofile",
]

VERSION = "2.5.3"

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_INFO_COLOR = "\033[01;32m"
_ERROR_COLOR = "\033[01;35m"
_RESET = "\033[0m"
_SYSLOG_IDENT = "ssrelay"

_logger = logging.getLogger("ssrelay")
_logger.setLevel(logging.INFO)
_logger.propagate = False
_handler: logging.Handler | None = None

_NUMERIC = re.compile(r"[0-9]+")


class Module(enum.Enum):
    """The programs that share these utilities, by command name."""

    LOCAL = "ss-local"
    REMOTE = "ss-server"
    TUNNEL = "ss-tunnel"
    REDIR = "ss-redir"
    MANAGER = "ss-manager"


class RunAsError(Exception):
    """Switching to another user failed."""


def is_numeric(s: str | None) -> bool:
    """True if s is a non-empty string of ASCII decimal digits."""
    return bool(s) and _NUMERIC.fullmatch(s) is not None


def strndup(s: str, n: int) -> str:
    """Return at most the first n characters of s."""
    if n < 0:
        raise ValueError("n must not be negative")
    return s[:n]


class _Formatter(logging.Formatter):
    def __init__(self, colored: bool) -> None:
        super().__init__()
        self._colored = colored

    def format(self, record: logging.LogRecord) -> str:
        stamp = time.strftime(_TIME_FORMAT, time.localtime(record.created))
        is_error = record.levelno >= logging.ERROR
        label = "ERROR" if is_error else "INFO"
        message = record.getMessage()
        if self._colored:
            color = _ERROR_COLOR if is_error else _INFO_COLOR
            return f"{color} {stamp} {label}: {_RESET}{message}"
        return f" {stamp} {label}: {message}"


class _SyslogHandler(logging.Handler):
    def __init__(self, ident: str) -> None:
        super().__init__()
        import syslog

        self._syslog = syslog
        syslog.openlog(ident, syslog.LOG_CONS | syslog.LOG_PID)

    def emit(self, record: logging.LogRecord) -> None:
        priority = (
            self._syslog.LOG_ERR
            if record.levelno >= logging.ERROR
            else self._syslog.LOG_INFO
        )
        try:
            self._syslog.syslog(priority, record.getMessage())
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._syslog.closelog()
        super().close()


def configure_logging(
    use_syslog: bool = False,
    use_tty: bool | None = None,
    logfile: str | os.PathLike[str] | None = None,
) -> logging.Handler:
    """Route log_info and log_error to syslog, a log file or standard error.

    When use_tty is None, colours are used if standard error is a terminal.
    Returns the installed handler; a previous one is closed.
    """
    global _handler
    if _handler is not None:
        _logger.removeHandler(_handler)
        _handler.close()
        _handler = None

    handler: logging.Handler
    if use_syslog:
        handler = _SyslogHandler(_SYSLOG_IDENT)
    elif logfile is not None:
        handler = logging.FileHandler(Path(logfile), mode="w+", encoding="utf-8")
        handler.setFormatter(_Formatter(colored=False))
    else:
        stream = sys.stderr
        if use_tty is None:
            use_tty = stream.isatty()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(_Formatter(colored=use_tty))

    _logger.addHandler(handler)
    _handler = handler
    return handler


def log_info(message: str) -> None:
    """Log an informational message."""
    _logger.info(message)


def log_error(message: str) -> None:
    """Log an error message."""
    _logger.error(message)


def run_as(user: str) -> None:
    """Switch group, supplementary groups and user id to those of user.

    user may be a name or a numeric uid; an empty string does nothing.
    Raises RunAsError when the user is unknown or a switch fails.
    """
    if not user:
        return
    try:
        import pwd
    except ImportError:
        return

    try:
        entry = None
        if is_numeric(user):
            try:
                entry = pwd.getpwuid(int(user))
            except OverflowError:
                entry = None
        if entry is None:
            entry = pwd.getpwnam(user)
    except KeyError:
        message = f"run_as user '{user}' could not be found."
        log_error(message)
        raise RunAsError(message) from None

    # setgid first: it may no longer be allowed once the uid has changed
    try:
        os.setgid(entry.pw_gid)
    except OSError as exc:
        message = (
            f"Could not change group id to that of run_as user "
            f"'{entry.pw_name}': {exc.strerror}"
        )
        log_error(message)
        raise RunAsError(message) from exc
    try:
        os.initgroups(entry.pw_name, entry.pw_gid)
    except OSError as exc:
        message = f"Could not change supplementary groups for user '{entry.pw_name}'."
        log_error(message)
        raise RunAsError(message) from exc
    try:
        os.setuid(entry.pw_uid)
    except OSError as exc:
        message = (
            f"Could not change user id to that of run_as user "
            f"'{entry.pw_name}': {exc.strerror}"
        )
        log_error(message)
        raise RunAsError(message) from exc


def _have_setrlimit() -> bool:
    try:
        import resource  # noqa: F401
    except ImportError:
        return False
    return True


def usage_text(module: Module = Module.LOCAL, crypto: str = ssl.OPENSSL_VERSION) -> str:
    """Return the command-line help for the given program."""
    module = Module(module)
    linux = sys.platform.startswith("linux")
    lines = [
        "",
        f"ssrelay {VERSION} with {crypto}",
        "",
        "  usage:",
        "",
        f"    {module.value}",
        "",
        "       -s <server_host>           Host name or IP address of your remote server.",
        "       -p <server_port>           Port number of your remote server.",
        "       -l <local_port>            Port number of your local server.",
        "       -k <password>              Password of your remote server.",
        "       -m <encrypt_method>        Encrypt method: table, rc4, rc4-md5,",
        "                                  aes-128-cfb, aes-192-cfb, aes-256-cfb,",
        "                                  aes-128-ctr, aes-192-ctr, aes-256-ctr,",
        "                                  bf-cfb, camellia-128-cfb, camellia-192-cfb,",
        "                                  camellia-256-cfb, cast5-cfb, des-cfb,",
        "                                  idea-cfb, rc2-cfb, seed-cfb, salsa20,",
        "                                  chacha20 and chacha20-ietf.",
        "                                  The default cipher is rc4-md5.",
        "",
        "       [-a <user>]                Run as another user.",
        "       [-f <pid_file>]            The file path to store pid.",
        "       [-t <timeout>]             Socket timeout in seconds.",
        "       [-c <config_file>]         The path to config file.",
    ]
    if _have_setrlimit():
        lines.append("       [-n <number>]              Max number of open files.")
    if module is not Module.REDIR:
        lines.append("       [-i <interface>]           Network interface to bind.")
    lines += [
        "       [-b <local_address>]       Local address to bind.",
        "",
        "       [-u]                       Enable UDP relay.",
    ]
    if module is Module.REDIR:
        lines.append("                                  TPROXY is required in redir mode.")
    lines += [
        "       [-U]                       Enable UDP relay and disable TCP relay.",
        "       [-A]                       Enable onetime authentication.",
    ]
    if module is Module.REMOTE:
        lines.append("       [-6]                       Resovle hostname to IPv6 address first.")
    lines.append("")
    if module is Module.TUNNEL:
        lines += [
            "       [-L <addr>:<port>]         Destination server address and port",
            "                                  for local port forwarding.",
        ]
    if module is Module.REMOTE:
        lines.append("       [-d <addr>]                Name servers for internal DNS resolver.")
    if module in (Module.REMOTE, Module.LOCAL):
        lines += [
            "       [--fast-open]              Enable TCP fast open.",
            "                                  with Linux kernel > 3.7.0.",
            "       [--acl <acl_file>]         Path to ACL (Access Control List).",
        ]
    if module in (Module.REMOTE, Module.MANAGER):
        lines.append("       [--manager-address <addr>] UNIX domain socket address.")
    if module is Module.MANAGER:
        lines.append("       [--executable <path>]      Path to the executable of ss-server.")
    lines.append("       [--mtu <MTU>]              MTU of your network interface.")
    if linux:
        lines.append("       [--mptcp]                  Enable Multipath TCP on MPTCP Kernel.")
        if module is Module.REMOTE:
            lines.append("       [--firewall]               Setup firewall rules for auto blocking.")
    lines += [
        "",
        "       [-v]                       Verbose mode.",
        "       [-h, --help]               Print this message.",
        "",
    ]
    return "\n".join(lines) + "\n"


def daemonize(path: str | os.PathLike[str]) -> None:
    """Detach from the controlling terminal, writing the process id to path.

    Starts a new session where possible, clears the file mode mask, moves
    to the root directory and closes the standard file descriptors.
    """
    try:
        Path(path).write_text(str(os.getpid()))
    except OSError:
        log_error("Invalid pid file")
        raise SystemExit(-1) from None

    if not hasattr(os, "setsid"):
        return

    os.umask(0)
    try:
        os.setsid()
    except PermissionError:
        # already a process group leader; stay in the current session
        pass
    except OSError:
        raise SystemExit(1) from None
    try:
        os.chdir("/")
    except OSError:
        raise SystemExit(1) from None
    for fd in (0, 1, 2):
        try:
            os.close(fd)
        except OSError:
            pass


def set_nofile(nofile: int) -> None:
    """Set both the soft and the hard limit on open files to nofile."""
    if nofile <= 0:
        log_error("nofile must be greater than 0")
        raise ValueError("nofile must be greater than 0")
    import resource

    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (nofile, nofile))
    except PermissionError:
        log_error("insufficient permission to change NOFILE, not starting as root?")
        raise
    except ValueError:
        log_error("invalid nofile, decrease nofile and try again")
        raise
    except OSError as exc:
        log_error(f"setrlimit failed: {exc.strerror}")
        raise