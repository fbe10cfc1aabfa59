[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ssrelay"
version = "0.1.0"
description = "SNI parsing, verify_simple framing, tls1.2_ticket_auth obfuscation and a UDP relay core for ShadowsocksR-style proxies"
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "shadowsocks", "udp", "relay", "tls", "sni", "obfuscation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ssrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
