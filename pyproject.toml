[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "natkeeper"
version = "0.1.0"
description = "Keep a NAT port mapping open, discover its public address with STUN, and forward traffic through it"
requires-python = ">=3.10"
dependencies = []
keywords = ["nat", "stun", "port-mapping", "traversal", "keepalive", "port-forwarding"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Internet",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
natkeeper = "natkeeper.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["natkeeper"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
