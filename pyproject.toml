[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "geerpc"
version = "0.1.0"
description = "A small RPC framework over TCP: pluggable codecs, service registration, a concurrent client and timeouts."
requires-python = ">=3.10"
dependencies = []
keywords = ["rpc", "remote procedure call", "codec", "client", "server", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
geerpc-demo = "geerpc.demo:main"

[tool.hatch.build.targets.wheel]
packages = ["geerpc"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
