[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ifexhub"
version = "0.1.0"
description = "Service discovery, dynamic method dispatch and job records for IFEX-described gRPC services"
requires-python = ">=3.10"
keywords = ["ifex", "grpc", "service-discovery", "dispatcher", "protobuf"]
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
]
dependencies = [
    "grpcio",
    "protobuf",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ifex-discovery-service = "ifexhub.discovery_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ifexhub"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
