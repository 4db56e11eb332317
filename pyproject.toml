[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsupstream"
version = "0.1.0"
description = "DNS upstream clients for plain DNS, DNS-over-TLS and DNS-over-HTTPS, with bootstrap resolvers and parallel exchange."
requires-python = ">=3.10"
keywords = ["dns", "dns-over-tls", "dns-over-https", "resolver", "upstream", "bootstrap"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "dnspython",
    "httpx[http2]",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsupstream"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
