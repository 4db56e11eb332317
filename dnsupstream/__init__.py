"""DNS upstream clients for plain DNS, DNS-over-TLS and DNS-over-HTTPS, with bootstrap resolvers and parallel exchange."""

__version__ = "0.1.0"