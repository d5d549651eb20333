"""Validation of user-supplied cluster parameters"""

import ipaddress
import re

from ..errors import ConfigError

JOIN_URL_RE = re.compile(r"^https://(\d+\.\d+\.\d+\.\d+):6443$")
TOKEN_RE = re.compile(r"^K10.*::server:.+")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def validate_join_url(url: str) -> str:
    match = JOIN_URL_RE.match(url or "")
    if not match or not _ipv4(match.group(1)):
        raise ConfigError("SERVER_URL should be in format: https://IP_ADDRESS:6443")
    return url


def validate_token(token: str) -> str:
    if not TOKEN_RE.match(token or ""):
        raise ConfigError("TOKEN format appears invalid. Should start with 'K10' and contain '::server:'")
    return token


def validate_nfs_server(server: str) -> str:
    if not _ipv4(server or ""):
        raise ConfigError("Invalid NFS server address. Please provide a valid IPv4 address.")
    return server


def validate_export_path(path: str) -> str:
    if not (path or "").startswith("/"):
        raise ConfigError("Invalid NFS export path. The path must be absolute (start with '/').")
    return path


def validate_email(email: str) -> str:
    if not EMAIL_RE.match(email or ""):
        raise ConfigError(
            "An ACME e-mail address is required (traefik.acme_email or HOMEKUBE_ACME_EMAIL)"
        )
    return email
