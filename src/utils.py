#!/usr/bin/env python3
# Copyright 2022 Canonical Ltd.
# See LICENSE file for licensing details.
"""Utilities."""

import hashlib
import ipaddress
import logging
import re
from typing import Optional

from lightkube import ApiError

logger = logging.getLogger(__name__)

# Kubernetes object names are DNS1123 subdomains, at most 253 characters long.
MAX_RESOURCE_NAME_LENGTH = 253
_HASH_LENGTH = 16

# Based on https://github.com/kubernetes/apimachinery/blob/v0.31.3/pkg/util/validation/validation.go#L204
# Regex for DNS1123 subdomains:
# - Starts with a lowercase letter or number ([a-z0-9])
# - May contain dashes (-), but not consecutively, and must not start or end with them
# - Segments can be separated by dots (.)
# - Example valid: "example.com", "my-app.io", "sub.domain"
# - Example invalid: "-example.com", "example..com", "example-.com"
DNS1123_SUBDOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)

# Based on https://github.com/kubernetes/apimachinery/blob/v0.31.3/pkg/util/validation/validation.go#L32
# Regex for Kubernetes qualified names:
# - Starts with an alphanumeric character ([A-Za-z0-9])
# - Can include dashes (-), underscores (_), dots (.), or alphanumeric characters in the middle
# - Ends with an alphanumeric character
# - Must not be empty
# - Example valid: "annotation", "my.annotation", "annotation-name"
# - Example invalid: ".annotation", "annotation.", "-annotation", "annotation@key"
QUALIFIED_NAME_PATTERN = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")


def is_hostname(value: Optional[str]) -> bool:
    """Return False if input value is an IP address; True otherwise."""
    if value is None:
        return False

    try:
        ipaddress.ip_address(value)
        # No exception raised so this is an IP address.
        return False
    except ValueError:
        # This is not an IP address so assume it's a hostname.
        return bool(value)


def is_not_found(error: Exception) -> bool:
    """Return True if the error is a lightkube 404."""
    if not isinstance(error, ApiError):
        return False
    status = getattr(error, "status", None)
    return getattr(status, "code", None) == 404


def hashed_resource_name(name: str, limit: int = MAX_RESOURCE_NAME_LENGTH) -> str:
    """Fit ``name`` into ``limit`` characters, deterministically.

    Names within the limit are returned untouched. Longer names are cut and suffixed
    with the first characters of the sha256 of the full name, so the same input always
    yields the same output and different long inputs are unlikely to collide.
    """
    if len(name) <= limit:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:_HASH_LENGTH]
    return f"{name[:limit - _HASH_LENGTH - 1]}-{digest}"


def validate_annotation_key(key: str) -> bool:
    """Validate the annotation key."""
    if len(key) > 253:
        logger.error(f"Invalid annotation key: '{key}'. Key length exceeds 253 characters.")
        return False

    if not is_qualified_name(key.lower()):
        logger.error(f"Invalid annotation key: '{key}'. Must follow Kubernetes annotation syntax.")
        return False

    return True


def is_qualified_name(value: str) -> bool:
    """Check if a value is a valid Kubernetes qualified name."""
    parts = value.split("/")
    if len(parts) > 2:
        return False  # Invalid if more than one '/'

    if len(parts) == 2:  # If prefixed
        prefix, name = parts
        if not prefix or not DNS1123_SUBDOMAIN_PATTERN.match(prefix):
            return False
    else:
        name = parts[0]  # No prefix

    if not name or len(name) > 63 or not QUALIFIED_NAME_PATTERN.match(name):
        return False

    return True
