# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest

from router import InvalidOptionError, Router, RoutingOptions, supports_status, supports_tls


def test_from_raw_known_and_additional_options():
    opts = RoutingOptions.from_raw(
        {
            "domain": "myapp.com",
            "domain-prefix": "v2",
            "domain-suffix": "example.com",
            "route": "/api",
            "acme": "true",
            "tsuru.io/app-pool": "mypool",
            "exposed-port": "443",
            "custom": "val",
        }
    )

    assert opts == RoutingOptions(
        domain="myapp.com",
        domain_prefix="v2",
        domain_suffix="example.com",
        route="/api",
        acme=True,
        pool="mypool",
        exposed_port=443,
        additional_opts={"custom": "val"},
    )


def test_from_raw_empty():
    assert RoutingOptions.from_raw(None) == RoutingOptions()


@pytest.mark.parametrize("value, expected", (("True", True), ("0", False), ("", False), (True, True)))
def test_acme_values(value, expected):
    assert RoutingOptions.from_raw({"acme": value}).acme is expected


@pytest.mark.parametrize(
    "raw",
    (
        {"acme": "maybe"},
        {"exposed-port": "http"},
        {"exposed-port": "70000"},
        {"domain": 42},
    ),
)
def test_malformed_values(raw):
    with pytest.raises(InvalidOptionError):
        RoutingOptions.from_raw(raw)


class _MinimalRouter:
    def ensure(self, id, opts):
        pass

    def remove(self, id):
        pass

    def swap(self, src, dst):
        pass

    def get_addresses(self, id):
        return []

    def supported_options(self):
        return {}


def test_capabilities_of_minimal_router():
    router = _MinimalRouter()

    assert isinstance(router, Router)
    assert not supports_tls(router)
    assert not supports_status(router)
