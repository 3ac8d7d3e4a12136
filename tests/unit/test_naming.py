# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest

from router import InstanceID
from utils import MAX_RESOURCE_NAME_LENGTH, hashed_resource_name, is_qualified_name


@pytest.mark.parametrize("name", ("kubernetes-router-test-ingress", "a" * MAX_RESOURCE_NAME_LENGTH))
def test_short_names_are_untouched(name):
    assert hashed_resource_name(name) == name


def test_long_names_are_hashed_within_limit():
    name = "kubernetes-router-cname-" + "sub." * 80 + "example.com"

    hashed = hashed_resource_name(name)

    assert len(hashed) == MAX_RESOURCE_NAME_LENGTH
    assert hashed == hashed_resource_name(name)
    assert hashed.startswith(name[:200])


def test_long_names_do_not_collide():
    prefix = "x" * 300
    assert hashed_resource_name(prefix + "a") != hashed_resource_name(prefix + "b")


def test_resource_names(ingress_service):
    id = InstanceID("myapp")
    assert ingress_service.ingress_name(id) == "kubernetes-router-myapp-ingress"
    assert ingress_service.ingress_cname(id, "www.myapp.com") == "kubernetes-router-cname-www.myapp.com"
    assert ingress_service.secret_name(id, "www.myapp.com") == "kr-myapp-www.myapp.com"


def test_process_is_part_of_the_name(ingress_service):
    assert (
        ingress_service.ingress_name(InstanceID("myapp", process="api"))
        == "kubernetes-router-myapp-ingress-api"
    )


def test_long_cname_names_are_stable(ingress_service):
    id = InstanceID("myapp")
    cname = "a" * 250 + ".example.com"

    first = ingress_service.ingress_cname(id, cname)
    second = ingress_service.ingress_cname(id, cname)

    assert first == second
    assert len(first) <= MAX_RESOURCE_NAME_LENGTH


@pytest.mark.parametrize(
    "value, expected",
    (
        ("annotation", True),
        ("nginx.ingress.kubernetes.io/proxy-body-size", True),
        ("a/b/c", False),
        ("-annotation", False),
        ("prefix./name", False),
    ),
)
def test_is_qualified_name(value, expected):
    assert is_qualified_name(value) is expected
