# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest
from fake_kubernetes import FakeClient, make_service

from config import RouterConfig
from ingress import IngressService


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def router_config():
    return RouterConfig(namespace="default", domain_suffix="apps.example.com")


@pytest.fixture
def ingress_service(router_config, fake_client):
    return IngressService(router_config, client_factory=lambda: fake_client)


@pytest.fixture
def web_app(fake_client):
    """App "test" with a worker service and a web service listening on 8890."""
    fake_client.add(make_service("test-single", "test", port=8899))
    fake_client.add(make_service("test-web", "test", port=8890, labels={"tsuru.io/app-process": "web"}))
    return "test"
