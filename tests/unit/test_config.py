# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

from textwrap import dedent
from unittest.mock import patch

import pytest

from config import ConfigError, RouterConfig, load_config


def test_defaults():
    config = load_config()

    assert config.namespace == "default"
    assert config.timeout == 10.0
    assert config.opts_as_annotations == {"class": "kubernetes.io/ingress.class"}


def test_load_merges_over_defaults(tmp_path):
    path = tmp_path / "router.yaml"
    path.write_text(
        dedent(
            """\
            namespace: tsuru
            timeout: 5
            domain_suffix: apps.example.com
            labels:
              team: infra
            opts_as_annotations:
              body: nginx.ingress.kubernetes.io/proxy-body-size
            """
        )
    )

    config = load_config(path)

    assert config.namespace == "tsuru"
    assert config.timeout == 5.0
    assert config.domain_suffix == "apps.example.com"
    assert config.labels == {"team": "infra"}
    assert config.opts_as_annotations == {
        "class": "kubernetes.io/ingress.class",
        "body": "nginx.ingress.kubernetes.io/proxy-body-size",
    }


def test_empty_file(tmp_path):
    path = tmp_path / "router.yaml"
    path.write_text("")

    assert load_config(path) == load_config()


@pytest.mark.parametrize("content", ("- a\n- b\n", "namespace: [unclosed\n", "timeout: -1\n"))
def test_invalid_files(tmp_path, content):
    path = tmp_path / "router.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")


@patch("config.Client")
def test_client_factory(client_cls):
    config = RouterConfig(namespace="tsuru", field_manager="router", timeout=3)

    client = config.client_factory()()

    assert client is client_cls.return_value
    kwargs = client_cls.call_args.kwargs
    assert kwargs["namespace"] == "tsuru"
    assert kwargs["field_manager"] == "router"
    assert kwargs["timeout"].read == 3
