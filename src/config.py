#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Operator configuration for the ingress router."""
import logging
from copy import deepcopy
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import httpx
import pydantic
import yaml
from deepmerge import always_merger
from lightkube import Client

# To keep a tidy log, we suppress some DEBUG/INFO logs from some imported libs,
# even when router logging is set to a lower level.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

DEFAULT_FIELD_MANAGER = "kubernetes-router"
DEFAULT_CLASS_OPT = "class"

# Options every ingress router maps onto annotations, and their documentation.
DEFAULT_OPTS_AS_ANNOTATIONS = {
    DEFAULT_CLASS_OPT: "kubernetes.io/ingress.class",
}
DEFAULT_OPTS_AS_ANNOTATIONS_DOCS = {
    DEFAULT_CLASS_OPT: "Ingress class for the Ingress object",
}

DEFAULT_CONFIG = {
    "namespace": "default",
    "timeout": 10.0,
    "opts_as_annotations": DEFAULT_OPTS_AS_ANNOTATIONS,
    "opts_as_annotations_docs": DEFAULT_OPTS_AS_ANNOTATIONS_DOCS,
}

ClientFactory = Callable[[], Client]


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded."""


class RouterConfig(pydantic.BaseModel):
    """Settings fixed by the operator for every request."""

    namespace: str = "default"
    timeout: float = pydantic.Field(default=10.0, gt=0)
    field_manager: str = DEFAULT_FIELD_MANAGER
    # Labels and annotations added to every resource created.
    labels: Dict[str, str] = pydantic.Field(default_factory=dict)
    annotations: Dict[str, str] = pydantic.Field(default_factory=dict)
    # Default domain suffix, used when the request does not carry one.
    domain_suffix: str = ""
    # Prefix prepended to unrecognized options turned into annotations,
    # e.g. "nginx.ingress.kubernetes.io".
    annotations_prefix: str = ""
    ingress_class: str = ""
    opts_as_annotations: Dict[str, str] = pydantic.Field(
        default_factory=lambda: dict(DEFAULT_OPTS_AS_ANNOTATIONS)
    )
    opts_as_annotations_docs: Dict[str, str] = pydantic.Field(
        default_factory=lambda: dict(DEFAULT_OPTS_AS_ANNOTATIONS_DOCS)
    )

    def client_factory(self) -> ClientFactory:
        """Return a factory building lightkube clients for this configuration."""

        def _factory() -> Client:
            return Client(
                namespace=self.namespace,
                field_manager=self.field_manager,
                timeout=httpx.Timeout(self.timeout),
            )

        return _factory


def load_config(path: Optional[Union[str, Path]] = None) -> RouterConfig:
    """Load the router configuration from a YAML file, merged over the defaults."""
    config = deepcopy(DEFAULT_CONFIG)
    if path is None:
        return RouterConfig(**config)

    try:
        raw = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot load configuration from {path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"configuration in {path} must be a mapping, got {type(raw).__name__}")

    always_merger.merge(config, raw)
    try:
        router_config = RouterConfig(**config)
    except pydantic.ValidationError as e:
        raise ConfigError(f"invalid configuration in {path}: {e}") from e
    logger.debug(f"loaded router configuration from {path}")
    return router_config
