#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Router abstraction: identities, routing options, errors and capabilities."""
import dataclasses
import enum
from typing import Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import pydantic

# Option names understood by every router.
DOMAIN_OPT = "domain"
DOMAIN_PREFIX_OPT = "domain-prefix"
DOMAIN_SUFFIX_OPT = "domain-suffix"
ROUTE_OPT = "route"
ACME_OPT = "acme"
POOL_OPT = "tsuru.io/app-pool"
EXPOSED_PORT_OPT = "exposed-port"

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off", "")


class RouterError(Exception):
    """Base class for errors raised by this package."""


class NoBackendServiceError(RouterError):
    """Raised when no service (or no unique service) backs an application."""

    def __init__(self, app: str, process: Optional[str] = None):
        self.app = app
        self.process = process
        if process:
            msg = f"no service found for app {app!r} and process {process!r}"
        else:
            msg = f"no service found for app {app!r}"
        super().__init__(msg)

    def __eq__(self, other):
        if not isinstance(other, NoBackendServiceError):
            return NotImplemented
        return (self.app, self.process) == (other.app, other.process)

    def __hash__(self):
        return hash((self.app, self.process))


class AppSwappedError(RouterError):
    """Raised when an app's swap relation forbids the requested operation."""

    def __init__(self, app: str, partner: str):
        self.app = app
        self.partner = partner
        super().__init__(
            f"app {app!r} is currently swapped with {partner!r}: swap it back first"
        )


class SwapRollbackError(RouterError):
    """Raised when a swap failed and undoing its first write failed as well."""

    def __init__(self, error: Exception, rollback_error: Exception):
        self.error = error
        self.rollback_error = rollback_error
        super().__init__(f"failed to rollback swap {error}: {rollback_error}")


class CertificateOrphanedError(RouterError):
    """Raised when a certificate was detached but its secret could not be deleted."""

    def __init__(self, secret_name: str, error: Exception):
        self.secret_name = secret_name
        self.error = error
        super().__init__(f"certificate detached but secret {secret_name!r} was left behind: {error}")


class InvalidOptionError(RouterError):
    """Raised when a routing option has a malformed value."""


@dataclasses.dataclass(frozen=True)
class InstanceID:
    """Identity of a logical backend.

    ``process`` optionally pins the backend to a single process of the app; it is
    folded into every resource name derived from this identity.
    """

    app_name: str
    process: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class BackendTarget:
    """Resolved pointer a route object must forward traffic to."""

    service: str
    namespace: str
    port: int


@dataclasses.dataclass
class CertData:
    """Certificate and private key, PEM encoded."""

    certificate: str
    key: str


class BackendStatus(enum.Enum):
    """Readiness of a backend as reported by the ingress controller."""

    ready = "ready"
    not_ready = "notReady"


class RoutingOptions(pydantic.BaseModel):
    """Per-request routing configuration."""

    model_config = pydantic.ConfigDict(extra="forbid")

    domain: str = ""
    domain_prefix: str = ""
    domain_suffix: str = ""
    route: str = ""
    acme: bool = False
    pool: str = ""
    exposed_port: Optional[int] = None
    additional_opts: Dict[str, str] = pydantic.Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, str]]) -> "RoutingOptions":
        """Build options from a flat ``name -> value`` map.

        Known names fill the typed fields, everything else lands in ``additional_opts``.
        Raises InvalidOptionError on malformed values; nothing is partially applied.
        """
        known = {
            DOMAIN_OPT: "domain",
            DOMAIN_PREFIX_OPT: "domain_prefix",
            DOMAIN_SUFFIX_OPT: "domain_suffix",
            ROUTE_OPT: "route",
            POOL_OPT: "pool",
        }
        fields: Dict[str, object] = {}
        additional: Dict[str, str] = {}
        for name, value in (raw or {}).items():
            if name in known:
                fields[known[name]] = value
            elif name == ACME_OPT:
                fields["acme"] = _parse_bool(name, value)
            elif name == EXPOSED_PORT_OPT:
                fields["exposed_port"] = _parse_port(name, value)
            else:
                additional[name] = value
        try:
            return cls(additional_opts=additional, **fields)
        except pydantic.ValidationError as e:
            raise InvalidOptionError(str(e)) from e


def _parse_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise InvalidOptionError(f"invalid value for option {name!r}: {value!r} is not a boolean")


def _parse_port(name: str, value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidOptionError(f"invalid value for option {name!r}: {value!r}") from e
    if not 0 < port < 65536:
        raise InvalidOptionError(f"invalid value for option {name!r}: {port} is out of range")
    return port


@dataclasses.dataclass
class EnsureBackendOpts:
    """Arguments of a Router.ensure call."""

    opts: RoutingOptions = dataclasses.field(default_factory=RoutingOptions)
    cnames: List[str] = dataclasses.field(default_factory=list)
    preserve_old_cnames: bool = False


@runtime_checkable
class Router(Protocol):
    """Operations every routing backend provides."""

    def ensure(self, id: InstanceID, opts: EnsureBackendOpts) -> None: ...  # noqa

    def remove(self, id: InstanceID) -> None: ...  # noqa

    def swap(self, src: InstanceID, dst: InstanceID) -> None: ...  # noqa

    def get_addresses(self, id: InstanceID) -> List[str]: ...  # noqa

    def supported_options(self) -> Dict[str, str]: ...  # noqa


@runtime_checkable
class RouterTLS(Protocol):
    """Optional capability: managing TLS certificates."""

    def add_certificate(self, id: InstanceID, host: str, cert: CertData) -> None: ...  # noqa

    def get_certificate(self, id: InstanceID, host: str) -> CertData: ...  # noqa

    def remove_certificate(self, id: InstanceID, host: str) -> None: ...  # noqa


@runtime_checkable
class RouterStatus(Protocol):
    """Optional capability: reporting backend readiness."""

    def get_status(self, id: InstanceID) -> Tuple[BackendStatus, str]: ...  # noqa


def supports_tls(router: Router) -> bool:
    """Return True if the router can manage TLS certificates."""
    return isinstance(router, RouterTLS)


def supports_status(router: Router) -> bool:
    """Return True if the router can report backend readiness."""
    return isinstance(router, RouterStatus)
