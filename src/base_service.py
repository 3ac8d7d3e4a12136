#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Cluster access shared by the routers: namespaces, backend services and naming."""
import logging
from typing import Dict, List, Optional

from lightkube import ApiError, Client
from lightkube.generic_resource import create_namespaced_resource
from lightkube.models.meta_v1 import ObjectMeta, OwnerReference
from lightkube.resources.core_v1 import Event, Service

from config import ClientFactory, RouterConfig
from router import BackendTarget, InstanceID, NoBackendServiceError
from utils import hashed_resource_name, is_not_found

logger = logging.getLogger(__name__)

APP_LABEL = "tsuru.io/app-name"
PROCESS_LABEL = "tsuru.io/app-process"
HEADLESS_SERVICE_LABEL = "tsuru.io/is-headless-service"
DOMAIN_LABEL = "router.tsuru.io/domain"
SWAP_LABEL = "router.tsuru.io/swapped-with"
BASE_SERVICE_NAME_LABEL = "router.tsuru.io/base-service-name"
BASE_SERVICE_NAMESPACE_LABEL = "router.tsuru.io/base-service-namespace"

WEB_PROCESS = "web"

# Application registration record, optionally installed by the platform.
App = create_namespaced_resource("tsuru.io", "v1", "App", "apps")


class BaseService:
    """Access to the cluster objects every router needs."""

    def __init__(self, config: RouterConfig, client_factory: Optional[ClientFactory] = None):
        self.config = config
        self._client_factory = client_factory or config.client_factory()
        self._client: Optional[Client] = None

    @property
    def namespace(self) -> str:
        """Namespace used when an app does not declare its own."""
        return self.config.namespace

    @property
    def client(self) -> Client:
        """Returns a lightkube client built by the configured factory."""
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def get_app_namespace(self, app_name: str) -> str:
        """Return the namespace the app's resources live in."""
        try:
            app = self.client.get(App, name=app_name, namespace=self.namespace)
        except ApiError as e:
            if is_not_found(e):
                return self.namespace
            raise
        namespace = (getattr(app, "spec", None) or {}).get("namespaceName")
        return namespace or self.namespace

    def get_web_service(self, id: InstanceID, namespace: str) -> Service:
        """Return the service receiving the app's user-facing traffic.

        A single service is always selected. With several services, exactly one of them
        must be labeled with the wanted process (``web`` unless ``id`` names one).
        """
        services = [
            svc
            for svc in self.client.list(Service, namespace=namespace, labels={APP_LABEL: id.app_name})
            if (svc.metadata.labels or {}).get(HEADLESS_SERVICE_LABEL) != "true"
        ]
        if not services:
            raise NoBackendServiceError(id.app_name)
        if len(services) == 1:
            return services[0]

        process = id.process or WEB_PROCESS
        candidates = [
            svc for svc in services if (svc.metadata.labels or {}).get(PROCESS_LABEL) == process
        ]
        if len(candidates) != 1:
            logger.debug(
                f"{len(candidates)} services labeled {PROCESS_LABEL}={process} for {id.app_name}"
            )
            raise NoBackendServiceError(id.app_name, process=process)
        return candidates[0]

    def get_backend_target(self, id: InstanceID) -> BackendTarget:
        """Resolve namespace and service into the target a route must point at."""
        namespace = self.get_app_namespace(id.app_name)
        service = self.get_web_service(id, namespace)
        return backend_target(service)

    def hashed_resource_name(self, id: InstanceID, name: str) -> str:
        """Resource name derived from ``name``, unique per process and within limits."""
        if id.process:
            name = f"{name}-{id.process}"
        return hashed_resource_name(name)

    def status_detail(self, namespace: str, kind: str, uid: Optional[str]) -> str:
        """Describe the newest event recorded for an object, or '' if there is none."""
        if not uid:
            return ""
        events = list(
            self.client.list(
                Event,
                namespace=namespace,
                fields={"involvedObject.kind": kind, "involvedObject.uid": uid},
            )
        )
        if not events:
            return ""
        latest = max(events, key=_event_time)
        return f"{latest.reason}: {latest.message}"

    @staticmethod
    def is_swapped(meta: ObjectMeta) -> Optional[str]:
        """Return the app a resource is swapped with, if any."""
        return (meta.labels or {}).get(SWAP_LABEL) or None

    @staticmethod
    def swap_meta(src: ObjectMeta, dst: ObjectMeta):
        """Toggle the swap relation between two resources, in place."""
        src_labels = src.labels = dict(src.labels or {})
        dst_labels = dst.labels = dict(dst.labels or {})
        if src_labels.get(SWAP_LABEL) and src_labels.get(SWAP_LABEL) == dst_labels.get(APP_LABEL):
            src_labels.pop(SWAP_LABEL, None)
            dst_labels.pop(SWAP_LABEL, None)
        else:
            src_labels[SWAP_LABEL] = dst_labels.get(APP_LABEL, "")
            dst_labels[SWAP_LABEL] = src_labels.get(APP_LABEL, "")


def backend_target(service: Service) -> BackendTarget:
    """Build a BackendTarget pointing at the first declared port of a service."""
    ports = (service.spec.ports if service.spec else None) or []
    if not ports:
        raise NoBackendServiceError(
            (service.metadata.labels or {}).get(APP_LABEL, service.metadata.name)
        )
    return BackendTarget(
        service=service.metadata.name,
        namespace=service.metadata.namespace,
        port=ports[0].port,
    )


def controller_reference(service: Service) -> List[OwnerReference]:
    """Owner references making ``service`` the controller of a dependent object."""
    return [
        OwnerReference(
            apiVersion="v1",
            kind="Service",
            name=service.metadata.name,
            uid=service.metadata.uid,
            controller=True,
            blockOwnerDeletion=True,
        )
    ]


def merge_labels(*layers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge label or annotation maps, later layers winning."""
    merged: Dict[str, str] = {}
    for layer in layers:
        merged.update(layer or {})
    return merged


def _event_time(event: Event):
    # Events carry either lastTimestamp (core events) or eventTime (events.k8s.io)
    when = event.lastTimestamp or event.eventTime or event.metadata.creationTimestamp
    return when.isoformat() if when else ""
