#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Ingress router: converges Ingress and Secret objects for an application."""
import base64
import logging
from copy import deepcopy
from typing import Dict, Iterable, List, Optional, Set, Tuple

import httpx
from lightkube import ApiError
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.models.networking_v1 import (
    HTTPIngressPath,
    HTTPIngressRuleValue,
    IngressBackend,
    IngressRule,
    IngressServiceBackend,
    IngressSpec,
    IngressTLS,
    ServiceBackendPort,
)
from lightkube.resources.core_v1 import Secret, Service
from lightkube.resources.networking_v1 import Ingress
from lightkube.types import CascadeType

from base_service import (
    APP_LABEL,
    BASE_SERVICE_NAME_LABEL,
    BASE_SERVICE_NAMESPACE_LABEL,
    DOMAIN_LABEL,
    SWAP_LABEL,
    BaseService,
    backend_target,
    controller_reference,
    merge_labels,
)
from config import DEFAULT_CLASS_OPT, DEFAULT_OPTS_AS_ANNOTATIONS, DEFAULT_OPTS_AS_ANNOTATIONS_DOCS
from router import (
    ACME_OPT,
    DOMAIN_OPT,
    ROUTE_OPT,
    AppSwappedError,
    BackendStatus,
    BackendTarget,
    CertData,
    CertificateOrphanedError,
    EnsureBackendOpts,
    InstanceID,
    InvalidOptionError,
    RoutingOptions,
    SwapRollbackError,
)
from utils import is_hostname, is_not_found, validate_annotation_key

logger = logging.getLogger(__name__)

# Common annotation used to enable acme-tls.
ANNOTATION_ACME = "kubernetes.io/tls-acme"
ANNOTATION_CNAMES = "router.tsuru.io/cnames"
# Hosts whose TLS entries were attached by add_certificate.
ANNOTATION_CERTIFICATES = "router.tsuru.io/certificates"
LABEL_CNAME_INGRESS = "router.tsuru.io/is-cname-ingress"

PATH_TYPE = "ImplementationSpecific"
TLS_SECRET_TYPE = "kubernetes.io/tls"
DELETION_MARKER = "-"


def build_ingress_spec(host: str, path: str, target: BackendTarget) -> IngressSpec:
    """Single rule routing ``host`` and ``path`` to the target service port."""
    return IngressSpec(
        rules=[
            IngressRule(
                host=host,
                http=HTTPIngressRuleValue(
                    paths=[
                        HTTPIngressPath(
                            path=path or None,
                            pathType=PATH_TYPE,
                            backend=IngressBackend(
                                service=IngressServiceBackend(
                                    name=target.service,
                                    port=ServiceBackendPort(number=target.port),
                                )
                            ),
                        )
                    ]
                ),
            )
        ]
    )


def ingress_has_changes(existing: Ingress, desired: Ingress) -> bool:
    """Reports whether writing ``desired`` would change ``existing``.

    The spec must be identical. Labels and annotations are only checked one way: every
    key of ``desired`` must be on ``existing`` with the same value, extra keys on
    ``existing`` are ignored.
    """
    name = existing.metadata.name
    if existing.spec != desired.spec:
        logger.debug(f"ingress {name} has changed the spec")
        return True

    existing_annotations = existing.metadata.annotations or {}
    for key, value in (desired.metadata.annotations or {}).items():
        if existing_annotations.get(key) != value:
            logger.debug(
                f"ingress {name} has changed the annotation {key}: "
                f"{existing_annotations.get(key)!r} -> {value!r}"
            )
            return True

    existing_labels = existing.metadata.labels or {}
    for key, value in (desired.metadata.labels or {}).items():
        if existing_labels.get(key) != value:
            logger.debug(
                f"ingress {name} has changed the label {key}: "
                f"{existing_labels.get(key)!r} -> {value!r}"
            )
            return True

    logger.debug(f"ingress {name} has no changes")
    return False


def parse_hosts(value: Optional[str]) -> Set[str]:
    """Parse a comma-joined host list annotation."""
    return {host.strip() for host in (value or "").split(",") if host.strip()}


def diff_cnames(previous: Iterable[str], target: Iterable[str]) -> Tuple[Set[str], Set[str]]:
    """Return (aliases to add, aliases to remove)."""
    previous, target = set(previous), set(target)
    return target - previous, previous - target


def is_ingress_ready(ingress: Ingress) -> bool:
    """An ingress is ready once the controller published a load balancer address."""
    if not (status := getattr(ingress, "status", None)):
        return False
    if not (load_balancer_status := getattr(status, "loadBalancer", None)):
        return False
    if not (ingress_addresses := getattr(load_balancer_status, "ingress", None)):
        return False
    if not (ingress_address := ingress_addresses[0]):
        return False
    return bool(getattr(ingress_address, "ip", None) or getattr(ingress_address, "hostname", None))


def _ingress_backend(ingress: Ingress) -> Optional[IngressBackend]:
    for rule in (ingress.spec.rules if ingress.spec else None) or []:
        for path in (rule.http.paths if rule.http else None) or []:
            return path.backend
    return None


def _set_ingress_backend(ingress: Ingress, backend: Optional[IngressBackend]):
    if backend is None:
        return
    for rule in (ingress.spec.rules if ingress.spec else None) or []:
        for path in (rule.http.paths if rule.http else None) or []:
            path.backend = deepcopy(backend)


class IngressService(BaseService):
    """Manages ingresses in a Kubernetes cluster running an ingress controller."""

    def ingress_name(self, id: InstanceID) -> str:
        """Name of the app's primary ingress."""
        return self.hashed_resource_name(id, f"kubernetes-router-{id.app_name}-ingress")

    def ingress_cname(self, id: InstanceID, cname: str) -> str:
        """Name of the sibling ingress serving ``cname``."""
        return self.hashed_resource_name(id, f"kubernetes-router-cname-{cname}")

    def secret_name(self, id: InstanceID, host: str) -> str:
        """Name of the TLS secret holding the certificate of ``host``."""
        return self.hashed_resource_name(id, f"kr-{id.app_name}-{host}")

    def _annotation_with_prefix(self, suffix: str) -> str:
        if not self.config.annotations_prefix:
            return suffix
        return f"{self.config.annotations_prefix}/{suffix}"

    @property
    def _opts_as_annotations(self) -> Dict[str, str]:
        return merge_labels(DEFAULT_OPTS_AS_ANNOTATIONS, self.config.opts_as_annotations)

    def _get_ingress(self, name: str, namespace: str) -> Optional[Ingress]:
        try:
            return self.client.get(Ingress, name=name, namespace=namespace)
        except ApiError as e:
            if is_not_found(e):
                return None
            raise

    def _vhost(self, id: InstanceID, opts: RoutingOptions) -> str:
        if opts.domain:
            if not is_hostname(opts.domain):
                raise InvalidOptionError(f"invalid value for option {DOMAIN_OPT!r}: {opts.domain!r}")
            return opts.domain
        domain_suffix = opts.domain_suffix or self.config.domain_suffix
        parts = [opts.domain_prefix, id.app_name, domain_suffix]
        return ".".join(part for part in parts if part)

    def _new_ingress(
        self,
        name: str,
        namespace: str,
        host: str,
        service: Service,
        target: BackendTarget,
        opts: RoutingOptions,
        id: InstanceID,
        extra_labels: Optional[Dict[str, str]] = None,
    ) -> Ingress:
        ingress = Ingress(
            metadata=ObjectMeta(
                name=name,
                namespace=namespace,
                labels=merge_labels(
                    {
                        BASE_SERVICE_NAMESPACE_LABEL: service.metadata.namespace,
                        BASE_SERVICE_NAME_LABEL: service.metadata.name,
                    },
                    extra_labels,
                ),
                ownerReferences=controller_reference(service),
            ),
            spec=build_ingress_spec(host, opts.route, target),
        )
        self._fill_ingress_meta(ingress, opts, id)
        return ingress

    def _fill_ingress_meta(self, ingress: Ingress, opts: RoutingOptions, id: InstanceID):
        """Apply operator metadata, option annotations, identity and ACME to ``ingress``."""
        meta = ingress.metadata
        labels = merge_labels(meta.labels, self.config.labels)
        annotations = merge_labels(meta.annotations, self.config.annotations)

        additional_opts = dict(opts.additional_opts)
        if self.config.ingress_class:
            additional_opts[DEFAULT_CLASS_OPT] = self.config.ingress_class

        opts_as_annotations = self._opts_as_annotations
        for opt_name, opt_value in sorted(additional_opts.items()):
            annotation = opts_as_annotations.get(opt_name)
            if annotation is None:
                if "/" in opt_name:
                    annotation = opt_name
                else:
                    annotation = self._annotation_with_prefix(opt_name)
                if not validate_annotation_key(annotation.rstrip(DELETION_MARKER)):
                    raise InvalidOptionError(f"invalid option {opt_name!r}: not a valid annotation")
            if annotation.endswith(DELETION_MARKER):
                annotations.pop(annotation[: -len(DELETION_MARKER)], None)
            else:
                annotations[annotation] = opt_value

        labels[APP_LABEL] = id.app_name
        meta.labels = labels
        meta.annotations = annotations

        if not opts.acme:
            return
        # Runs last so the entry targets the final host.
        if ingress.spec and ingress.spec.rules:
            host = ingress.spec.rules[0].host
            ingress.spec.tls = [IngressTLS(hosts=[host], secretName=self.secret_name(id, host))]
        annotations[ANNOTATION_ACME] = "true"

    def _apply(self, desired: Ingress, existing: Optional[Ingress]):
        """Create ``desired`` or update ``existing`` to match it, if anything changed."""
        name, namespace = desired.metadata.name, desired.metadata.namespace
        if existing is None:
            self.client.create(desired)
            logger.info(f"Created ingress {name} in namespace {namespace}")
            return

        if not ingress_has_changes(existing, desired):
            return

        desired.metadata.resourceVersion = existing.metadata.resourceVersion
        if existing.spec and existing.spec.defaultBackend is not None:
            desired.spec.defaultBackend = existing.spec.defaultBackend
        self.client.replace(desired)
        logger.info(f"Updated ingress {name} in namespace {namespace}")

    def ensure(self, id: InstanceID, opts: EnsureBackendOpts):
        """Create or update the app's ingresses to point at its web service."""
        namespace = self.get_app_namespace(id.app_name)
        existing = self._get_ingress(self.ingress_name(id), namespace)

        service = self.get_web_service(id, namespace)
        target = backend_target(service)

        ingress = self._new_ingress(
            self.ingress_name(id),
            namespace,
            self._vhost(id, opts.opts),
            service,
            target,
            opts.opts,
            id,
        )

        previous_cnames: Set[str] = set()
        if existing is not None:
            self._carry_over(existing, ingress)
            previous_cnames = parse_hosts((existing.metadata.annotations or {}).get(ANNOTATION_CNAMES))

        _, cnames_to_remove = diff_cnames(previous_cnames, opts.cnames)
        recorded_cnames = set(opts.cnames)
        if opts.preserve_old_cnames:
            cnames_to_remove = set()
            recorded_cnames |= previous_cnames
        if recorded_cnames or previous_cnames:
            ingress.metadata.annotations[ANNOTATION_CNAMES] = ",".join(sorted(recorded_cnames))

        for cname in sorted(set(opts.cnames)):
            self._ensure_cname_backend(id, cname, namespace, service, target, opts.opts)

        logger.debug(f"cnames to remove for {id.app_name}: {sorted(cnames_to_remove)}")
        for cname in sorted(cnames_to_remove):
            self._remove_cname_backend(id, cname, namespace)

        self._apply(ingress, existing)

    def _carry_over(self, existing: Ingress, ingress: Ingress):
        """Keep state owned by other operations on the ingress being ensured."""
        # Certificates attached by add_certificate, unless ACME now covers their host.
        existing_annotations = existing.metadata.annotations or {}
        attached_hosts = parse_hosts(existing_annotations.get(ANNOTATION_CERTIFICATES))
        acme_hosts = {host for tls in ingress.spec.tls or [] for host in tls.hosts or []}
        attached = [
            tls
            for tls in (existing.spec.tls if existing.spec else None) or []
            if attached_hosts.intersection(tls.hosts or [])
            and not acme_hosts.intersection(tls.hosts or [])
        ]
        if attached:
            ingress.spec.tls = (ingress.spec.tls or []) + attached
        if attached_hosts:
            ingress.metadata.annotations[ANNOTATION_CERTIFICATES] = existing_annotations[
                ANNOTATION_CERTIFICATES
            ]

        # A swapped app keeps pointing at its partner's backend.
        if partner := self.is_swapped(existing.metadata):
            _set_ingress_backend(ingress, _ingress_backend(existing))
            ingress.metadata.labels = merge_labels(
                ingress.metadata.labels, {SWAP_LABEL: partner}
            )

    def _ensure_cname_backend(
        self,
        id: InstanceID,
        cname: str,
        namespace: str,
        service: Service,
        target: BackendTarget,
        opts: RoutingOptions,
    ):
        name = self.ingress_cname(id, cname)
        try:
            existing = self._get_ingress(name, namespace)
            ingress = self._new_ingress(
                name,
                namespace,
                cname,
                service,
                target,
                opts,
                id,
                extra_labels={LABEL_CNAME_INGRESS: "true"},
            )
            self._apply(ingress, existing)
        except ApiError as e:
            logger.error(f"could not ensure CName {cname!r}: {e}")
            raise

    def _remove_cname_backend(self, id: InstanceID, cname: str, namespace: str):
        name = self.ingress_cname(id, cname)
        try:
            self.client.delete(Ingress, name=name, namespace=namespace)
        except ApiError as e:
            if is_not_found(e):
                return
            logger.error(f"could not remove CName {cname!r}: {e}")
            raise
        logger.info(f"Deleted ingress {name} in namespace {namespace}")

    def remove(self, id: InstanceID):
        """Delete the app's primary ingress, unless it is swapped with another app."""
        namespace = self.get_app_namespace(id.app_name)
        name = self.ingress_name(id)
        existing = self._get_ingress(name, namespace)
        if existing is None:
            return
        if partner := self.is_swapped(existing.metadata):
            raise AppSwappedError(id.app_name, partner)
        try:
            self.client.delete(
                Ingress, name=name, namespace=namespace, cascade=CascadeType.FOREGROUND
            )
        except ApiError as e:
            if is_not_found(e):
                return
            raise
        logger.info(f"Deleted ingress {name} in namespace {namespace}")

    def get_addresses(self, id: InstanceID) -> List[str]:
        """Hosts the app is reachable at."""
        namespace = self.get_app_namespace(id.app_name)
        ingress = self._get_ingress(self.ingress_name(id), namespace)
        if ingress is None or not ingress.spec or not ingress.spec.rules:
            return [""]
        return [ingress.spec.rules[0].host or ""]

    def get_status(self, id: InstanceID) -> Tuple[BackendStatus, str]:
        """Readiness of the app's primary ingress and, if not ready, why."""
        namespace = self.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        if is_ingress_ready(ingress):
            return BackendStatus.ready, ""
        try:
            detail = self.status_detail(namespace, "Ingress", ingress.metadata.uid)
        except httpx.HTTPError as e:
            logger.warning(f"could not fetch events for ingress {ingress.metadata.name}: {e}")
            detail = ""
        return BackendStatus.not_ready, detail

    def swap(self, src: InstanceID, dst: InstanceID):
        """Exchange the backends of two apps; swapping a swapped pair reverts it."""
        src_ingress = self.client.get(
            Ingress, name=self.ingress_name(src), namespace=self.get_app_namespace(src.app_name)
        )
        dst_ingress = self.client.get(
            Ingress, name=self.ingress_name(dst), namespace=self.get_app_namespace(dst.app_name)
        )
        self._check_swappable(src, src_ingress, dst, dst_ingress)

        self._swap(src_ingress, dst_ingress)
        written_src = self.client.replace(src_ingress)
        try:
            self.client.replace(dst_ingress)
        except httpx.HTTPError as e:
            logger.error(f"swap of {src.app_name} and {dst.app_name} failed, rolling back: {e}")
            self._swap(written_src, dst_ingress)
            try:
                self.client.replace(written_src)
            except httpx.HTTPError as rollback_error:
                raise SwapRollbackError(e, rollback_error) from rollback_error
            raise
        logger.info(f"Swapped backends of {src.app_name} and {dst.app_name}")

    def _check_swappable(
        self, src: InstanceID, src_ingress: Ingress, dst: InstanceID, dst_ingress: Ingress
    ):
        """Refuse to swap unless the pair is unswapped or swapped with each other."""
        src_partner = self.is_swapped(src_ingress.metadata)
        dst_partner = self.is_swapped(dst_ingress.metadata)
        if src_partner == dst.app_name and dst_partner == src.app_name:
            return
        for app, partner, other in (
            (src.app_name, src_partner, dst.app_name),
            (dst.app_name, dst_partner, src.app_name),
        ):
            if partner and partner != other:
                raise AppSwappedError(app, partner)
        # Only one side records the swap, as left by an interrupted swap.
        if src_partner:
            raise AppSwappedError(src.app_name, src_partner)
        if dst_partner:
            raise AppSwappedError(dst.app_name, dst_partner)

    def _swap(self, src: Ingress, dst: Ingress):
        src_backend, dst_backend = _ingress_backend(src), _ingress_backend(dst)
        _set_ingress_backend(src, dst_backend)
        _set_ingress_backend(dst, src_backend)
        self.swap_meta(src.metadata, dst.metadata)

    def add_certificate(self, id: InstanceID, host: str, cert: CertData):
        """Store a certificate for ``host`` and attach it to the app's ingress."""
        namespace = self.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        secret = Secret(
            metadata=ObjectMeta(
                name=self.secret_name(id, host),
                namespace=namespace,
                labels={APP_LABEL: id.app_name, DOMAIN_LABEL: host},
                annotations={},
            ),
            type=TLS_SECRET_TYPE,
            stringData={"tls.crt": cert.certificate, "tls.key": cert.key},
        )
        created = self.client.create(secret)
        logger.info(f"Created secret {created.metadata.name} in namespace {namespace}")

        ingress.spec.tls = list(ingress.spec.tls or []) + [
            IngressTLS(hosts=[host], secretName=created.metadata.name)
        ]
        self._record_certificate(ingress, host, attached=True)
        self.client.replace(ingress)

    def get_certificate(self, id: InstanceID, host: str) -> CertData:
        """Read back the certificate stored for ``host``."""
        namespace = self.get_app_namespace(id.app_name)
        secret = self.client.get(Secret, name=self.secret_name(id, host), namespace=namespace)
        data = secret.data or {}
        return CertData(
            certificate=_decode(data.get("tls.crt")),
            key=_decode(data.get("tls.key")),
        )

    def remove_certificate(self, id: InstanceID, host: str):
        """Detach the certificate of ``host`` from the app's ingress and delete it."""
        namespace = self.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        ingress.spec.tls = [
            tls for tls in ingress.spec.tls or [] if host not in (tls.hosts or [])
        ] or None
        self._record_certificate(ingress, host, attached=False)
        self.client.replace(ingress)

        name = self.secret_name(id, host)
        try:
            self.client.delete(Secret, name=name, namespace=namespace)
        except httpx.HTTPError as e:
            if is_not_found(e):
                return
            raise CertificateOrphanedError(name, e) from e
        logger.info(f"Deleted secret {name} in namespace {namespace}")

    @staticmethod
    def _record_certificate(ingress: Ingress, host: str, attached: bool):
        annotations = ingress.metadata.annotations = dict(ingress.metadata.annotations or {})
        hosts = parse_hosts(annotations.get(ANNOTATION_CERTIFICATES))
        if attached:
            hosts.add(host)
        else:
            hosts.discard(host)
        if hosts:
            annotations[ANNOTATION_CERTIFICATES] = ",".join(sorted(hosts))
        else:
            annotations.pop(ANNOTATION_CERTIFICATES, None)

    def supported_options(self) -> Dict[str, str]:
        """Options accepted by ensure, with their documentation."""
        opts = {DOMAIN_OPT: "", ACME_OPT: "", ROUTE_OPT: ""}
        docs = merge_labels(DEFAULT_OPTS_AS_ANNOTATIONS_DOCS, self.config.opts_as_annotations_docs)
        for name, annotation in self._opts_as_annotations.items():
            opts[name] = docs.get(name) or annotation
        return opts


def _decode(value: Optional[str]) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")
