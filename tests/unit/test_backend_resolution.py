# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import unittest

from fake_kubernetes import FakeClient, _FakeApiError, make_service
from lightkube.models.meta_v1 import ObjectMeta

from base_service import App, BaseService
from config import RouterConfig
from router import BackendTarget, InstanceID, NoBackendServiceError


class TestGetWebService(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeClient()
        self.service = BaseService(RouterConfig(namespace="default"), client_factory=lambda: self.client)

    def test_no_service(self):
        with self.assertRaises(NoBackendServiceError) as ctx:
            self.service.get_web_service(InstanceID("test"), "default")
        self.assertEqual(ctx.exception, NoBackendServiceError("test"))

    def test_headless_service_is_ignored(self):
        self.client.add(
            make_service("test-headless", "test", labels={"tsuru.io/is-headless-service": "true"})
        )
        with self.assertRaises(NoBackendServiceError) as ctx:
            self.service.get_web_service(InstanceID("test"), "default")
        self.assertEqual(ctx.exception, NoBackendServiceError("test"))

    def test_single_service_is_selected(self):
        self.client.add(make_service("test-single", "test", port=8899))
        self.client.add(make_service("other-web", "other", labels={"tsuru.io/app-process": "web"}))

        service = self.service.get_web_service(InstanceID("test"), "default")

        self.assertEqual(service.metadata.name, "test-single")

    def test_web_process_wins_among_many(self):
        self.client.add(make_service("test-single", "test", port=8899))
        self.client.add(
            make_service("test-web", "test", port=8890, labels={"tsuru.io/app-process": "web"})
        )

        service = self.service.get_web_service(InstanceID("test"), "default")

        self.assertEqual(service.metadata.name, "test-web")

    def test_many_without_web_process(self):
        self.client.add(make_service("test-a", "test", labels={"tsuru.io/app-process": "worker"}))
        self.client.add(make_service("test-b", "test"))

        with self.assertRaises(NoBackendServiceError) as ctx:
            self.service.get_web_service(InstanceID("test"), "default")

        self.assertEqual(ctx.exception, NoBackendServiceError("test", process="web"))

    def test_many_with_ambiguous_web_process(self):
        self.client.add(make_service("test-a", "test", labels={"tsuru.io/app-process": "web"}))
        self.client.add(make_service("test-b", "test", labels={"tsuru.io/app-process": "web"}))

        with self.assertRaises(NoBackendServiceError) as ctx:
            self.service.get_web_service(InstanceID("test"), "default")

        self.assertEqual(ctx.exception.process, "web")

    def test_explicit_process(self):
        self.client.add(make_service("test-web", "test", labels={"tsuru.io/app-process": "web"}))
        self.client.add(
            make_service("test-api", "test", port=9000, labels={"tsuru.io/app-process": "api"})
        )

        service = self.service.get_web_service(InstanceID("test", process="api"), "default")

        self.assertEqual(service.metadata.name, "test-api")

    def test_backend_target_uses_first_port(self):
        self.client.add(make_service("test-single", "test", port=8899))

        target = self.service.get_backend_target(InstanceID("test"))

        self.assertEqual(target, BackendTarget(service="test-single", namespace="default", port=8899))


class TestAppNamespace(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeClient()
        self.service = BaseService(RouterConfig(namespace="default"), client_factory=lambda: self.client)

    def test_default_namespace_without_app_record(self):
        self.assertEqual(self.service.get_app_namespace("test"), "default")

    def test_namespace_from_app_record(self):
        self.client.add(
            App(
                metadata=ObjectMeta(name="namespacedApp", namespace="default"),
                spec={"namespaceName": "custom-namespace"},
            )
        )
        self.client.add(
            make_service(
                "namespacedApp-web",
                "namespacedApp",
                port=8890,
                namespace="custom-namespace",
                labels={"tsuru.io/app-process": "web"},
            )
        )

        self.assertEqual(self.service.get_app_namespace("namespacedApp"), "custom-namespace")
        target = self.service.get_backend_target(InstanceID("namespacedApp"))
        self.assertEqual(target.service, "namespacedApp-web")
        self.assertEqual(target.namespace, "custom-namespace")

    def test_app_record_without_namespace(self):
        self.client.add(App(metadata=ObjectMeta(name="test", namespace="default"), spec={}))

        self.assertEqual(self.service.get_app_namespace("test"), "default")

    def test_lookup_errors_propagate(self):
        self.client.fail("get", App, "test", code=403)

        with self.assertRaises(_FakeApiError):
            self.service.get_app_namespace("test")
