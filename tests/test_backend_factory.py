from __future__ import annotations

import allure
import pytest

from squire.worker import (
    BackendType,
    create_backend,
    detect_backend_type,
    get_backend,
    parse_backend_type,
    reset_backend,
    set_backend,
)
from squire.worker.base import BackendConfig, DockerBackendConfig
from squire.worker.docker_backend import DockerBackend

pytestmark = [
    allure.epic("Worker Backends"),
    allure.feature("Backend Selection"),
]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("docker", BackendType.DOCKER),
        ("Podman", BackendType.DOCKER),
        (" k8s ", BackendType.KUBERNETES),
        ("kubernetes", BackendType.KUBERNETES),
        ("nomad", None),
    ],
)
def test_parse_backend_type(value: str, expected: BackendType | None) -> None:
    assert parse_backend_type(value) is expected


def test_detect_prefers_explicit_setting(monkeypatch) -> None:
    monkeypatch.setenv("SQUIRE_BACKEND", "k8s")
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)

    assert detect_backend_type() is BackendType.KUBERNETES


def test_detect_falls_back_to_cluster_environment(monkeypatch) -> None:
    monkeypatch.setenv("SQUIRE_BACKEND", "nomad")
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")

    assert detect_backend_type() is BackendType.KUBERNETES

    monkeypatch.delenv("KUBERNETES_SERVICE_HOST")
    monkeypatch.delenv("SQUIRE_BACKEND")
    assert detect_backend_type() is BackendType.DOCKER


def test_create_docker_backend_is_lazy(tmp_path) -> None:
    backend = create_backend(
        BackendConfig(
            type=BackendType.DOCKER,
            docker=DockerBackendConfig(socket_path=str(tmp_path / "missing.sock")),
        ),
    )

    assert isinstance(backend, DockerBackend)
    assert backend.name is BackendType.DOCKER
    assert backend._client is None


def test_shared_backend_can_be_replaced_and_reset(backend) -> None:
    set_backend(backend)
    assert get_backend() is backend

    reset_backend()
    created = get_backend(BackendConfig(type=BackendType.DOCKER))
    assert created is not backend
    assert get_backend() is created
