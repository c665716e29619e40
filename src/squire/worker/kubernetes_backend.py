"""Kubernetes worker backend: one batch Job per task."""

from __future__ import annotations

import logging
import os
import re
from typing import Any

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from squire.worker.base import (
    DEFAULT_MODEL,
    REPO_LABEL,
    TASK_ID_LABEL,
    BackendStartError,
    BackendType,
    BackendUnavailableError,
    KubernetesBackendConfig,
    StartTaskOptions,
    WorkerTaskInfo,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("squire.audit")

DEFAULT_NAMESPACE = "squire"
DEFAULT_WORKER_IMAGE = "ghcr.io/privaspeech-org/squire-worker:latest"
DEFAULT_CPU_REQUEST = "500m"
DEFAULT_MEMORY_REQUEST = "1Gi"
CONTAINER_NAME = "worker"
JOB_NAME_PREFIX = "squire-worker-"
MAX_NAME_LENGTH = 63
MANAGED_BY_SELECTOR = "app.kubernetes.io/managed-by=squire"
GITHUB_TOKEN_SECRET_KEY = "token"
HTTP_NOT_FOUND = 404


def job_name_for(task_id: str) -> str:
    """DNS-safe Job name derived from a task id."""

    sanitized = re.sub(r"[^a-z0-9-]", "-", task_id.lower())
    return f"{JOB_NAME_PREFIX}{sanitized}"[:MAX_NAME_LENGTH]


def repo_label_value(repo: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "-", repo)[:MAX_NAME_LENGTH]


def load_kube_config() -> None:
    """In-cluster service account config, falling back to the local kubeconfig."""

    try:
        k8s_config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes config")
    except ConfigException:
        k8s_config.load_kube_config()
        logger.debug("Loaded Kubernetes config from kubeconfig")


class KubernetesBackend:
    """Run each task as a Job in the configured namespace."""

    name = BackendType.KUBERNETES

    def __init__(
        self,
        config: KubernetesBackendConfig | None = None,
        *,
        batch_api: Any | None = None,
        core_api: Any | None = None,
    ) -> None:
        self.config = config or KubernetesBackendConfig()
        self.namespace = (
            self.config.namespace or os.getenv("SQUIRE_NAMESPACE") or DEFAULT_NAMESPACE
        )
        if batch_api is None or core_api is None:
            load_kube_config()
        self.batch_api = batch_api or k8s_client.BatchV1Api()
        self.core_api = core_api or k8s_client.CoreV1Api()
        logger.info("Kubernetes backend initialized: namespace=%s", self.namespace)

    def start(self, options: StartTaskOptions) -> str:
        task = options.task
        job_name = job_name_for(task.id)
        limits = options.container_config
        audit_logger.info(
            "job_create_requested task=%s job=%s repo=%s branch=%s github_token_present=%s "
            "cpu_limit=%s memory_limit_mb=%s",
            task.id,
            job_name,
            task.repo,
            task.branch,
            bool(options.github_token),
            limits.cpu_limit,
            limits.memory_limit_mb,
        )
        logger.info(
            "Creating Job for task: task=%s job=%s retry_count=%d",
            task.id,
            job_name,
            task.retry_count or 0,
        )
        manifest = self.build_job_manifest(options)
        try:
            created = self.batch_api.create_namespaced_job(namespace=self.namespace, body=manifest)
        except ApiException as error:
            logger.error("Failed to create Job %s for task %s: %s", job_name, task.id, error)
            raise BackendStartError(
                f"Failed to create Job {job_name}: {error.reason or error}",
                transient=error.status is not None and error.status >= 500,
            ) from error

        metadata = getattr(created, "metadata", None)
        created_name = getattr(metadata, "name", None) or job_name
        audit_logger.info("job_created task=%s job=%s", task.id, created_name)
        logger.info("Job created: task=%s job=%s", task.id, created_name)
        return created_name

    def build_job_manifest(self, options: StartTaskOptions) -> dict[str, Any]:
        """Job body for ``options.task``; the GitHub token comes from a cluster secret."""

        task = options.task
        cfg = self.config
        limits = options.container_config
        image = options.worker_image or os.getenv("SQUIRE_WORKER_IMAGE") or DEFAULT_WORKER_IMAGE
        token_ref = {
            "secretKeyRef": {"name": cfg.github_token_secret, "key": GITHUB_TOKEN_SECRET_KEY},
        }
        pod_spec: dict[str, Any] = {
            "restartPolicy": "Never",
            "serviceAccountName": cfg.service_account_name,
            "containers": [
                {
                    "name": CONTAINER_NAME,
                    "image": image,
                    "env": [
                        {"name": "TASK_ID", "value": task.id},
                        {"name": "REPO", "value": task.repo},
                        {"name": "PROMPT", "value": task.prompt},
                        {"name": "BRANCH", "value": task.branch or ""},
                        {"name": "BASE_BRANCH", "value": task.base_branch or "main"},
                        {"name": "MODEL", "value": options.model or DEFAULT_MODEL},
                        {"name": "GITHUB_TOKEN", "valueFrom": token_ref},
                        {"name": "GH_TOKEN", "valueFrom": token_ref},
                    ],
                    "resources": {
                        "requests": {
                            "cpu": DEFAULT_CPU_REQUEST,
                            "memory": DEFAULT_MEMORY_REQUEST,
                        },
                        "limits": {
                            "cpu": str(limits.cpu_limit),
                            "memory": f"{limits.memory_limit_mb}Mi",
                        },
                    },
                    "volumeMounts": [{"name": "tasks", "mountPath": cfg.tasks_volume_path}],
                },
            ],
            "volumes": [
                {
                    "name": "tasks",
                    "persistentVolumeClaim": {"claimName": cfg.tasks_pvc_name},
                },
            ],
        }
        if cfg.skills_pvc_name:
            pod_spec["containers"][0]["volumeMounts"].append(
                {"name": "skills", "mountPath": "/skills", "readOnly": True},
            )
            pod_spec["volumes"].append(
                {
                    "name": "skills",
                    "persistentVolumeClaim": {"claimName": cfg.skills_pvc_name, "readOnly": True},
                },
            )
        if cfg.image_pull_secrets:
            pod_spec["imagePullSecrets"] = [{"name": name} for name in cfg.image_pull_secrets]
        if cfg.node_selector:
            pod_spec["nodeSelector"] = dict(cfg.node_selector)
        if cfg.tolerations:
            pod_spec["tolerations"] = [dict(item) for item in cfg.tolerations]

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": job_name_for(task.id),
                "namespace": self.namespace,
                "labels": {
                    "app.kubernetes.io/name": "squire-worker",
                    "app.kubernetes.io/component": "worker",
                    "app.kubernetes.io/managed-by": "squire",
                    TASK_ID_LABEL: task.id,
                    REPO_LABEL: repo_label_value(task.repo),
                },
            },
            "spec": {
                "activeDeadlineSeconds": cfg.active_deadline_seconds,
                "ttlSecondsAfterFinished": cfg.ttl_seconds_after_finished,
                "backoffLimit": cfg.backoff_limit,
                "template": {
                    "metadata": {
                        "labels": {
                            "app.kubernetes.io/name": "squire-worker",
                            "app.kubernetes.io/component": "worker",
                            TASK_ID_LABEL: task.id,
                        },
                    },
                    "spec": pod_spec,
                },
            },
        }

    def stop(self, handle: str) -> None:
        audit_logger.info("job_delete_requested job=%s", handle)
        try:
            self.batch_api.delete_namespaced_job(
                name=handle,
                namespace=self.namespace,
                propagation_policy="Background",
            )
        except ApiException as error:
            if error.status == HTTP_NOT_FOUND:
                logger.info("Job already deleted: %s", handle)
                return
            logger.warning("Failed to delete Job %s: %s", handle, error)
            return
        audit_logger.info("job_deleted job=%s", handle)
        logger.info("Job deleted: %s", handle)

    def remove(self, handle: str) -> None:
        self.stop(handle)

    def get_logs(self, handle: str, tail: int | None = None) -> str:
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"job-name={handle}",
            )
            if not pods.items:
                return ""
            pod_name = pods.items[0].metadata.name
            kwargs: dict[str, Any] = {"container": CONTAINER_NAME}
            if tail is not None:
                kwargs["tail_lines"] = tail
            logs = self.core_api.read_namespaced_pod_log(
                name=pod_name,
                namespace=self.namespace,
                **kwargs,
            )
        except ApiException as error:
            if error.status != HTTP_NOT_FOUND:
                logger.warning("Failed to get Job logs for %s: %s", handle, error)
            return ""
        logger.debug("Job logs retrieved: job=%s pod=%s", handle, pod_name)
        return logs or ""

    def is_running(self, handle: str) -> bool:
        job = self._read_job(handle)
        if job is None:
            return False
        return _job_running(job.status)

    def get_exit_code(self, handle: str) -> int | None:
        job = self._read_job(handle)
        if job is None or job.status is None:
            return None
        if (job.status.succeeded or 0) > 0:
            return 0
        if (job.status.failed or 0) > 0:
            return self._failed_exit_code(handle)
        return None

    def list_workers(self) -> list[WorkerTaskInfo]:
        try:
            jobs = self.batch_api.list_namespaced_job(
                namespace=self.namespace,
                label_selector=MANAGED_BY_SELECTOR,
            )
        except ApiException as error:
            logger.warning("Failed to list Jobs: %s", error)
            raise BackendUnavailableError(
                f"Cannot list Jobs in namespace {self.namespace}: {error.reason or error.status}",
            ) from error

        workers = []
        for job in jobs.items:
            labels = job.metadata.labels or {}
            status = job.status
            exit_code = None
            if status is not None and (status.succeeded or 0) > 0:
                exit_code = 0
            elif status is not None and (status.failed or 0) > 0:
                exit_code = 1
            created = job.metadata.creation_timestamp
            workers.append(
                WorkerTaskInfo(
                    task_id=labels.get(TASK_ID_LABEL, ""),
                    worker_id=job.metadata.name or "",
                    running=_job_running(status),
                    exit_code=exit_code,
                    repo=labels.get(REPO_LABEL),
                    created_at=created.isoformat() if created is not None else None,
                ),
            )
        logger.debug("Listed squire Jobs: count=%d", len(workers))
        return workers

    def _read_job(self, handle: str) -> Any | None:
        try:
            return self.batch_api.read_namespaced_job(name=handle, namespace=self.namespace)
        except ApiException as error:
            if error.status != HTTP_NOT_FOUND:
                logger.debug("Error checking Job status %s: %s", handle, error)
            return None

    def _failed_exit_code(self, handle: str) -> int:
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"job-name={handle}",
            )
        except ApiException as error:
            logger.debug("Failed to list pods for Job %s: %s", handle, error)
            return 1
        for pod in pods.items:
            statuses = (pod.status.container_statuses if pod.status else None) or []
            for container_status in statuses:
                state = container_status.state
                terminated = state.terminated if state is not None else None
                if terminated is not None and terminated.exit_code is not None:
                    return int(terminated.exit_code)
        return 1


def _job_running(status: Any | None) -> bool:
    # A Job without a terminal count is still scheduling its pod.
    if status is None:
        return True
    return (status.succeeded or 0) == 0 and (status.failed or 0) == 0
