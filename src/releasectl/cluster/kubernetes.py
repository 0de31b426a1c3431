"""
Kubernetes cluster client for rollout operations.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .base import (
    ApplyOutcome,
    ClusterClient,
    ClusterRejected,
    ClusterUnreachable,
    ServiceStatus,
    WorkloadCondition,
    WorkloadNotFound,
    WorkloadStatus,
)
from releasectl.manifest.models import DeploymentSpec, Exposure, ServiceSpec

logger = logging.getLogger(__name__)

FINGERPRINT_ANNOTATION = "releasectl.io/spec-fingerprint"

# Container waiting reasons that mean the replica will not come up on its own
FATAL_WAITING_REASONS = {
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "InvalidImageName",
    "CreateContainerConfigError",
}

SERVICE_TYPES = {
    Exposure.INTERNAL: "ClusterIP",
    Exposure.EXTERNAL: "LoadBalancer",
}


@contextmanager
def _translate_errors(action: str, name: str):
    """Map API/transport failures onto the cluster error taxonomy."""
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise WorkloadNotFound(f"{action} {name}: not found") from e
        if e.status in (400, 401, 403, 409, 422):
            raise ClusterRejected(f"{action} {name}: {e.status} {e.reason}") from e
        raise ClusterUnreachable(f"{action} {name}: {e.status} {e.reason}") from e
    except (HTTPError, OSError) as e:
        raise ClusterUnreachable(f"{action} {name}: {e}") from e


class KubernetesClusterClient(ClusterClient):
    """Kubernetes client for rollout operations."""

    def __init__(self, namespace: str, in_cluster: bool = False, context: Optional[str] = None,
                 apps_api: Optional[client.AppsV1Api] = None,
                 core_api: Optional[client.CoreV1Api] = None):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Target Kubernetes namespace
            in_cluster: Whether running inside cluster
            context: Kubernetes context name (optional)
            apps_api: Preconfigured AppsV1Api (skips config loading)
            core_api: Preconfigured CoreV1Api (skips config loading)
        """
        self.namespace = namespace

        if apps_api is None or core_api is None:
            try:
                if in_cluster:
                    config.load_incluster_config()
                elif context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()
            except Exception as e:
                logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
                raise

        self.apps_v1 = apps_api or client.AppsV1Api()
        self.v1 = core_api or client.CoreV1Api()
        logger.info(f"✅ Kubernetes client initialized for namespace: {namespace}")

    # Resource bodies

    def _deployment_body(self, spec: DeploymentSpec) -> client.V1Deployment:
        env = []
        for binding in spec.env:
            if binding.secret_ref is not None:
                env.append(client.V1EnvVar(
                    name=binding.name,
                    value_from=client.V1EnvVarSource(
                        secret_key_ref=client.V1SecretKeySelector(
                            name=binding.secret_ref.name,
                            key=binding.secret_ref.key
                        )
                    )
                ))
            else:
                env.append(client.V1EnvVar(name=binding.name, value=binding.value))

        container = client.V1Container(
            name=spec.name,
            image=str(spec.image),
            env=env or None,
            ports=[client.V1ContainerPort(container_port=port.container_port, name=port.name)
                   for port in spec.ports] or None,
        )

        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=client.V1ObjectMeta(
                name=spec.name,
                labels=spec.labels,
                annotations={FINGERPRINT_ANNOTATION: spec.fingerprint()},
            ),
            spec=client.V1DeploymentSpec(
                replicas=spec.replicas,
                selector=client.V1LabelSelector(match_labels=spec.labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=spec.labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )

    def _service_body(self, service: ServiceSpec) -> client.V1Service:
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=client.V1ObjectMeta(name=service.name, labels={"app": service.selector}),
            spec=client.V1ServiceSpec(
                type=SERVICE_TYPES[service.exposure],
                selector={"app": service.selector},
                ports=[client.V1ServicePort(port=service.port, target_port=service.target_port)],
            ),
        )

    # ClusterClient

    def apply(self, spec: DeploymentSpec) -> ApplyOutcome:
        body = self._deployment_body(spec)

        try:
            with _translate_errors("read deployment", spec.name):
                existing = self.apps_v1.read_namespaced_deployment(
                    name=spec.name,
                    namespace=self.namespace
                )
        except WorkloadNotFound:
            with _translate_errors("create deployment", spec.name):
                self.apps_v1.create_namespaced_deployment(namespace=self.namespace, body=body)
            logger.info(f"✅ deployment/{spec.name} created ({spec.image})")
            return ApplyOutcome.CREATED

        annotations = existing.metadata.annotations or {}
        if annotations.get(FINGERPRINT_ANNOTATION) == spec.fingerprint():
            logger.info(f"deployment/{spec.name} unchanged")
            return ApplyOutcome.UNCHANGED

        with _translate_errors("replace deployment", spec.name):
            self.apps_v1.replace_namespaced_deployment(
                name=spec.name,
                namespace=self.namespace,
                body=body
            )
        logger.info(f"✅ deployment/{spec.name} configured ({spec.image})")
        return ApplyOutcome.CONFIGURED

    def apply_service(self, service: ServiceSpec) -> ApplyOutcome:
        body = self._service_body(service)

        try:
            with _translate_errors("read service", service.name):
                existing = self.v1.read_namespaced_service(name=service.name, namespace=self.namespace)
        except WorkloadNotFound:
            with _translate_errors("create service", service.name):
                self.v1.create_namespaced_service(namespace=self.namespace, body=body)
            logger.info(f"✅ service/{service.name} created")
            return ApplyOutcome.CREATED

        if self._service_matches(existing, service):
            return ApplyOutcome.UNCHANGED

        with _translate_errors("patch service", service.name):
            self.v1.patch_namespaced_service(name=service.name, namespace=self.namespace, body=body)
        logger.info(f"✅ service/{service.name} configured")
        return ApplyOutcome.CONFIGURED

    @staticmethod
    def _service_matches(existing, service: ServiceSpec) -> bool:
        spec = existing.spec
        ports = [(port.port, port.target_port) for port in (spec.ports or [])]
        return (spec.type == SERVICE_TYPES[service.exposure]
                and (spec.selector or {}) == {"app": service.selector}
                and ports == [(service.port, service.target_port)])

    def get_status(self, workload: str) -> WorkloadStatus:
        with _translate_errors("read deployment", workload):
            deployment = self.apps_v1.read_namespaced_deployment(
                name=workload,
                namespace=self.namespace
            )

        status = deployment.status
        desired = deployment.spec.replicas or 0
        observed = (status.observed_generation or 0) >= (deployment.metadata.generation or 0)
        updated = status.updated_replicas or 0
        ready = min(updated, status.ready_replicas or 0) if observed else 0
        if (status.replicas or 0) > desired:
            # old replicas are still terminating
            ready = min(ready, max(desired - 1, 0))

        condition, message = self._condition(workload, status.conditions or [])
        if condition is None:
            condition = WorkloadCondition.AVAILABLE if ready == desired else WorkloadCondition.PROGRESSING

        containers = deployment.spec.template.spec.containers or []
        annotations = deployment.metadata.annotations or {}
        return WorkloadStatus(
            workload=workload,
            desired_replicas=desired,
            ready_replicas=ready,
            condition=condition,
            image=containers[0].image if containers else None,
            fingerprint=annotations.get(FINGERPRINT_ANNOTATION),
            message=message,
        )

    def _condition(self, workload: str, conditions: List) -> tuple:
        """Detect terminal failure from deployment conditions or pod states."""
        for item in conditions:
            if item.type == "Progressing" and item.reason == "ProgressDeadlineExceeded":
                return WorkloadCondition.FAILED, item.message
            if item.type == "ReplicaFailure" and item.status == "True":
                return WorkloadCondition.FAILED, item.message

        reasons = self._pod_waiting_reasons(workload)
        if reasons and all(reason in FATAL_WAITING_REASONS for reason in reasons.values()):
            detail = ", ".join(f"{pod}: {reason}" for pod, reason in sorted(reasons.items()))
            return WorkloadCondition.FAILED, f"all replicas failing ({detail})"
        return None, None

    def _pod_waiting_reasons(self, workload: str) -> Dict[str, Optional[str]]:
        """Waiting reason of the first non-running container of each pod."""
        with _translate_errors("list pods", workload):
            pods = self.v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"app={workload}"
            )

        reasons: Dict[str, Optional[str]] = {}
        for pod in pods.items:
            reason = None
            for container_status in (pod.status.container_statuses or []):
                waiting = container_status.state.waiting if container_status.state else None
                if waiting is not None:
                    reason = waiting.reason
                    break
            reasons[pod.metadata.name] = reason
        return reasons

    def get_service(self, name: str) -> Optional[ServiceStatus]:
        try:
            with _translate_errors("read service", name):
                service = self.v1.read_namespaced_service(name=name, namespace=self.namespace)
        except WorkloadNotFound:
            return None

        spec = service.spec
        port = (spec.ports or [None])[0]
        address = spec.cluster_ip
        ingress = (service.status.load_balancer.ingress
                   if service.status and service.status.load_balancer else None)
        if ingress:
            address = ingress[0].hostname or ingress[0].ip

        return ServiceStatus(
            name=name,
            selector=(spec.selector or {}).get("app", ""),
            port=port.port if port else 0,
            target_port=port.target_port if port else 0,
            exposure=Exposure.EXTERNAL.value if spec.type == "LoadBalancer" else Exposure.INTERNAL.value,
            address=address,
        )

    def delete(self, workload: str) -> None:
        with _translate_errors("delete deployment", workload):
            self.apps_v1.delete_namespaced_deployment(name=workload, namespace=self.namespace)
        logger.info(f"deployment/{workload} deleted")
