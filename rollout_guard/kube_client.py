"""
Kubernetes client for upgrade operations.
"""
import logging
import subprocess
from typing import List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError as TransportError

from rollout_guard.errors import ConnectivityError, MutationFailedError, NotFoundError
from rollout_guard.kube_types import Container, Deployment, Pod, RolloutOutcome, RolloutStrategy

logger = logging.getLogger(__name__)

# kubectl rollout status messages that mean the platform gave up waiting
_TIMEOUT_MARKERS = ("timed out waiting", "exceeded its progress deadline")


class KubeClient:
    """Kubernetes client for upgrade operations.

    Reads and patches go through the Python client. The rollout verbs the
    client has no equivalent for (``rollout status``, ``rollout undo``) and the
    native YAML export are delegated to ``kubectl``.
    """

    def __init__(
        self,
        namespace: str,
        in_cluster: bool = True,
        context: str | None = None,
        kubectl: str = "kubectl",
        request_timeout_s: int = 30,
    ):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Target Kubernetes namespace
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
            kubectl: kubectl executable used for rollout verbs
            request_timeout_s: Timeout for single API and kubectl calls
        """
        self.namespace = namespace
        self.in_cluster = in_cluster
        self.context = context
        self.kubectl = kubectl
        self.request_timeout_s = request_timeout_s

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.v1 = client.CoreV1Api()
            self.apps_v1 = client.AppsV1Api()
            logger.info(f"✅ Kubernetes client initialized for namespace: {namespace}")

        except ConfigException as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise ConnectivityError(f"Cannot load Kubernetes configuration: {e}", namespace=namespace) from e

    def check_connectivity(self) -> None:
        """Verify the API server answers, raising ConnectivityError otherwise."""
        try:
            version = client.VersionApi().get_code()
            logger.info(f"Connected to Kubernetes {version.git_version}")
        except (ApiException, TransportError) as e:
            logger.error(f"❌ Cannot connect to Kubernetes cluster: {e}")
            raise ConnectivityError(
                "Cannot connect to Kubernetes cluster. Please verify your configuration.",
                namespace=self.namespace,
            ) from e

    def list_deployments(self, label_selector: str) -> List[Deployment]:
        """
        Get deployments matching a label selector.

        Args:
            label_selector: Label selector for filtering

        Returns:
            List of Deployment objects
        """
        try:
            deployments = self.apps_v1.list_namespaced_deployment(
                namespace=self.namespace,
                label_selector=label_selector
            )
        except (ApiException, TransportError) as e:
            raise self._read_error(e, "list deployments") from e

        deployment_list = [self._to_deployment(obj) for obj in deployments.items]
        logger.info(f"Retrieved {len(deployment_list)} deployments from namespace {self.namespace}")
        return deployment_list

    def get_containers(self, deployment: str) -> List[Container]:
        """Get the containers of a deployment's pod template, in spec order."""
        deployment_obj = self._read_deployment(deployment)
        return [
            Container(name=c.name, image=c.image or "")
            for c in deployment_obj.spec.template.spec.containers
        ]

    def patch_strategy(self, deployment: str, max_unavailable: int, max_surge: int) -> None:
        """
        Switch a deployment to a rolling update with the given parameters.

        Args:
            deployment: Deployment name
            max_unavailable: Pods that may be unavailable during the rollout
            max_surge: Pods that may be created above the desired count
        """
        body = {
            "spec": {
                "strategy": {
                    "type": "RollingUpdate",
                    "rollingUpdate": {"maxUnavailable": max_unavailable, "maxSurge": max_surge},
                }
            }
        }
        try:
            self.apps_v1.patch_namespaced_deployment(
                name=deployment,
                namespace=self.namespace,
                body=body
            )
        except (ApiException, TransportError) as e:
            logger.error(f"Failed to patch strategy of {deployment}: {e}")
            raise MutationFailedError(
                f"Strategy patch rejected: {self._reason(e)}",
                deployment=deployment,
                namespace=self.namespace,
            ) from e
        logger.info(f"✅ Patched {deployment} strategy: maxUnavailable={max_unavailable}, maxSurge={max_surge}")

    def get_manifest(self, deployment: str) -> bytes:
        """Return the deployment manifest in the platform's native YAML."""
        result = self._run_kubectl(["get", "deployment", deployment, "-o", "yaml"])
        if result.returncode != 0:
            logger.error(f"❌ Failed to export {deployment}: {result.stderr}")
            raise ConnectivityError(
                f"kubectl get failed: {result.stderr.strip()}",
                deployment=deployment,
                namespace=self.namespace,
            )
        return result.stdout.encode("utf-8")

    def set_image(self, deployment: str, container: str, image: str) -> None:
        """
        Deploy new image to deployment.

        The read object is sent back with its resourceVersion, so a concurrent
        writer makes the API server answer 409 instead of being overwritten.

        Args:
            deployment: Deployment name
            container: Container name
            image: New image to deploy
        """
        deployment_obj = self._read_deployment(deployment)

        for container_spec in deployment_obj.spec.template.spec.containers:
            if container_spec.name == container:
                container_spec.image = image
                break
        else:
            raise NotFoundError(
                f"Container {container} not found",
                deployment=deployment,
                namespace=self.namespace,
                image=image,
            )

        try:
            self.apps_v1.patch_namespaced_deployment(
                name=deployment,
                namespace=self.namespace,
                body=deployment_obj
            )
        except ApiException as e:
            logger.error(f"Failed to deploy image {image} to {deployment}: {e}")
            raise MutationFailedError(
                f"Image update rejected: {self._reason(e)}",
                deployment=deployment,
                namespace=self.namespace,
                image=image,
            ) from e
        except TransportError as e:
            # the request may have been applied before the connection dropped
            logger.error(f"Image update of {deployment} lost in transit, it may have been applied: {e}")
            raise MutationFailedError(
                f"Image update outcome unknown: {self._reason(e)}",
                uncertain=True,
                deployment=deployment,
                namespace=self.namespace,
                image=image,
            ) from e

        logger.info(f"✅ Deployed image {image} to {deployment}/{container}")

    def watch_rollout_status(self, deployment: str, timeout_s: int) -> RolloutOutcome:
        """
        Block until the platform reports the rollout converged or gave up.

        Args:
            deployment: Deployment name
            timeout_s: Timeout in seconds handed to the platform

        Returns:
            RolloutOutcome of the attempt
        """
        try:
            result = self._run_kubectl(
                ["rollout", "status", f"deployment/{deployment}", f"--timeout={timeout_s}s"],
                timeout=timeout_s + self.request_timeout_s,
                translate_timeout=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"⚠️ Rollout status for {deployment} did not return within {timeout_s}s")
            return RolloutOutcome.TIMED_OUT

        if result.returncode == 0:
            return RolloutOutcome.SUCCEEDED

        message = result.stderr.strip()
        logger.error(f"❌ Rollout of {deployment} did not converge: {message}")
        if any(marker in message for marker in _TIMEOUT_MARKERS):
            return RolloutOutcome.TIMED_OUT
        return RolloutOutcome.FAILED

    def list_pods(self, label_selector: str | None = None) -> List[Pod]:
        """
        Get pods in the namespace.

        Args:
            label_selector: Optional label selector for filtering

        Returns:
            List of Pod objects
        """
        try:
            pods = self.v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=label_selector
            )
        except (ApiException, TransportError) as e:
            logger.error(f"Failed to get pods: {e}")
            raise self._read_error(e, "list pods") from e

        pod_list = []
        for pod in pods.items:
            pod_list.append(Pod(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                status=pod.status.phase,
                labels=pod.metadata.labels or {},
                creation_timestamp=pod.metadata.creation_timestamp
            ))

        logger.info(f"Retrieved {len(pod_list)} pods from namespace {self.namespace}")
        return pod_list

    def exec_in_pod(self, pod: str, command: List[str]) -> Tuple[int, str]:
        """
        Run a command inside a pod's first container.

        Returns:
            Tuple of (exit code, combined output). The exit code is -1 when
            the command did not finish within the request timeout.
        """
        try:
            resp = stream(
                self.v1.connect_get_namespaced_pod_exec,
                pod,
                self.namespace,
                command=command,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except (ApiException, TransportError) as e:
            raise self._read_error(e, f"exec in pod {pod}") from e

        try:
            resp.run_forever(timeout=self.request_timeout_s)
            output = resp.read_all()
            returncode = resp.returncode
        except Exception as e:
            raise ConnectivityError(f"Exec in pod {pod} failed: {e!r}", namespace=self.namespace) from e
        finally:
            resp.close()

        return (-1 if returncode is None else returncode), output

    def get_pod_readiness(self, pod: str) -> bool:
        """True only when the pod's Ready condition is exactly "True"."""
        try:
            pod_obj = self.v1.read_namespaced_pod(name=pod, namespace=self.namespace)
        except (ApiException, TransportError) as e:
            raise self._read_error(e, f"read pod {pod}") from e

        for condition in pod_obj.status.conditions or []:
            if condition.type == "Ready":
                return condition.status == "True"
        return False

    def rollout_undo(self, deployment: str) -> None:
        """Revert a deployment to the revision the platform recorded before."""
        try:
            result = self._run_kubectl(["rollout", "undo", f"deployment/{deployment}"])
        except ConnectivityError as e:
            raise MutationFailedError(
                f"Rollout undo did not complete: {e.message}",
                deployment=deployment,
                namespace=self.namespace,
            ) from e
        if result.returncode != 0:
            logger.error(f"❌ Rollout undo of {deployment} failed: {result.stderr}")
            raise MutationFailedError(
                f"Rollout undo rejected: {result.stderr.strip()}",
                deployment=deployment,
                namespace=self.namespace,
            )
        logger.info(f"✅ Rolled back {deployment}: {result.stdout.strip()}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _read_deployment(self, deployment: str):
        try:
            return self.apps_v1.read_namespaced_deployment(
                name=deployment,
                namespace=self.namespace
            )
        except (ApiException, TransportError) as e:
            raise self._read_error(e, f"read deployment {deployment}", deployment) from e

    def _run_kubectl(
        self,
        args: List[str],
        timeout: Optional[int] = None,
        translate_timeout: bool = True,
    ) -> subprocess.CompletedProcess:
        command = [self.kubectl, *args, "-n", self.namespace]
        if self.context and not self.in_cluster:
            command.extend(["--context", self.context])

        timeout = timeout or self.request_timeout_s
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ConnectivityError(f"kubectl executable not found: {self.kubectl}", namespace=self.namespace) from e
        except subprocess.TimeoutExpired as e:
            if not translate_timeout:
                raise
            logger.error(f"kubectl {' '.join(args)} did not return within {timeout}s")
            raise ConnectivityError(
                f"kubectl {args[0]} timed out after {timeout}s",
                namespace=self.namespace,
            ) from e

    def _read_error(self, exc: Exception, action: str, deployment: Optional[str] = None):
        if isinstance(exc, ApiException) and exc.status == 404:
            return NotFoundError(f"Cannot {action}: not found", deployment=deployment, namespace=self.namespace)
        return ConnectivityError(
            f"Cannot {action}: {self._reason(exc)}",
            deployment=deployment,
            namespace=self.namespace,
        )

    @staticmethod
    def _reason(exc: Exception) -> str:
        if isinstance(exc, ApiException):
            return f"{exc.status} {exc.reason}"
        return str(exc)

    def _to_deployment(self, obj) -> Deployment:
        strategy = None
        rolling = obj.spec.strategy.rolling_update if obj.spec.strategy else None
        # percentages such as "25%" are left to the platform
        if rolling and isinstance(rolling.max_unavailable, int) and isinstance(rolling.max_surge, int):
            strategy = RolloutStrategy(max_unavailable=rolling.max_unavailable, max_surge=rolling.max_surge)

        return Deployment(
            name=obj.metadata.name,
            namespace=obj.metadata.namespace,
            replicas=obj.spec.replicas or 0,
            ready_replicas=(obj.status.ready_replicas if obj.status else None) or 0,
            labels=obj.metadata.labels or {},
            selector=(obj.spec.selector.match_labels if obj.spec.selector else None) or {},
            containers=[
                Container(name=c.name, image=c.image or "")
                for c in obj.spec.template.spec.containers
            ],
            strategy=strategy,
        )
