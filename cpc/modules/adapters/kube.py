"""Control-plane adapter: Kubernetes API client plus kubectl for apply/wait/drain."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from cpc.errors import FatalError, TransientError, WaitTimeoutError
from cpc.modules.adapters.base import Adapter, CommandResult, Runner, run_command
from cpc.modules.retry import RetryPolicy
from cpc.modules.ssh import RemoteShell
from cpc.utils.kube import load_kubeconfig

logger = logging.getLogger("cpc.adapters.kube")

CONTROL_PLANE_MARKER = "/etc/kubernetes/admin.conf"
JOIN_MARKER = "/etc/kubernetes/kubelet.conf"
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
SERVER_SIDE_APPLY_MIN = (1, 18)


@dataclass
class ResourceSelector:
    kind: str
    namespace: Optional[str] = None
    label_selector: Optional[str] = None
    field_selector: Optional[str] = None


@dataclass
class ManifestApply:
    path: Path
    namespace: Optional[str] = None
    server_side: bool = True


def image_tag(image: str) -> Optional[str]:
    """``quay.io/calico/node:v3.28.0@sha256:...`` -> ``v3.28.0``."""
    if not image:
        return None
    image = image.split("@", 1)[0]
    last = image.rsplit("/", 1)[-1]
    if ":" not in last:
        return None
    return last.rsplit(":", 1)[1]


def _condition(obj: Dict[str, Any], cond_type: str) -> Optional[str]:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond.get("status")
    return None


def pod_ready(pod: Dict[str, Any]) -> bool:
    return (pod.get("status") or {}).get("phase") == "Running" and _condition(pod, "Ready") == "True"


def node_ready(node: Dict[str, Any]) -> bool:
    return _condition(node, "Ready") == "True"


def is_control_plane_node(node: Dict[str, Any]) -> bool:
    labels = (node.get("metadata") or {}).get("labels") or {}
    return CONTROL_PLANE_LABEL in labels or "node-role.kubernetes.io/master" in labels


class ControlPlaneAdapter(Adapter):
    """Talks to the cluster API using the workspace's kubeconfig context."""

    name = "control-plane"

    def __init__(
        self,
        kubeconfig: Path,
        context_name: Optional[str] = None,
        shell: Optional[RemoteShell] = None,
        retry: Optional[RetryPolicy] = None,
        runner: Runner = run_command,
        kubectl: str = "kubectl",
        api_client: Optional[client.ApiClient] = None,
    ):
        super().__init__(retry=retry)
        self.kubeconfig = Path(kubeconfig).expanduser()
        self.context_name = context_name
        self.shell = shell
        self.runner = runner
        self.kubectl_binary = kubectl
        self._api_client = api_client

    # -- client plumbing ------------------------------------------------

    @property
    def api_client(self) -> Optional[client.ApiClient]:
        if self._api_client is None:
            if not self.kubeconfig.exists():
                return None
            try:
                self._api_client = load_kubeconfig(str(self.kubeconfig), context=self.context_name)
            except ConfigException as e:
                logger.debug(f"Kubeconfig {self.kubeconfig} has no usable context {self.context_name}: {e}")
                return None
        return self._api_client

    def reset_client(self) -> None:
        """Drop the cached client so refreshed credentials are picked up."""
        self._api_client = None

    def _require_client(self) -> client.ApiClient:
        api = self.api_client
        if api is None:
            raise FatalError(
                f"No credentials for context '{self.context_name}' in {self.kubeconfig}",
                hint="Run 'cpc get-credentials'",
            )
        return api

    def _call(self, description: str, fn: Callable[..., Any], *args, tolerate: Tuple[int, ...] = (), **kwargs) -> Any:
        """Invoke an API method, classifying failures. Statuses in ``tolerate`` return None."""
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status in tolerate:
                logger.debug(f"{description}: tolerated API status {e.status}")
                return None
            if e.status in (429, 500, 502, 503, 504):
                raise TransientError(f"{description}: API returned {e.status}", output=str(e.body)) from e
            raise FatalError(f"{description}: API returned {e.status} {e.reason}", output=str(e.body)) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(f"{description}: API unreachable ({e})") from e

    def kubectl(self, args: List[str], **kwargs) -> CommandResult:
        cmd = [self.kubectl_binary, "--kubeconfig", str(self.kubeconfig)]
        if self.context_name:
            cmd += ["--context", self.context_name]
        return self.runner(cmd + args, **kwargs)

    # -- query ----------------------------------------------------------

    def query(self, selector: ResourceSelector) -> List[Dict[str, Any]]:
        """List objects of ``selector.kind`` as plain dicts; [] if not deployed."""
        api = self.api_client
        if api is None:
            return []
        core = client.CoreV1Api(api)
        apps = client.AppsV1Api(api)
        opts = {}
        if selector.label_selector:
            opts["label_selector"] = selector.label_selector
        if selector.field_selector:
            opts["field_selector"] = selector.field_selector

        listers = {
            "pods": lambda: core.list_namespaced_pod(selector.namespace, **opts),
            "deployments": lambda: apps.list_namespaced_deployment(selector.namespace, **opts),
            "daemonsets": lambda: apps.list_namespaced_daemon_set(selector.namespace, **opts),
            "nodes": lambda: core.list_node(**opts),
            "csr": lambda: client.CertificatesV1Api(api).list_certificate_signing_request(**opts),
        }
        if selector.kind not in listers:
            raise ValueError(f"Unsupported resource kind: {selector.kind}")
        result = self._call(f"list {selector.kind}", listers[selector.kind], tolerate=(404,))
        if result is None:
            return []
        return [api.sanitize_for_serialization(item) for item in result.items]

    def image_tag(self, selector: ResourceSelector) -> Optional[str]:
        """Image tag of the first container of the first matching pod/deployment."""
        items = self.query(selector)
        if not items:
            return None
        spec = items[0].get("spec") or {}
        if selector.kind in ("deployments", "daemonsets"):
            spec = ((spec.get("template") or {}).get("spec")) or {}
        containers = spec.get("containers") or []
        return image_tag(containers[0].get("image", "")) if containers else None

    def all_ready(self, selector: ResourceSelector) -> bool:
        items = self.query(selector)
        if not items:
            return False
        if selector.kind == "pods":
            return all(pod_ready(p) for p in items)
        if selector.kind == "nodes":
            return all(node_ready(n) for n in items)
        if selector.kind == "deployments":
            return all(
                (d.get("status") or {}).get("readyReplicas", 0) >= (d.get("spec") or {}).get("replicas", 1)
                for d in items
            )
        if selector.kind == "daemonsets":
            return all(
                (d.get("status") or {}).get("numberReady", 0) >= (d.get("status") or {}).get("desiredNumberScheduled", 1)
                for d in items
            )
        return True

    def nodes(self) -> List[Dict[str, Any]]:
        return self.query(ResourceSelector(kind="nodes"))

    def server_version(self) -> Tuple[int, int]:
        info = self._call("get server version", client.VersionApi(self._require_client()).get_code)
        major = int("".join(ch for ch in info.major if ch.isdigit()) or 0)
        minor = int("".join(ch for ch in info.minor if ch.isdigit()) or 0)
        return major, minor

    def supports_server_side_apply(self) -> bool:
        try:
            return self.server_version() >= SERVER_SIDE_APPLY_MIN
        except (TransientError, FatalError) as e:
            logger.warning(f"⚠️ Could not read server version ({e}); using client-side apply")
            return False

    # -- certificate signing requests ----------------------------------

    def pending_csrs(self, pattern: str) -> List[str]:
        """Names of CSRs with no decision whose name or signer contains ``pattern``."""
        pending = []
        for csr in self.query(ResourceSelector(kind="csr")):
            name = (csr.get("metadata") or {}).get("name", "")
            signer = (csr.get("spec") or {}).get("signerName", "")
            if (csr.get("status") or {}).get("conditions"):
                continue
            if pattern in name or pattern in signer:
                pending.append(name)
        return pending

    def approve_csr(self, name: str) -> None:
        certs = client.CertificatesV1Api(self._require_client())
        body = self._call(f"read csr {name}", certs.read_certificate_signing_request, name)
        conditions = list(body.status.conditions or [])
        if any(c.type == "Approved" for c in conditions):
            logger.debug(f"CSR {name} already approved")
            return
        conditions.append(
            client.V1CertificateSigningRequestCondition(
                type="Approved",
                status="True",
                reason="CpcApprove",
                message="Approved by cpc",
                last_update_time=datetime.now(timezone.utc),
            )
        )
        body.status.conditions = conditions
        self._call(f"approve csr {name}", certs.replace_certificate_signing_request_approval, name, body)
        logger.info(f"✅ Approved CSR {name}")

    # -- custom resource definitions -----------------------------------

    def crd_annotation_size(self, crd_name: str, annotation: str) -> int:
        ext = client.ApiextensionsV1Api(self._require_client())
        crd = self._call(f"read crd {crd_name}", ext.read_custom_resource_definition, crd_name, tolerate=(404,))
        if crd is None:
            return 0
        value = (crd.metadata.annotations or {}).get(annotation) or ""
        return len(value.encode("utf-8"))

    def strip_annotation(self, crd_name: str, annotation: str) -> None:
        ext = client.ApiextensionsV1Api(self._require_client())
        patch = {"metadata": {"annotations": {annotation: None}}}
        self._call(f"patch crd {crd_name}", ext.patch_custom_resource_definition, crd_name, patch)

    # -- mutation -------------------------------------------------------

    def apply(self, delta: ManifestApply) -> CommandResult:
        args = ["apply"]
        if delta.server_side:
            args += ["--server-side=true", "--force-conflicts"]
        if delta.namespace:
            args += ["-n", delta.namespace]
        args += ["-f", str(delta.path)]
        return self.retry.call(self.kubectl, args, description=f"kubectl apply {Path(delta.path).name}")

    def wait_for_condition(
        self,
        resource: str,
        condition: str,
        timeout: int = 300,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> bool:
        """``kubectl wait --for=condition=<condition>``; raises WaitTimeoutError on timeout."""
        args = ["wait", f"--for=condition={condition}", resource, f"--timeout={timeout}s"]
        if label_selector:
            args += ["-l", label_selector]
        elif "/" not in resource:
            args.append("--all")
        if namespace:
            args += ["-n", namespace]
        try:
            self.kubectl(args, timeout=timeout + 30)
        except TransientError as e:
            raise WaitTimeoutError(f"{resource} not {condition} after {timeout}s", timeout=timeout) from e
        return True

    def patch_deployment_image(self, name: str, namespace: str, container: str, image: str) -> None:
        apps = client.AppsV1Api(self._require_client())
        body = {"spec": {"template": {"spec": {"containers": [{"name": container, "image": image}]}}}}
        self._call(f"patch deployment {name}", apps.patch_namespaced_deployment, name, namespace, body)

    def drain_node(self, name: str, timeout: int = 300) -> CommandResult:
        return self.kubectl(
            ["drain", name, "--ignore-daemonsets", "--delete-emptydir-data", "--force", f"--timeout={timeout}s"],
            already_done=("not found",),
            timeout=timeout + 30,
        )

    def uncordon_node(self, name: str) -> CommandResult:
        return self.kubectl(["uncordon", name])

    def delete_node(self, name: str) -> None:
        core = client.CoreV1Api(self._require_client())
        if self._call(f"delete node {name}", core.delete_node, name, tolerate=(404,)) is None:
            logger.info(f"Node {name} already absent from the cluster")

    def create_smoke_workload(self, name: str, namespace: str, replicas: int, image: str) -> None:
        apps = client.AppsV1Api(self._require_client())
        labels = {"app": name}
        affinity = client.V1Affinity(
            pod_anti_affinity=client.V1PodAntiAffinity(
                preferred_during_scheduling_ignored_during_execution=[
                    client.V1WeightedPodAffinityTerm(
                        weight=100,
                        pod_affinity_term=client.V1PodAffinityTerm(
                            label_selector=client.V1LabelSelector(match_labels=labels),
                            topology_key="kubernetes.io/hostname",
                        ),
                    )
                ]
            )
        )
        body = client.V1Deployment(
            metadata=client.V1ObjectMeta(name=name, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=replicas,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        affinity=affinity,
                        containers=[client.V1Container(name=name, image=image)],
                    ),
                ),
            ),
        )
        if self._call(f"create deployment {name}", apps.create_namespaced_deployment, namespace, body, tolerate=(409,)) is None:
            logger.info(f"Deployment {name} already exists; reusing it")

    def delete_deployment(self, name: str, namespace: str) -> None:
        apps = client.AppsV1Api(self._require_client())
        self._call(f"delete deployment {name}", apps.delete_namespaced_deployment, name, namespace, tolerate=(404,))

    # -- markers on the hosts themselves --------------------------------

    def has_control_plane_marker(self, address: str) -> bool:
        return self._marker(address, CONTROL_PLANE_MARKER)

    def has_join_marker(self, address: str) -> bool:
        return self._marker(address, JOIN_MARKER)

    def _marker(self, address: str, path: str) -> bool:
        if self.shell is None:
            raise FatalError("No SSH shell configured for marker probes")
        return self.shell.file_exists(address, path)
