"""Addon upgrades: resolve target, diff against live, apply only when different."""
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from cpc.errors import CpcError, FatalError, TransientError, ValidationError, WaitTimeoutError
from cpc.modules.adapters.kube import ControlPlaneAdapter, ManifestApply, ResourceSelector
from cpc.modules.models import AddonOutcome, AddonResult, AddonSpec, WorkspaceContext
from cpc.modules.recovery import RecoveryLog
from cpc.modules.retry import RetryPolicy, retry

logger = logging.getLogger("cpc.addons")

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


@dataclass
class AddonDefinition:
    name: str
    default_version: str
    namespace: str
    version_source: ResourceSelector
    ready: ResourceSelector
    manifests: List[str] = field(default_factory=list)
    crds: List[str] = field(default_factory=list)
    # (deployment, container, image repository) for addons upgraded by image swap
    image_patch: Optional[tuple] = None

    @property
    def pin_key(self) -> str:
        return self.name.upper().replace("-", "_") + "_VERSION"

    def manifest_urls(self, version: str) -> List[str]:
        return [url.format(version=version) for url in self.manifests]


def _pods(ns: str, labels: str) -> ResourceSelector:
    return ResourceSelector(kind="pods", namespace=ns, label_selector=labels)


def _deployment(ns: str, name: str) -> ResourceSelector:
    return ResourceSelector(kind="deployments", namespace=ns, field_selector=f"metadata.name={name}")


ADDONS: Dict[str, AddonDefinition] = {
    a.name: a
    for a in [
        AddonDefinition(
            name="calico",
            default_version="v3.28.0",
            namespace="calico-system",
            version_source=_pods("calico-system", "k8s-app=calico-node"),
            ready=_pods("calico-system", "k8s-app=calico-node"),
            manifests=[
                "https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests/tigera-operator.yaml",
                "https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests/custom-resources.yaml",
            ],
            crds=[
                "installations.operator.tigera.io",
                "tigerastatuses.operator.tigera.io",
                "apiservers.operator.tigera.io",
                "imagesets.operator.tigera.io",
            ],
        ),
        AddonDefinition(
            name="metallb",
            default_version="v0.14.8",
            namespace="metallb-system",
            version_source=_deployment("metallb-system", "controller"),
            ready=_pods("metallb-system", "app=metallb"),
            manifests=["https://raw.githubusercontent.com/metallb/metallb/{version}/config/manifests/metallb-native.yaml"],
        ),
        AddonDefinition(
            name="metrics-server",
            default_version="v0.7.2",
            namespace="kube-system",
            version_source=_deployment("kube-system", "metrics-server"),
            ready=_pods("kube-system", "k8s-app=metrics-server"),
            manifests=["https://github.com/kubernetes-sigs/metrics-server/releases/download/{version}/components.yaml"],
        ),
        AddonDefinition(
            name="coredns",
            default_version="v1.11.3",
            namespace="kube-system",
            version_source=_deployment("kube-system", "coredns"),
            ready=_pods("kube-system", "k8s-app=kube-dns"),
            image_patch=("coredns", "coredns", "registry.k8s.io/coredns/coredns"),
        ),
        AddonDefinition(
            name="cert-manager",
            default_version="v1.16.2",
            namespace="cert-manager",
            version_source=_deployment("cert-manager", "cert-manager"),
            ready=_pods("cert-manager", "app.kubernetes.io/instance=cert-manager"),
            manifests=["https://github.com/cert-manager/cert-manager/releases/download/{version}/cert-manager.yaml"],
        ),
        AddonDefinition(
            name="kubelet-serving-cert-approver",
            default_version="v0.9.2",
            namespace="kubelet-serving-cert-approver",
            version_source=_deployment("kubelet-serving-cert-approver", "kubelet-serving-cert-approver"),
            ready=_pods("kubelet-serving-cert-approver", "app.kubernetes.io/name=kubelet-serving-cert-approver"),
            manifests=[
                "https://raw.githubusercontent.com/alex1989hu/kubelet-serving-cert-approver/{version}/deploy/standalone-install.yaml"
            ],
        ),
        AddonDefinition(
            name="argocd",
            default_version="v2.13.2",
            namespace="argocd",
            version_source=_deployment("argocd", "argocd-server"),
            ready=_pods("argocd", "app.kubernetes.io/name=argocd-server"),
            manifests=["https://raw.githubusercontent.com/argoproj/argo-cd/{version}/manifests/install.yaml"],
        ),
        AddonDefinition(
            name="ingress-nginx",
            default_version="v1.12.0",
            namespace="ingress-nginx",
            version_source=_deployment("ingress-nginx", "ingress-nginx-controller"),
            ready=_pods("ingress-nginx", "app.kubernetes.io/component=controller"),
            manifests=[
                "https://raw.githubusercontent.com/kubernetes/ingress-nginx/controller-{version}/deploy/static/provider/baremetal/deploy.yaml"
            ],
        ),
    ]
}

ALL = "all"
NETWORKING_ADDON = "calico"


@retry(RetryPolicy(max_attempts=3, delay=2.0))
def fetch_manifest(url: str, dest_dir: Path, timeout: float = 60) -> Path:
    """Download ``url`` into ``dest_dir``."""
    logger.info(f"📥 Fetching {url}")
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.HTTPError as e:
        raise FatalError(f"Could not fetch manifest {url}: {e}", hint="Check that the requested version exists") from e
    except requests.RequestException as e:
        raise TransientError(f"Could not fetch manifest {url}: {e}") from e
    path = Path(dest_dir) / url.rsplit("/", 1)[-1]
    path.write_text(resp.text)
    return path


class AddonUpgradeOrchestrator:
    """Upgrades one addon or all of them, isolating failures per addon."""

    def __init__(
        self,
        context: WorkspaceContext,
        control_plane: ControlPlaneAdapter,
        recovery: RecoveryLog,
        ready_timeout: int = 300,
        annotation_threshold: int = 200000,
        fetch: Callable[[str, Path], Path] = fetch_manifest,
    ):
        self.context = context
        self.control_plane = control_plane
        self.recovery = recovery
        self.ready_timeout = ready_timeout
        self.annotation_threshold = annotation_threshold
        self.fetch = fetch

    def select(self, addon: str, version: Optional[str] = None) -> List[AddonSpec]:
        if addon == ALL:
            if version:
                raise ValidationError("--version cannot be combined with 'all'")
            return [AddonSpec(name=name) for name in ADDONS]
        if addon not in ADDONS:
            raise ValidationError(
                f"Unknown addon '{addon}'",
                hint=f"Choose one of: {', '.join(list(ADDONS) + [ALL])}",
            )
        return [AddonSpec(name=addon, requested_version=version)]

    def resolve_target(self, spec: AddonSpec) -> str:
        definition = ADDONS[spec.name]
        return spec.requested_version or self.context.version(definition.pin_key) or definition.default_version

    def live_version(self, spec: AddonSpec) -> Optional[str]:
        return self.control_plane.image_tag(ADDONS[spec.name].version_source)

    def upgrade(self, addon: str = ALL, version: Optional[str] = None) -> List[AddonResult]:
        results = []
        for spec in self.select(addon, version):
            try:
                results.append(self.upgrade_one(spec))
            except CpcError as e:
                logger.error(f"❌ {spec.name}: {e}")
                results.append(
                    AddonResult(
                        name=spec.name,
                        outcome=AddonOutcome.FAILED,
                        before=spec.live_version,
                        target=spec.target_version,
                        message=str(e),
                    )
                )
        return results

    def upgrade_one(self, spec: AddonSpec) -> AddonResult:
        definition = ADDONS[spec.name]
        spec.target_version = self.resolve_target(spec)
        spec.live_version = self.live_version(spec)
        logger.info(f"🔍 {spec.name}: live={spec.live_version or 'not installed'} target={spec.target_version}")

        if spec.live_version == spec.target_version and self.control_plane.all_ready(definition.ready):
            logger.info(f"✅ {spec.name} already at {spec.target_version}")
            return AddonResult(
                name=spec.name,
                outcome=AddonOutcome.CURRENT,
                before=spec.live_version,
                after=spec.live_version,
                target=spec.target_version,
            )

        result = AddonResult(name=spec.name, outcome=AddonOutcome.UPGRADED, before=spec.live_version, target=spec.target_version)
        if definition.crds:
            self._strip_oversized_annotations(definition)

        ok = self.recovery.execute_with_recovery(
            lambda: self._apply(definition, spec.target_version),
            f"apply_{spec.name}",
            f"Applying {spec.name} {spec.target_version} failed; try 'cpc upgrade-addons --addon {spec.name}' again",
        )
        if not ok:
            result.outcome = AddonOutcome.FAILED
            result.message = "apply failed"
            return result

        try:
            self.control_plane.wait_until(
                lambda: self.control_plane.all_ready(definition.ready),
                timeout=self.ready_timeout,
                description=f"{spec.name} ready",
            )
        except WaitTimeoutError as e:
            logger.warning(f"⚠️ {spec.name}: {e}")
            result.warnings.append(str(e))

        result.after = self.live_version(spec)
        if result.after != spec.target_version:
            result.warnings.append(f"live version is {result.after}, expected {spec.target_version}")
        logger.info(f"✅ {spec.name}: {result.before or 'not installed'} -> {result.after}")
        return result

    def _strip_oversized_annotations(self, definition: AddonDefinition) -> None:
        for crd in definition.crds:
            size = self.control_plane.crd_annotation_size(crd, LAST_APPLIED_ANNOTATION)
            if size > self.annotation_threshold:
                logger.warning(f"⚠️ {crd}: {LAST_APPLIED_ANNOTATION} is {size} bytes; removing it before apply")
                self.control_plane.strip_annotation(crd, LAST_APPLIED_ANNOTATION)
                self.recovery.checkpoint(f"stripped_{crd}", f"{size} bytes")

    def _apply(self, definition: AddonDefinition, version: str) -> None:
        if definition.image_patch:
            deployment, container, repository = definition.image_patch
            self.control_plane.patch_deployment_image(
                deployment, definition.namespace, container, f"{repository}:{version}"
            )
            return
        server_side = self.control_plane.supports_server_side_apply()
        with tempfile.TemporaryDirectory(prefix=f"cpc_{definition.name}_") as tmp:
            for url in definition.manifest_urls(version):
                path = self.fetch(url, Path(tmp))
                self.control_plane.apply(ManifestApply(path=path, server_side=server_side))

    def install_networking(self) -> None:
        """Install the network plugin unless its pods already exist."""
        definition = ADDONS[NETWORKING_ADDON]
        running = self.control_plane.query(definition.ready)
        if running:
            logger.info(f"{NETWORKING_ADDON} already running ({len(running)} pods); skipping")
            return
        version = self.resolve_target(AddonSpec(name=NETWORKING_ADDON))
        self._apply(definition, version)
