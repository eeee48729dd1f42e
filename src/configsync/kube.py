"""Cluster adapter and status store over the Kubernetes REST API."""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

import httpx

from configsync.config import OperatorConfig, parse_targets
from configsync.errors import ApplyError, ClusterUnavailable, ConfigError
from configsync.state import ApplyResult, SyncState, Target

logger = logging.getLogger(__name__)

CONFIGSYNC_GROUP_VERSION = "configsync.io/v1alpha1"
CONFIGSYNC_PLURAL = "configsyncs"

# kind -> (apiVersion, plural, namespaced)
BUILTIN_KINDS: dict[str, tuple[str, str, bool]] = {
    "Namespace": ("v1", "namespaces", False),
    "ConfigMap": ("v1", "configmaps", True),
    "Secret": ("v1", "secrets", True),
    "Service": ("v1", "services", True),
    "ServiceAccount": ("v1", "serviceaccounts", True),
    "PersistentVolumeClaim": ("v1", "persistentvolumeclaims", True),
    "PersistentVolume": ("v1", "persistentvolumes", False),
    "Pod": ("v1", "pods", True),
    "LimitRange": ("v1", "limitranges", True),
    "ResourceQuota": ("v1", "resourcequotas", True),
    "Deployment": ("apps/v1", "deployments", True),
    "StatefulSet": ("apps/v1", "statefulsets", True),
    "DaemonSet": ("apps/v1", "daemonsets", True),
    "ReplicaSet": ("apps/v1", "replicasets", True),
    "Job": ("batch/v1", "jobs", True),
    "CronJob": ("batch/v1", "cronjobs", True),
    "Ingress": ("networking.k8s.io/v1", "ingresses", True),
    "IngressClass": ("networking.k8s.io/v1", "ingressclasses", False),
    "NetworkPolicy": ("networking.k8s.io/v1", "networkpolicies", True),
    "Role": ("rbac.authorization.k8s.io/v1", "roles", True),
    "RoleBinding": ("rbac.authorization.k8s.io/v1", "rolebindings", True),
    "ClusterRole": ("rbac.authorization.k8s.io/v1", "clusterroles", False),
    "ClusterRoleBinding": ("rbac.authorization.k8s.io/v1", "clusterrolebindings", False),
    "CustomResourceDefinition": ("apiextensions.k8s.io/v1", "customresourcedefinitions", False),
    "PodDisruptionBudget": ("policy/v1", "poddisruptionbudgets", True),
    "HorizontalPodAutoscaler": ("autoscaling/v2", "horizontalpodautoscalers", True),
    "StorageClass": ("storage.k8s.io/v1", "storageclasses", False),
    "PriorityClass": ("scheduling.k8s.io/v1", "priorityclasses", False),
    "ConfigSync": (CONFIGSYNC_GROUP_VERSION, CONFIGSYNC_PLURAL, True),
}


def group_version_path(api_version: str) -> str:
    """REST prefix for an apiVersion ("v1" -> /api/v1, "apps/v1" -> /apis/apps/v1)."""
    if "/" in api_version:
        return f"/apis/{api_version}"
    return f"/api/{api_version}"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(body, dict) and body.get("message"):
        reason = body.get("reason")
        prefix = f"HTTP {response.status_code} {reason}" if reason else f"HTTP {response.status_code}"
        return f"{prefix}: {body['message']}"
    return f"HTTP {response.status_code}"


class KubernetesClient:
    """Reads and server-side applies objects through the API server."""

    def __init__(self, client: httpx.AsyncClient, field_manager: str = "configsync"):
        self.client = client
        self.field_manager = field_manager
        self._kinds: dict[str, tuple[str, str, bool]] = dict(BUILTIN_KINDS)
        self._versioned: dict[tuple[str, str], tuple[str, str, bool]] = {
            (api_version, kind): (api_version, plural, namespaced)
            for kind, (api_version, plural, namespaced) in BUILTIN_KINDS.items()
        }

    @classmethod
    def from_config(cls, config: OperatorConfig) -> "KubernetesClient":
        """Build a client from the service account mounted in the pod."""
        headers = {"Accept": "application/json"}
        token_path = Path(config.kube_token_path)
        if token_path.exists():
            headers["Authorization"] = f"Bearer {token_path.read_text().strip()}"
        else:
            logger.warning(f"No service account token at {token_path}, using anonymous access")

        ca_path = Path(config.kube_ca_path)
        verify: Union[str, bool] = str(ca_path) if ca_path.exists() else True

        client = httpx.AsyncClient(
            base_url=config.kube_api_url,
            headers=headers,
            verify=verify,
            timeout=30.0,
        )
        return cls(client, field_manager=config.field_manager)

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Kind resolution
    # ------------------------------------------------------------------

    async def _discover(self, api_version: str):
        """Cache the kinds a group version serves. A 404 caches nothing, so a CRD
        that is not established yet is looked up again on the next cycle."""
        response = await self.client.get(group_version_path(api_version))
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise ClusterUnavailable(f"Discovery of {api_version} failed: {_error_message(response)}")

        for resource in response.json().get("resources", []):
            if "/" in resource.get("name", ""):
                continue  # subresource
            kind = resource.get("kind")
            if kind:
                resolved = (api_version, resource["name"], bool(resource.get("namespaced")))
                self._versioned[(api_version, kind)] = resolved
                self._kinds.setdefault(kind, resolved)

    async def _discover_all(self):
        response = await self.client.get("/apis")
        if response.status_code >= 400:
            raise ClusterUnavailable(f"API discovery failed: {_error_message(response)}")
        for group in response.json().get("groups", []):
            preferred = (group.get("preferredVersion") or {}).get("groupVersion")
            if preferred:
                await self._discover(preferred)

    async def resolve_kind(self, kind: str, api_version: Optional[str] = None) -> tuple[str, str, bool]:
        """Find (apiVersion, plural, namespaced) for a kind, asking discovery when unknown."""
        known = self._versioned.get((api_version, kind)) if api_version else self._kinds.get(kind)
        if known:
            return known

        try:
            if api_version:
                await self._discover(api_version)
                known = self._versioned.get((api_version, kind))
                if known:
                    return known
            else:
                await self._discover_all()
                known = self._kinds.get(kind)
                if known:
                    return known
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"Discovery failed: {e}") from e

        raise ClusterUnavailable(f"Kind {kind} is not served by the cluster")

    def object_path(self, resolved: tuple[str, str, bool], namespace: str, name: str) -> str:
        api_version, plural, namespaced = resolved
        base = group_version_path(api_version)
        if namespaced:
            return f"{base}/namespaces/{namespace or 'default'}/{plural}/{name}"
        return f"{base}/{plural}/{name}"

    # ------------------------------------------------------------------
    # Cluster adapter
    # ------------------------------------------------------------------

    async def get_object(self, kind: str, namespace: str, name: str) -> Optional[dict[str, Any]]:
        path = self.object_path(await self.resolve_kind(kind), namespace, name)
        try:
            response = await self.client.get(path)
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"GET {path} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ClusterUnavailable(f"GET {path}: {_error_message(response)}")
        return response.json()

    async def apply_object(
        self, kind: str, namespace: str, name: str, manifest: dict[str, Any]
    ) -> ApplyResult:
        """Server-side apply; UNCHANGED when the stored object did not move."""
        try:
            resolved = await self.resolve_kind(kind, manifest.get("apiVersion"))
            path = self.object_path(resolved, namespace, name)
            existing = await self.get_object(kind, namespace, name)
        except ClusterUnavailable as e:
            raise ApplyError(e.message) from e

        try:
            response = await self.client.patch(
                path,
                params={"fieldManager": self.field_manager, "force": "true"},
                content=json.dumps(manifest),
                headers={"Content-Type": "application/apply-patch+yaml"},
            )
        except httpx.HTTPError as e:
            raise ApplyError(f"PATCH {path} failed: {e}") from e

        if response.status_code >= 400:
            raise ApplyError(_error_message(response))

        if existing is not None:
            before = (existing.get("metadata") or {}).get("resourceVersion")
            after = (response.json().get("metadata") or {}).get("resourceVersion")
            if before and before == after:
                return ApplyResult.UNCHANGED
        return ApplyResult.APPLIED

    # ------------------------------------------------------------------
    # ConfigSync resources
    # ------------------------------------------------------------------

    def configsync_path(self, namespace: Optional[str] = None, name: Optional[str] = None) -> str:
        base = group_version_path(CONFIGSYNC_GROUP_VERSION)
        if namespace is None:
            return f"{base}/{CONFIGSYNC_PLURAL}"
        path = f"{base}/namespaces/{namespace}/{CONFIGSYNC_PLURAL}"
        return f"{path}/{name}" if name else path

    async def list_targets(self, namespace: Optional[str] = None, default_sync_interval: float = 300.0) -> list[Target]:
        """List ConfigSync resources as targets. Invalid resources are skipped."""
        path = self.configsync_path(namespace)
        try:
            response = await self.client.get(path)
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"GET {path} failed: {e}") from e
        if response.status_code >= 400:
            raise ClusterUnavailable(f"GET {path}: {_error_message(response)}")

        targets = []
        for item in response.json().get("items", []):
            try:
                targets.extend(parse_targets([item], default_sync_interval))
            except ConfigError as e:
                meta = item.get("metadata") or {}
                logger.warning(f"Skipping ConfigSync {meta.get('namespace')}/{meta.get('name')}: {e}")
        return targets


class KubernetesStatusStore:
    """Persists SyncState in the status subresource of the ConfigSync resource."""

    def __init__(self, kube: KubernetesClient):
        self.kube = kube

    async def load(self, target: Target) -> SyncState:
        path = self.kube.configsync_path(target.namespace, target.name)
        try:
            response = await self.kube.client.get(path)
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"GET {path} failed: {e}") from e

        if response.status_code == 404:
            return SyncState()
        if response.status_code >= 400:
            raise ClusterUnavailable(f"GET {path}: {_error_message(response)}")
        return SyncState.from_dict(response.json().get("status"))

    async def save(self, target: Target, state: SyncState) -> None:
        path = self.kube.configsync_path(target.namespace, target.name) + "/status"
        status = state.to_dict()
        # Older readers look for the commit under its original field name
        status["lastCommitID"] = state.last_synced_revision

        try:
            response = await self.kube.client.patch(
                path,
                content=json.dumps({"status": status}),
                headers={"Content-Type": "application/merge-patch+json"},
            )
        except httpx.HTTPError as e:
            raise ClusterUnavailable(f"PATCH {path} failed: {e}") from e
        if response.status_code >= 400:
            raise ClusterUnavailable(f"PATCH {path}: {_error_message(response)}")
