import dataclasses
import logging
import typing as t

import easykube

from . import mattermost
from .models import v1beta1 as api


LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass
class HealthReport:
    """
    The observed health of the rollout for an installation.
    """

    state: api.RunningState
    replicas: int = 0
    updated_replicas: int = 0
    image: t.Optional[str] = None
    version: t.Optional[str] = None
    endpoint: str = api.ENDPOINT_NOT_AVAILABLE
    #: A message describing the first unmet condition
    reason: t.Optional[str] = None


def pod_is_updated(pod, image):
    """
    Returns True if the pod is running the given image and is ready, False otherwise.
    """
    if pod.get("metadata", {}).get("deletionTimestamp"):
        return False
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    container = mattermost.main_container(pod.get("spec", {}).get("containers"))
    if not container or container.get("image") != image:
        return False
    return any(
        condition.get("type") == "Ready" and condition.get("status") == "True"
        for condition in status.get("conditions") or []
    )


class RolloutHealthChecker:
    """
    Checks the progress of the rollout of an installation.
    """

    def __init__(self, ekclient):
        self.ekclient = ekclient

    async def _fetch(self, api_version, kind, name, namespace):
        resource = await self.ekclient.api(api_version).resource(kind)
        try:
            return await resource.fetch(name, namespace=namespace)
        except easykube.ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise

    async def _list(self, api_version, kind, labels, namespace):
        resource = await self.ekclient.api(api_version).resource(kind)
        return [obj async for obj in resource.list(labels=labels, namespace=namespace)]

    async def _replica_set_observed(self, deployment, labels, namespace):
        annotations = deployment.get("metadata", {}).get("annotations") or {}
        revision = annotations.get(mattermost.REVISION_ANNOTATION)
        if not revision:
            return False
        for replica_set in await self._list("apps/v1", "ReplicaSet", labels, namespace):
            rs_annotations = replica_set.get("metadata", {}).get("annotations") or {}
            if rs_annotations.get(mattermost.REVISION_ANNOTATION) != revision:
                continue
            status = replica_set.get("status") or {}
            return status.get("observedGeneration", 0) > 0
        return False

    async def endpoint(self, instance: api.Mattermost):
        """
        Returns the endpoint at which the installation is available.
        """
        name = instance.metadata.name
        namespace = instance.metadata.namespace
        if instance.spec.use_service_load_balancer:
            service = await self._fetch("v1", "Service", name, namespace)
            status = (service or {}).get("status") or {}
            ingresses = (status.get("loadBalancer") or {}).get("ingress") or []
            if ingresses:
                return (
                    ingresses[0].get("hostname")
                    or ingresses[0].get("ip")
                    or api.ENDPOINT_NOT_AVAILABLE
                )
        elif mattermost.ingress_enabled(instance):
            ingress = await self._fetch("networking.k8s.io/v1", "Ingress", name, namespace)
            rules = (ingress or {}).get("spec", {}).get("rules") or []
            if rules and rules[0].get("host"):
                return rules[0]["host"]
        return api.ENDPOINT_NOT_AVAILABLE

    async def check(self, instance: api.Mattermost) -> HealthReport:
        """
        Checks the rollout of the given installation, stopping at the first unmet
        condition.
        """
        name = instance.metadata.name
        namespace = instance.metadata.namespace
        deployment = await self._fetch("apps/v1", "Deployment", name, namespace)
        if deployment is None:
            return HealthReport(api.RunningState.RECONCILING, reason="no deployment")
        generation = deployment.get("metadata", {}).get("generation")
        observed = (deployment.get("status") or {}).get("observedGeneration")
        if generation != observed:
            return HealthReport(
                api.RunningState.RECONCILING,
                reason="deployment update not yet observed",
            )
        labels = mattermost.selector_labels(name)
        if not await self._replica_set_observed(deployment, labels, namespace):
            return HealthReport(
                api.RunningState.RECONCILING,
                reason="replica set for the current revision not yet observed",
            )
        image = mattermost.image_name(instance)
        pods = await self._list("v1", "Pod", labels, namespace)
        total = len(pods)
        updated = sum(1 for pod in pods if pod_is_updated(pod, image))
        report = HealthReport(
            api.RunningState.RECONCILING,
            replicas=total,
            updated_replicas=updated,
        )
        if updated > 0:
            report.image = instance.spec.image
            report.version = instance.spec.version
        desired = instance.spec.replicas if instance.spec.replicas is not None else 1
        if desired == 0:
            report.state = api.RunningState.STABLE
            return report
        if updated != desired or total != desired:
            if updated >= 1:
                report.state = api.RunningState.READY
            report.reason = f"{updated} of {desired} replicas updated ({total} total)"
            return report
        report.endpoint = await self.endpoint(instance)
        report.state = api.RunningState.STABLE
        LOGGER.debug("installation %s/%s is stable", namespace, name)
        return report
