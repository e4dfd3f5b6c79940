"""
Reconciliation of Mattermost installations.
"""

import dataclasses
import logging
import typing as t

import easykube

from . import mattermost
from .admission import ACTIVE_STATES, AdmissionLimiter
from .config import settings
from .database import check_database
from .errors import ConfigurationError, PatchError
from .filestore import check_file_store
from .health import RolloutHealthChecker
from .models import v1beta1 as api
from .patch import apply_patch
from .resources import ResourceManager, copy_service_auto_assigned_fields
from .update_job import UpdateJobCoordinator


LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass
class Result:
    """
    The result of a reconciliation pass.
    """

    #: The number of seconds after which the installation should be reconciled again
    requeue_after: t.Optional[int] = None
    message: t.Optional[str] = None


def status_snapshot(instance: api.Mattermost):
    """
    Returns the status of the installation in a form that can be compared.
    """
    return instance.status.model_dump(mode="json", exclude_none=True)


class Reconciler:
    """
    Drives an installation towards the state described by its spec.
    """

    def __init__(self, ekclient, admission: t.Optional[AdmissionLimiter] = None):
        self.ekclient = ekclient
        self.resources = ResourceManager(ekclient)
        self.update_jobs = UpdateJobCoordinator(self.resources)
        self.health = RolloutHealthChecker(ekclient)
        self.admission = admission or AdmissionLimiter(
            self.count_active,
            settings.max_reconciling,
            settings.requeue_on_limit_delay,
        )

    async def installations(self, subresource=None):
        """
        Returns the easykube resource for installations.
        """
        meta = api.Mattermost._meta
        resource = meta.plural_name
        if subresource:
            resource = f"{resource}/{subresource}"
        return await self.ekclient.api(f"{settings.api_group}/{meta.version}").resource(
            resource
        )

    async def count_active(self):
        """
        Returns the number of installations whose persisted state is active.
        """
        active = {state.value for state in ACTIVE_STATES}
        installations = await self.installations()
        count = 0
        async for obj in installations.list(all_namespaces=True):
            if (obj.get("status") or {}).get("state") in active:
                count = count + 1
        return count

    async def save_status(self, instance: api.Mattermost):
        """
        Save the status of the given installation.
        """
        ekresource = await self.installations("status")
        data = await ekresource.replace(
            instance.metadata.name,
            {
                # Include the resource version for optimistic concurrency
                "metadata": {"resourceVersion": instance.metadata.resource_version},
                "status": instance.status.model_dump(exclude_none=True),
            },
            namespace=instance.metadata.namespace,
        )
        # Store the new resource version
        instance.metadata.resource_version = data["metadata"]["resourceVersion"]

    async def save_status_if_changed(self, instance: api.Mattermost, persisted):
        """
        Saves the status of the installation if it differs from the persisted status.

        Returns the status that is now persisted.
        """
        current = status_snapshot(instance)
        if current != persisted:
            await self.save_status(instance)
        return current

    async def reconcile(self, name, namespace) -> Result:
        """
        Runs a reconciliation pass for the specified installation.
        """
        installations = await self.installations()
        try:
            data = await installations.fetch(name, namespace=namespace)
        except easykube.ApiError as exc:
            if exc.status_code == 404:
                LOGGER.info("installation %s/%s no longer exists", namespace, name)
                return Result()
            else:
                raise
        generation = data["metadata"].get("generation", 0)
        instance = api.Mattermost.model_validate(data)
        async with self.admission.admit(instance) as admission:
            if not admission.granted:
                return Result(
                    admission.requeue_after, "too many installations reconciling"
                )
            return await self._reconcile(instance, generation)

    async def _reconcile(self, instance: api.Mattermost, generation) -> Result:
        namespace = instance.metadata.namespace
        name = instance.metadata.name
        persisted = status_snapshot(instance)
        # Mark the installation as active as early as possible so that it counts
        # towards the reconciling limit
        if instance.status.state is None:
            instance.status.state = api.RunningState.RECONCILING
            persisted = await self.save_status_if_changed(instance, persisted)
        try:
            job_state = await self.check_resources(instance)
        except Exception as exc:
            LOGGER.error("error reconciling %s/%s - %s", namespace, name, exc)
            instance.status.state = api.RunningState.RECONCILING
            instance.status.error = str(exc)
            try:
                await self.save_status_if_changed(instance, persisted)
            except Exception:
                LOGGER.exception("failed to save status for %s/%s", namespace, name)
            raise
        if job_state is not None and job_state.transient:
            LOGGER.info("installation %s/%s - %s", namespace, name, job_state.value)
            instance.status.state = api.RunningState.RECONCILING
            await self.save_status_if_changed(instance, persisted)
            return Result(settings.resources_ready_delay, job_state.value)
        report = await self.health.check(instance)
        status = instance.status
        status.state = report.state
        status.replicas = report.replicas
        status.updated_replicas = report.updated_replicas
        if report.image:
            status.image = report.image
            status.version = report.version
        status.endpoint = report.endpoint
        status.error = None
        status.observed_generation = generation
        await self.save_status_if_changed(instance, persisted)
        if report.state != api.RunningState.STABLE:
            LOGGER.info(
                "installation %s/%s is %s - %s",
                namespace,
                name,
                report.state.value,
                report.reason,
            )
            return Result(settings.health_check_requeue_delay, report.reason)
        return Result()

    async def check_resources(self, instance: api.Mattermost):
        """
        Converges the resources for the installation.

        Returns the state of the update job, or None if no update job was required.
        """
        database = await check_database(self.resources, instance)
        file_store = await check_file_store(self.resources, instance)
        await self.check_license(instance)
        await self.check_service(instance)
        await self.check_rbac(instance)
        await self.check_ingress(instance)
        return await self.check_deployment(instance, database, file_store)

    async def check_license(self, instance: api.Mattermost):
        secret_name = instance.spec.license_secret
        if not secret_name:
            return
        secret = await self.resources.fetch(
            "v1", "Secret", secret_name, instance.metadata.namespace
        )
        if secret is None:
            raise ConfigurationError(f"license secret {secret_name} does not exist")
        if "license" not in (secret.get("data") or {}):
            raise ConfigurationError(
                f"license secret {secret_name} does not have a 'license' value"
            )

    def set_patch_status(self, instance: api.Mattermost, field, patch_status):
        status = instance.status.resource_patch or api.ResourcePatchStatus()
        setattr(status, field, patch_status)
        if status.service_patch or status.deployment_patch:
            instance.status.resource_patch = status
        else:
            instance.status.resource_patch = None

    def apply_resource_patch(self, instance: api.Mattermost, key, obj):
        """
        Applies the user-specified patch for the given resource, recording the outcome
        in the status.

        If the patch fails to apply, the unpatched object is returned.
        """
        resource_patch = instance.spec.resource_patch
        patch = getattr(resource_patch, key) if resource_patch else None
        field = f"{key}_patch"
        try:
            patched, applied = apply_patch(patch, obj)
        except PatchError as exc:
            LOGGER.warning(
                "failed to apply %s patch for %s/%s - %s",
                key,
                instance.metadata.namespace,
                instance.metadata.name,
                exc,
            )
            self.set_patch_status(
                instance, field, api.PatchStatus(applied=False, error=str(exc))
            )
            return obj
        if applied:
            self.set_patch_status(
                instance, field, api.PatchStatus(applied=True, error="")
            )
        else:
            self.set_patch_status(instance, field, None)
        return patched

    async def check_service(self, instance: api.Mattermost):
        desired = self.apply_resource_patch(
            instance, "service", mattermost.service(instance)
        )
        current = await self.resources.create_if_not_exists(instance, desired)
        if current is None:
            return
        current_type = current.get("spec", {}).get("type")
        desired_type = desired.get("spec", {}).get("type")
        if current_type != desired_type:
            # Some changes of service type are not permitted, so the service is
            # deleted and recreated instead
            LOGGER.info(
                "service type for %s/%s changed from %s to %s - recreating",
                instance.metadata.namespace,
                instance.metadata.name,
                current_type,
                desired_type,
            )
            await self.resources.delete(
                "v1",
                "Service",
                current["metadata"]["name"],
                current["metadata"]["namespace"],
            )
            await self.resources.create(instance, desired)
            return
        copy_service_auto_assigned_fields(desired, current)
        await self.resources.update(current, desired)

    async def check_rbac(self, instance: api.Mattermost):
        await self.resources.ensure(instance, mattermost.service_account(instance))
        await self.resources.ensure(instance, mattermost.role(instance))
        await self.resources.ensure(instance, mattermost.role_binding(instance))

    async def check_ingress(self, instance: api.Mattermost):
        # The load balancer service is used to reach the installation instead
        if instance.spec.use_service_load_balancer:
            return
        if mattermost.ingress_enabled(instance):
            await self.resources.ensure(instance, mattermost.ingress(instance))
        else:
            await self.resources.delete(
                "networking.k8s.io/v1",
                "Ingress",
                instance.metadata.name,
                instance.metadata.namespace,
            )

    async def check_deployment(self, instance: api.Mattermost, database, file_store):
        desired = self.apply_resource_patch(
            instance, "deployment", mattermost.deployment(instance, database, file_store)
        )
        current = await self.resources.create_if_not_exists(instance, desired)
        if current is None:
            return None
        return await self.update_jobs.rollout(instance, current, desired)
