import copy
import enum
import logging

from . import mattermost
from .config import settings
from .errors import ConfigurationError, UpdateJobFailed
from .models import v1beta1 as api
from .resources import ResourceManager


LOGGER = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    """
    Enumeration of the outcomes of an update job check.
    """

    STARTED = "began update job"
    RESTARTED = "restarted update job"
    RUNNING = "update job still running"
    SUCCEEDED = "update job succeeded"

    @property
    def transient(self):
        """
        Indicates whether the deployment is still waiting for the update job.
        """
        return self is not JobState.SUCCEEDED


def container_image(obj):
    """
    Returns the image of the application container in the pod template of the
    given deployment or job.
    """
    pod_spec = obj.get("spec", {}).get("template", {}).get("spec", {})
    container = mattermost.main_container(pod_spec.get("containers"))
    return container.get("image") if container else None


def build_update_job(instance: api.Mattermost, deployment):
    """
    Returns the update job that verifies the image of the given deployment.
    """
    name = settings.update_job.name
    update_job = instance.spec.update_job
    pod_spec = copy.deepcopy(deployment["spec"]["template"]["spec"])
    # The job runs a single command, so probes are not required
    for container in pod_spec.get("containers", []):
        container.pop("livenessProbe", None)
        container.pop("readinessProbe", None)
        container["command"] = list(settings.update_job.command)
    pod_spec["restartPolicy"] = "Never"
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": name,
            "namespace": instance.metadata.namespace,
            "labels": {mattermost.CLUSTER_LABEL: instance.metadata.name},
        },
        "spec": {
            "backoffLimit": settings.update_job.backoff_limit,
            "template": {
                "metadata": {
                    "labels": {**update_job.extra_labels, "app": name},
                    "annotations": dict(update_job.extra_annotations),
                },
                "spec": pod_spec,
            },
        },
    }


def _condition_true(job, type):  # noqa: A002
    return any(
        condition.get("type") == type and condition.get("status") == "True"
        for condition in (job.get("status") or {}).get("conditions") or []
    )


def job_finished(job):
    """
    Returns True if the job has completed, successfully or otherwise.
    """
    status = job.get("status") or {}
    return bool(
        status.get("completionTime")
        or _condition_true(job, "Complete")
        or _condition_true(job, "Failed")
    )


def job_succeeded(job):
    """
    Returns True if the job has completed successfully.
    """
    status = job.get("status") or {}
    return bool(
        status.get("completionTime")
        or status.get("succeeded", 0) > 0
        or _condition_true(job, "Complete")
    )


def job_failed(job):
    """
    Returns True if the job has failed.

    Pods that failed before a retry succeeded do not fail the job.
    """
    return not job_succeeded(job) and _condition_true(job, "Failed")


class UpdateJobCoordinator:
    """
    Verifies a new application image using a job before it is rolled out to the
    deployment of an installation.
    """

    def __init__(self, resources: ResourceManager):
        self.resources = resources

    async def cleanup(self, job):
        """
        Deletes the given job, logging but not raising any errors.
        """
        namespace = job["metadata"]["namespace"]
        name = job["metadata"]["name"]
        LOGGER.info("deleting update job %s/%s", namespace, name)
        try:
            await self.resources.delete("batch/v1", "Job", name, namespace)
        except Exception:
            LOGGER.exception("unable to clean up update job %s/%s", namespace, name)

    async def rollout(self, instance: api.Mattermost, current, desired):
        """
        Updates the current deployment to match the desired deployment.

        When the image changes, the deployment is only updated once an update job
        for the new image has succeeded. Returns None if no update job was required,
        otherwise the state of the update job.
        """
        namespace = instance.metadata.namespace
        name = instance.metadata.name
        current_image = container_image(current)
        desired_image = container_image(desired)
        if current_image is None or desired_image is None:
            raise ConfigurationError("failed to find main container in deployment")
        if current_image == desired_image:
            await self.resources.update(current, desired)
            return None
        LOGGER.info(
            "image for %s/%s changed from %s to %s",
            namespace,
            name,
            current_image,
            desired_image,
        )
        if instance.spec.update_job.disabled:
            LOGGER.info(
                "update job is disabled for %s/%s - rolling out without verification",
                namespace,
                name,
            )
            await self.resources.update(current, desired)
            return None
        state, job = await self.check_job(instance, desired)
        if state is JobState.SUCCEEDED:
            await self.resources.update(current, desired)
            await self.cleanup(job)
        return state

    async def check_job(self, instance: api.Mattermost, desired):
        """
        Checks the update job for the desired deployment, launching it if required.

        Returns a tuple of (state, job).
        """
        namespace = instance.metadata.namespace
        job_name = settings.update_job.name
        desired_job = build_update_job(instance, desired)
        job = await self.resources.fetch("batch/v1", "Job", job_name, namespace)
        if job is None:
            LOGGER.info("launching update job %s/%s", namespace, job_name)
            await self.resources.create(instance, desired_job)
            return JobState.STARTED, None
        if container_image(job) != container_image(desired):
            LOGGER.info("image changed - restarting update job %s/%s", namespace, job_name)
            await self.resources.delete("batch/v1", "Job", job_name, namespace)
            await self.resources.create(instance, desired_job)
            return JobState.RESTARTED, None
        if not job_finished(job):
            LOGGER.info("update job %s/%s still running", namespace, job_name)
            return JobState.RUNNING, job
        if job_failed(job):
            await self.cleanup(job)
            raise UpdateJobFailed(f"update job {namespace}/{job_name} failed")
        LOGGER.info("update job %s/%s succeeded", namespace, job_name)
        return JobState.SUCCEEDED, job
