import asyncio
import collections
import functools
import logging
import sys

import easykube
import kopf
import kube_custom_resource

from pydantic.json import pydantic_encoder

from . import mattermost, metrics, models
from .config import settings
from .models import v1beta1 as api
from .reconcile import Reconciler

LOGGER = logging.getLogger(__name__)


# Create an easykube client from the environment
ekconfig = easykube.Configuration.from_environment(json_encoder=pydantic_encoder)
ekclient = ekconfig.async_client(default_field_manager=settings.easykube_field_manager)


# Create a registry of custom resources and populate it from the models module
registry = kube_custom_resource.CustomResourceRegistry(
    settings.api_group, settings.crd_categories
)
registry.discover_models(models)


reconciler = Reconciler(ekclient)


# Passes for the same installation never run concurrently
LOCKS = collections.defaultdict(asyncio.Lock)


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=settings.api_group
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=settings.api_group,
        key="last-handled-configuration",
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    kopf_settings.batching.worker_limit = settings.max_concurrent_reconciles
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force=True)
        except Exception:
            LOGGER.exception(
                "error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group
            )
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up. If they are not,
    # the kopf watches will not start properly so we exit and get restarted
    LOGGER.info("Waiting for CRDs to become available")
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            LOGGER.exception(
                "api for %s.%s not available - exiting", crd.plural_name, crd.api_group
            )
            sys.exit(1)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    LOGGER.info("Closing Kubernetes client")
    await ekclient.aclose()


def model_handler(model, register_fn, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"

    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if "instance" not in handler_kwargs:
                handler_kwargs["instance"] = model.model_validate(
                    handler_kwargs["body"]
                )
            try:
                return await func(**handler_kwargs)
            except easykube.ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay=5)
                else:
                    raise

        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)

    return decorator


async def reconcile(name, namespace):
    """
    Runs a reconciliation pass for the specified installation, returning the result.
    """
    async with LOCKS[(namespace, name)]:
        return await reconciler.reconcile(name, namespace)


@model_handler(api.Mattermost, kopf.on.create)
@model_handler(api.Mattermost, kopf.on.update, field="spec")
@model_handler(api.Mattermost, kopf.on.resume)
@model_handler(api.Mattermost, kopf.on.timer, interval=settings.timer_interval)
async def reconcile_installation(instance: api.Mattermost, **kwargs):
    """
    Reconciles an installation.
    """
    result = await reconcile(instance.metadata.name, instance.metadata.namespace)
    if result.requeue_after:
        raise kopf.TemporaryError(
            result.message or "installation is not stable", delay=result.requeue_after
        )


@kopf.on.delete(
    f"{settings.api_group}/{api.Mattermost._meta.version}",
    api.Mattermost._meta.plural_name,
    optional=True,
)
async def forget_installation(name, namespace, **kwargs):
    """
    Discards the lock for a deleted installation.
    """
    # The child resources are removed by garbage collection
    LOCKS.pop((namespace, name), None)


async def reconcile_owner(obj):
    """
    Reconciles the installation that owns the given child object.
    """
    name = obj["metadata"]["labels"][mattermost.CLUSTER_LABEL]
    namespace = obj["metadata"]["namespace"]
    result = await reconcile(name, namespace)
    if result.requeue_after:
        LOGGER.debug(
            "installation %s/%s not yet stable - %s", namespace, name, result.message
        )


@kopf.on.event("deployments.apps", labels={mattermost.CLUSTER_LABEL: kopf.PRESENT})
async def handle_deployment_event(body, **kwargs):
    """
    Handles changes to the deployments of installations.
    """
    await reconcile_owner(body)


@kopf.on.event("jobs.batch", labels={mattermost.CLUSTER_LABEL: kopf.PRESENT})
async def handle_job_event(body, **kwargs):
    """
    Handles changes to update jobs.
    """
    await reconcile_owner(body)


@kopf.on.event("v1", "services", labels={mattermost.CLUSTER_LABEL: kopf.PRESENT})
async def handle_service_event(body, **kwargs):
    """
    Handles changes to the services of installations.
    """
    await reconcile_owner(body)


async def run():
    """
    Runs the operator and the metrics server.
    """
    await asyncio.gather(
        kopf.operator(clusterwide=True),
        metrics.metrics_server(),
    )
