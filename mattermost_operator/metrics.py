import asyncio
import functools

import easykube
from aiohttp import web

from .config import settings
from .models import v1beta1 as api


class Metric:
    # The prefix for the metric
    prefix = None
    # The suffix for the metric
    suffix = None
    # The type of the metric - info or gauge
    type = "info"
    # The description of the metric
    description = None

    def __init__(self):
        self._objs = []

    def add_obj(self, obj):
        self._objs.append(obj)

    @property
    def name(self):
        return f"{self.prefix}_{self.suffix}"

    def labels(self, obj):
        """The labels for the given object."""
        return {**self.common_labels(obj), **self.extra_labels(obj)}

    def common_labels(self, obj):
        """Common labels for the object."""
        return {}

    def extra_labels(self, obj):
        """Extra labels for the object."""
        return {}

    def value(self, obj):
        """The value for the given object."""
        return 1

    def records(self):
        """Returns the records for the metric, i.e. a list of (labels, value) tuples."""
        for obj in self._objs:
            yield self.labels(obj), self.value(obj)


class InstallationMetric(Metric):
    prefix = "mattermost_installation"

    def common_labels(self, obj):
        return {
            "installation_namespace": obj["metadata"]["namespace"],
            "installation_name": obj["metadata"]["name"],
        }


class InstallationInfo(InstallationMetric):
    suffix = "info"
    description = "Information about the installation"

    def extra_labels(self, obj):
        spec = obj.get("spec", {})
        return {
            "image": spec.get("image", api.DEFAULT_IMAGE),
            "version": spec.get("version", api.DEFAULT_VERSION),
        }


class InstallationState(InstallationMetric):
    suffix = "state"
    description = "Installation state"

    def extra_labels(self, obj):
        return {"state": obj.get("status", {}).get("state", "unknown")}


class InstallationReplicas(InstallationMetric):
    suffix = "replicas"
    type = "gauge"
    description = "The number of pods for the installation"

    def value(self, obj):
        return obj.get("status", {}).get("replicas", 0)


class InstallationUpdatedReplicas(InstallationMetric):
    suffix = "updated_replicas"
    type = "gauge"
    description = "The number of pods for the installation running the desired image"

    def value(self, obj):
        return obj.get("status", {}).get("updatedReplicas", 0)


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def format_value(value):
    """Formats a value for output, e.g. using Go formatting."""
    formatted = repr(value)
    dot = formatted.find(".")
    if value > 0 and dot > 6:
        mantissa = f"{formatted[0]}.{formatted[1:dot]}{formatted[dot + 1 :]}".rstrip(
            "0."
        )
        return f"{mantissa}e+0{dot - 1}"
    else:
        return formatted


def render_openmetrics(*metrics):
    """Renders the metrics using OpenMetrics text format."""
    output = []
    for metric in metrics:
        if metric.description:
            output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} {metric.type}\n")

        for labels, value in metric.records():
            if labels:
                labelstr = "{{{}}}".format(
                    ",".join([f'{k}="{escape(v)}"' for k, v in sorted(labels.items())])
                )
            else:
                labelstr = ""
            output.append(f"{metric.name}{labelstr} {format_value(value)}\n")
    output.append("# EOF\n")

    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


METRICS = {
    settings.api_group: {
        api.Mattermost._meta.plural_name: [
            InstallationInfo,
            InstallationState,
            InstallationReplicas,
            InstallationUpdatedReplicas,
        ],
    },
}


async def collect_metrics(ekclient):
    """Collect the metrics for all the installations."""
    metrics = []
    for api_group, resources in METRICS.items():
        ekapi = await ekclient.api_preferred_version(api_group)
        for resource, metric_classes in resources.items():
            ekresource = await ekapi.resource(resource)
            resource_metrics = [klass() for klass in metric_classes]
            async for obj in ekresource.list(all_namespaces=True):
                for metric in resource_metrics:
                    metric.add_obj(obj)
            metrics.extend(resource_metrics)
    return metrics


async def metrics_handler(ekclient, request):
    """Produce metrics for the operator."""
    metrics = await collect_metrics(ekclient)
    content_type, content = render_openmetrics(*metrics)
    return web.Response(headers={"Content-Type": content_type}, body=content)


async def metrics_server():
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    ekclient = easykube.Configuration.from_environment().async_client()

    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, ekclient))])

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", "8080", shutdown_timeout=1.0)
    await site.start()

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
