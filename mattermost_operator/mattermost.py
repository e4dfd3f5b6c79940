"""
Functions for generating the Kubernetes resources that make up an installation.
"""

import base64
import copy
import hashlib

from .models import v1beta1 as api
from .resources import owner_reference


#: The label applied to all the components of an installation
CLUSTER_LABEL = "v1alpha1.mattermost.com/installation"
#: The label applied to an installation and the resources created to support it
CLUSTER_RESOURCE_LABEL = "v1alpha1.mattermost.com/resource"
#: The name of the container that runs the application
CONTAINER_NAME = "mattermost"

APP_PORT = 8065
METRICS_PORT = 8067

#: The annotation that Kubernetes uses to record the revision of a deployment
REVISION_ANNOTATION = "deployment.kubernetes.io/revision"

LICENSE_PATH = "/mattermost-license"
LOCAL_FILE_PATH = "/mattermost/data"
FILE_STORE_VOLUME_NAME = "mattermost-data"


def hashed_name(name):
    """
    Returns a short, deterministic, lower-case hash of the given name.
    """
    digest = hashlib.md5(name.encode()).digest()
    return base64.b64encode(digest).decode().rstrip("=")[:6].lower()


def hash_with_prefix(prefix, name):
    return f"{prefix}-{hashed_name(name)}"


def resource_labels(name):
    """
    Labels for an installation and any resources that support it.
    """
    return {CLUSTER_RESOURCE_LABEL: name}


def selector_labels(name):
    """
    Labels used to select the pods of an installation.
    """
    return {**resource_labels(name), CLUSTER_LABEL: name, "app": CONTAINER_NAME}


def labels(instance: api.Mattermost):
    """
    Labels for the resources of an installation, including any user-specified labels.
    """
    return {**selector_labels(instance.metadata.name), **instance.spec.resource_labels}


def image_name(instance: api.Mattermost):
    """
    Returns the full image name for an installation.

    Versions that are digests are joined using @ rather than :.
    """
    separator = "@" if "sha256:" in instance.spec.version else ":"
    return f"{instance.spec.image}{separator}{instance.spec.version}"


def ingress_enabled(instance: api.Mattermost):
    return bool(instance.spec.ingress and instance.spec.ingress.enabled)


def ingress_host(instance: api.Mattermost):
    return instance.spec.ingress.host if instance.spec.ingress else None


def main_container(containers):
    """
    Returns the application container from the given list, or None.
    """
    return next((c for c in containers or [] if c.get("name") == CONTAINER_NAME), None)


def env_from_secret(secret_name, key):
    return {"secretKeyRef": {"name": secret_name, "key": key}}


def merge_env_vars(original, overrides):
    """
    Merges the overrides into the original env vars, replacing env vars with the
    same name and appending new ones.
    """
    merged = list(original)
    for env_var in overrides:
        positions = [i for i, e in enumerate(merged) if e["name"] == env_var["name"]]
        if positions:
            for i in positions:
                merged[i] = dict(env_var)
        else:
            merged.append(dict(env_var))
    return merged


def general_env_vars(site_url=None):
    env = [
        {"name": "MM_PLUGINSETTINGS_ENABLEUPLOADS", "value": "true"},
        {"name": "MM_METRICSSETTINGS_ENABLE", "value": "true"},
        {"name": "MM_METRICSSETTINGS_LISTENADDRESS", "value": f":{METRICS_PORT}"},
        {"name": "MM_CLUSTERSETTINGS_ENABLE", "value": "true"},
        {"name": "MM_CLUSTERSETTINGS_CLUSTERNAME", "value": "production"},
        {"name": "MM_INSTALL_TYPE", "value": "kubernetes-operator"},
    ]
    if site_url:
        env.append({"name": "MM_SERVICESETTINGS_SITEURL", "value": site_url})
    return env


def _metadata(instance: api.Mattermost, name, **extra):
    return {
        "name": name,
        "namespace": instance.metadata.namespace,
        "ownerReferences": [owner_reference(instance)],
        **extra,
    }


def service(instance: api.Mattermost):
    """
    Returns the service for an installation.

    When a load balancer service is requested, the service exposes ports 80 and 443.
    Otherwise a headless service is used that exposes the application and metrics.
    """
    name = instance.metadata.name
    annotations = {"service.alpha.kubernetes.io/tolerate-unready-endpoints": "true"}
    if instance.spec.use_service_load_balancer:
        annotations.update(instance.spec.service_annotations)
        spec = {
            "type": "LoadBalancer",
            "ports": [
                {"name": "http", "port": 80, "targetPort": "app"},
                {"name": "https", "port": 443, "targetPort": "app"},
            ],
        }
    else:
        spec = {
            "type": "ClusterIP",
            "clusterIP": "None",
            "ports": [
                {"name": "app", "port": APP_PORT, "targetPort": "app"},
                {"name": "metrics", "port": METRICS_PORT, "targetPort": "metrics"},
            ],
        }
    spec["selector"] = selector_labels(name)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(
            instance, name, labels=labels(instance), annotations=annotations
        ),
        "spec": spec,
    }


def ingress(instance: api.Mattermost):
    """
    Returns the ingress for an installation.
    """
    name = instance.metadata.name
    spec = instance.spec.ingress or api.IngressSpec()
    ingress_spec = {
        "rules": [
            {
                "host": spec.host,
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "ImplementationSpecific",
                            "backend": {
                                "service": {
                                    "name": name,
                                    "port": {"number": APP_PORT},
                                },
                            },
                        },
                    ],
                },
            },
        ],
    }
    if spec.tls_secret:
        ingress_spec["tls"] = [{"hosts": [spec.host], "secretName": spec.tls_secret}]
    if spec.ingress_class:
        ingress_spec["ingressClassName"] = spec.ingress_class
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": _metadata(
            instance, name, labels=labels(instance), annotations=dict(spec.annotations)
        ),
        "spec": ingress_spec,
    }


def service_account(instance: api.Mattermost):
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(instance, instance.metadata.name),
    }


def role(instance: api.Mattermost):
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": _metadata(instance, instance.metadata.name),
        "rules": [
            {
                "apiGroups": ["batch"],
                "resources": ["jobs"],
                "verbs": ["get", "list", "watch"],
            },
        ],
    }


def role_binding(instance: api.Mattermost):
    name = instance.metadata.name
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(instance, name),
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": name,
                "namespace": instance.metadata.namespace,
            },
        ],
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": name,
        },
    }


def secret(instance: api.Mattermost, name, data):
    """
    Returns a secret belonging to an installation with the given string data.
    """
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(
            instance, name, labels=resource_labels(instance.metadata.name)
        ),
        "data": {
            key: base64.b64encode(value.encode()).decode()
            for key, value in data.items()
        },
    }


#: The keys of a probe that define how the probe is performed
PROBE_HANDLERS = ("exec", "grpc", "httpGet", "tcpSocket")
#: The timings of a probe that can be overridden
PROBE_TIMINGS = (
    "initialDelaySeconds",
    "periodSeconds",
    "timeoutSeconds",
    "failureThreshold",
    "successThreshold",
)


def probe(period, failure_threshold, overrides=None):
    """
    Returns a probe for the application container, applying the given overrides.
    """
    result = {
        "httpGet": {"path": "/api/v4/system/ping", "port": APP_PORT},
        "initialDelaySeconds": 10,
        "periodSeconds": period,
        "failureThreshold": failure_threshold,
    }
    overrides = overrides or {}
    handler = {k: v for k, v in overrides.items() if k in PROBE_HANDLERS and v}
    if handler:
        result.pop("httpGet")
        result.update(copy.deepcopy(handler))
    for key in PROBE_TIMINGS:
        if overrides.get(key):
            result[key] = overrides[key]
    return result


def deployment(instance: api.Mattermost, database, file_store):
    """
    Returns the deployment for an installation using the given database and file
    store configurations.
    """
    name = instance.metadata.name
    host = ingress_host(instance)
    env = [
        *database.env_vars(instance),
        *file_store.env_vars(instance),
        *general_env_vars(f"https://{host}" if host else None),
    ]
    init_containers = [
        *database.init_containers(instance),
        *file_store.init_containers(instance),
    ]
    volumes, volume_mounts = file_store.volumes(instance)
    volumes = [*copy.deepcopy(instance.spec.volumes), *volumes]
    volume_mounts = [*copy.deepcopy(instance.spec.volume_mounts), *volume_mounts]
    pod_annotations = {}
    if instance.spec.license_secret:
        env.append(
            {
                "name": "MM_SERVICESETTINGS_LICENSEFILELOCATION",
                "value": f"{LICENSE_PATH}/license",
            }
        )
        volume_mounts.append(
            {"name": "mattermost-license", "mountPath": LICENSE_PATH, "readOnly": True}
        )
        volumes.append(
            {
                "name": "mattermost-license",
                "secret": {"secretName": instance.spec.license_secret},
            }
        )
        pod_annotations.update(
            {
                "prometheus.io/scrape": "true",
                "prometheus.io/path": "/metrics",
                "prometheus.io/port": str(METRICS_PORT),
            }
        )
    container = {
        "name": CONTAINER_NAME,
        "image": image_name(instance),
        "command": ["mattermost"],
        "env": merge_env_vars(env, instance.spec.mattermost_env),
        "ports": [
            {"name": "app", "containerPort": APP_PORT},
            {"name": "metrics", "containerPort": METRICS_PORT},
        ],
        "readinessProbe": probe(5, 6, instance.spec.probes.readiness_probe),
        "livenessProbe": probe(10, 3, instance.spec.probes.liveness_probe),
        "terminationMessagePolicy": "FallbackToLogsOnError",
        "volumeMounts": volume_mounts,
    }
    if instance.spec.image_pull_policy:
        container["imagePullPolicy"] = instance.spec.image_pull_policy
    scheduling = instance.spec.scheduling
    if scheduling.resources:
        container["resources"] = scheduling.resources
    pod_spec = {
        "serviceAccountName": name,
        "initContainers": init_containers,
        "containers": [container],
        "volumes": volumes,
    }
    if scheduling.affinity:
        pod_spec["affinity"] = scheduling.affinity
    if scheduling.node_selector:
        pod_spec["nodeSelector"] = scheduling.node_selector
    if scheduling.tolerations:
        pod_spec["tolerations"] = scheduling.tolerations
    if instance.spec.image_pull_secrets:
        pod_spec["imagePullSecrets"] = instance.spec.image_pull_secrets
    spec = {
        "strategy": {
            "type": "RollingUpdate",
            "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1},
        },
        "revisionHistoryLimit": 1,
        "selector": {"matchLabels": selector_labels(name)},
        "template": {
            "metadata": {"labels": labels(instance), "annotations": pod_annotations},
            "spec": pod_spec,
        },
    }
    if instance.spec.replicas is not None:
        spec["replicas"] = instance.spec.replicas
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(instance, name, labels=labels(instance)),
        "spec": spec,
    }
