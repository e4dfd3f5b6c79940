import typing as t

from kube_custom_resource import CustomResource, schema
from pydantic import Field, conint


__all__ = [
    "IngressSpec",
    "ExternalDatabase",
    "OperatorManagedDatabase",
    "DatabaseSpec",
    "ExternalFileStore",
    "LocalFileStore",
    "OperatorManagedMinio",
    "FileStoreSpec",
    "SchedulingSpec",
    "ProbesSpec",
    "UpdateJobSpec",
    "Patch",
    "ResourcePatch",
    "MattermostSpec",
    "RunningState",
    "PatchStatus",
    "ResourcePatchStatus",
    "MattermostStatus",
    "Mattermost",
    "DEFAULT_IMAGE",
    "DEFAULT_VERSION",
    "ENDPOINT_NOT_AVAILABLE",
]


#: The image to use when none is given
DEFAULT_IMAGE = "mattermost/mattermost-enterprise-edition"
#: The version to use when none is given
DEFAULT_VERSION = "5.28.0"
#: The endpoint reported when no external address is known
ENDPOINT_NOT_AVAILABLE = "not available"


class IngressSpec(schema.BaseModel):
    """
    The spec for the ingress for an installation.
    """

    enabled: bool = Field(
        False, description="Indicates whether an ingress should be created."
    )
    host: schema.Optional[str] = Field(
        None, description="The host to use for the ingress rules."
    )
    annotations: schema.Dict[str, str] = Field(
        default_factory=dict, description="Annotations for the ingress."
    )
    tls_secret: schema.Optional[str] = Field(
        None,
        description="The secret containing the TLS certificate. If not given, TLS is not configured.",
    )
    ingress_class: schema.Optional[str] = Field(
        None, description="The ingress class to use for the ingress."
    )


class ExternalDatabase(schema.BaseModel):
    """
    The spec for an external database.
    """

    secret: schema.constr(min_length=1) = Field(
        ...,
        description=(
            "The secret containing the connection details. It must contain "
            "DB_CONNECTION_STRING and can contain MM_SQLSETTINGS_DATASOURCEREPLICAS "
            "and DB_CONNECTION_CHECK_URL."
        ),
    )


class OperatorManagedDatabase(schema.BaseModel):
    """
    The spec for a database provisioned by the MySQL operator.
    """

    type: schema.constr(min_length=1) = Field(
        "mysql", description="The type of the database."
    )
    storage_size: schema.constr(min_length=1) = Field(
        "50Gi", description="The storage size for the database."
    )
    replicas: conint(ge=0) = Field(1, description="The number of database replicas.")


class DatabaseSpec(schema.BaseModel):
    """
    The database configuration for an installation.
    """

    external: schema.Optional[ExternalDatabase] = Field(
        None, description="Configuration for an external database."
    )
    operator_managed: schema.Optional[OperatorManagedDatabase] = Field(
        None, description="Configuration for an operator-managed database."
    )
    disable_readiness_check: bool = Field(
        False,
        description="Indicates whether to skip the init container that waits for the database.",
    )


class ExternalFileStore(schema.BaseModel):
    """
    The spec for an external S3-compatible file store.
    """

    url: schema.constr(min_length=1) = Field(..., description="The URL of the store.")
    bucket: schema.constr(min_length=1) = Field(..., description="The bucket to use.")
    secret: schema.Optional[str] = Field(
        None,
        description="The secret containing the accesskey and secretkey for the store.",
    )


class LocalFileStore(schema.BaseModel):
    """
    The spec for a file store backed by a persistent volume claim.
    """

    enabled: bool = Field(False, description="Indicates whether local storage is used.")
    storage_size: schema.constr(min_length=1) = Field(
        "50Gi", description="The storage size for the volume claim."
    )


class OperatorManagedMinio(schema.BaseModel):
    """
    The spec for a file store provisioned by the MinIO operator.
    """

    storage_size: schema.constr(min_length=1) = Field(
        "50Gi", description="The storage size for MinIO."
    )
    replicas: conint(ge=1) = Field(1, description="The number of MinIO replicas.")


class FileStoreSpec(schema.BaseModel):
    """
    The file store configuration for an installation.
    """

    external: schema.Optional[ExternalFileStore] = Field(
        None, description="Configuration for an external file store."
    )
    local: schema.Optional[LocalFileStore] = Field(
        None, description="Configuration for a local file store."
    )
    operator_managed: schema.Optional[OperatorManagedMinio] = Field(
        None, description="Configuration for an operator-managed file store."
    )


class SchedulingSpec(schema.BaseModel):
    """
    Scheduling and resource constraints for the application pods.
    """

    resources: schema.Dict[str, schema.Any] = Field(
        default_factory=dict, description="Resource requests and limits."
    )
    node_selector: schema.Dict[str, str] = Field(
        default_factory=dict, description="The node selector for the pods."
    )
    affinity: schema.Dict[str, schema.Any] = Field(
        default_factory=dict, description="The affinity for the pods."
    )
    tolerations: t.List[schema.Dict[str, schema.Any]] = Field(
        default_factory=list, description="The tolerations for the pods."
    )


class ProbesSpec(schema.BaseModel):
    """
    Overrides for the probes of the application container.

    The handler and any non-zero timings replace the defaults.
    """

    liveness_probe: schema.Dict[str, schema.Any] = Field(
        default_factory=dict, description="Overrides for the liveness probe."
    )
    readiness_probe: schema.Dict[str, schema.Any] = Field(
        default_factory=dict, description="Overrides for the readiness probe."
    )


class UpdateJobSpec(schema.BaseModel):
    """
    Configuration for the job that verifies a new image.
    """

    disabled: bool = Field(
        False,
        description="Indicates whether new images are rolled out without verification.",
    )
    extra_labels: schema.Dict[str, str] = Field(
        default_factory=dict, description="Labels to add to the update job pod."
    )
    extra_annotations: schema.Dict[str, str] = Field(
        default_factory=dict, description="Annotations to add to the update job pod."
    )


class Patch(schema.BaseModel):
    """
    A JSON patch to apply to a generated resource.
    """

    disable: bool = Field(False, description="Indicates whether the patch is disabled.")
    patch: schema.Optional[str] = Field(
        None, description="The JSON patch (RFC 6902) document to apply."
    )


class ResourcePatch(schema.BaseModel):
    """
    Patches for the resources generated for an installation.
    """

    service: schema.Optional[Patch] = Field(
        None, description="The patch for the service."
    )
    deployment: schema.Optional[Patch] = Field(
        None, description="The patch for the deployment."
    )


class MattermostSpec(schema.BaseModel):
    """
    The spec for a Mattermost installation.
    """

    image: schema.constr(min_length=1) = Field(
        DEFAULT_IMAGE, description="The image to use for the application."
    )
    version: schema.constr(min_length=1) = Field(
        DEFAULT_VERSION, description="The version (tag or digest) of the image."
    )
    replicas: schema.Optional[conint(ge=0)] = Field(
        None, description="The number of application replicas. Defaults to 1."
    )
    mattermost_env: t.List[schema.Dict[str, schema.Any]] = Field(
        default_factory=list,
        description="Environment variables for the application container.",
    )
    license_secret: schema.Optional[str] = Field(
        None, description="The secret containing the license."
    )
    ingress: schema.Optional[IngressSpec] = Field(
        None, description="The ingress configuration."
    )
    use_service_load_balancer: bool = Field(
        False,
        description="Indicates whether to expose the application using a load balancer service.",
    )
    service_annotations: schema.Dict[str, str] = Field(
        default_factory=dict, description="Annotations for the load balancer service."
    )
    resource_labels: schema.Dict[str, str] = Field(
        default_factory=dict, description="Labels to add to the generated resources."
    )
    image_pull_policy: schema.Optional[str] = Field(
        None, description="The image pull policy for the application."
    )
    image_pull_secrets: t.List[schema.Dict[str, str]] = Field(
        default_factory=list, description="The image pull secrets for the application."
    )
    scheduling: SchedulingSpec = Field(
        default_factory=SchedulingSpec, description="Scheduling configuration."
    )
    volumes: t.List[schema.Dict[str, schema.Any]] = Field(
        default_factory=list,
        description="Additional volumes for the application pods.",
    )
    volume_mounts: t.List[schema.Dict[str, schema.Any]] = Field(
        default_factory=list,
        description="Additional volume mounts for the application container.",
    )
    probes: ProbesSpec = Field(
        default_factory=ProbesSpec,
        description="Overrides for the probes of the application container.",
    )
    database: DatabaseSpec = Field(
        default_factory=DatabaseSpec, description="The database configuration."
    )
    file_store: FileStoreSpec = Field(
        default_factory=FileStoreSpec, description="The file store configuration."
    )
    update_job: UpdateJobSpec = Field(
        default_factory=UpdateJobSpec, description="Configuration for the update job."
    )
    resource_patch: schema.Optional[ResourcePatch] = Field(
        None,
        description=(
            "JSON patches for the generated resources. "
            "Patches that fail to apply are reported in the status."
        ),
    )


class RunningState(str, schema.Enum):
    """
    The running state of an installation.
    """

    #: Indicates that the installation is being updated
    RECONCILING = "reconciling"
    #: Indicates that the installation can serve traffic but is not fully rolled out
    READY = "ready"
    #: Indicates that the installation is fully rolled out
    STABLE = "stable"


class PatchStatus(schema.BaseModel):
    """
    The status of a resource patch.
    """

    applied: bool = Field(False, description="Indicates whether the patch was applied.")
    error: schema.Optional[str] = Field(
        None, description="The error produced when applying the patch."
    )


class ResourcePatchStatus(schema.BaseModel):
    """
    The status of the resource patches.
    """

    service_patch: schema.Optional[PatchStatus] = Field(
        None, description="The status of the service patch."
    )
    deployment_patch: schema.Optional[PatchStatus] = Field(
        None, description="The status of the deployment patch."
    )


class MattermostStatus(schema.BaseModel, extra="allow"):
    """
    The status of a Mattermost installation.
    """

    state: schema.Optional[RunningState] = Field(
        None, description="The running state of the installation."
    )
    version: schema.Optional[str] = Field(
        None, description="The version running in the installation."
    )
    image: schema.Optional[str] = Field(
        None, description="The image running in the installation."
    )
    endpoint: str = Field(
        ENDPOINT_NOT_AVAILABLE, description="The endpoint for the installation."
    )
    replicas: int = Field(0, description="The number of pods for the installation.")
    updated_replicas: int = Field(
        0, description="The number of pods running the desired image."
    )
    observed_generation: int = Field(
        0, description="The last generation of the installation that was acted on."
    )
    error: schema.Optional[str] = Field(
        None, description="The last error observed while reconciling."
    )
    resource_patch: schema.Optional[ResourcePatchStatus] = Field(
        None, description="The status of the resource patches."
    )


class Mattermost(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "State",
            "type": "string",
            "jsonPath": ".status.state",
        },
        {
            "name": "Image",
            "type": "string",
            "jsonPath": ".status.image",
        },
        {
            "name": "Version",
            "type": "string",
            "jsonPath": ".status.version",
        },
        {
            "name": "Endpoint",
            "type": "string",
            "jsonPath": ".status.endpoint",
        },
    ],
):
    """
    A Mattermost installation.
    """

    spec: MattermostSpec = Field(default_factory=MattermostSpec)
    status: MattermostStatus = Field(default_factory=MattermostStatus)
