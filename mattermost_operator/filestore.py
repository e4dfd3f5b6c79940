import logging
import secrets

from . import mattermost
from .errors import ConfigurationError
from .models import v1beta1 as api
from .resources import ResourceManager, decode_secret_data, owner_reference


LOGGER = logging.getLogger(__name__)


ACCESS_KEY = "accesskey"
SECRET_KEY = "secretkey"


def s3_env_vars(secret_name, bucket, url, use_ssl):
    env = [{"name": "MM_FILESETTINGS_DRIVERNAME", "value": "amazons3"}]
    if secret_name:
        env.extend(
            [
                {
                    "name": "MM_FILESETTINGS_AMAZONS3ACCESSKEYID",
                    "valueFrom": mattermost.env_from_secret(secret_name, ACCESS_KEY),
                },
                {
                    "name": "MM_FILESETTINGS_AMAZONS3SECRETACCESSKEY",
                    "valueFrom": mattermost.env_from_secret(secret_name, SECRET_KEY),
                },
            ]
        )
    env.extend(
        [
            {"name": "MM_FILESETTINGS_AMAZONS3BUCKET", "value": bucket},
            {"name": "MM_FILESETTINGS_AMAZONS3ENDPOINT", "value": url},
            {"name": "MM_FILESETTINGS_AMAZONS3SSL", "value": str(use_ssl).lower()},
        ]
    )
    return env


class FileStoreConfig:
    """
    Base class for file store configurations.
    """

    def env_vars(self, instance: api.Mattermost):
        return []

    def init_containers(self, instance: api.Mattermost):
        return []

    def volumes(self, instance: api.Mattermost):
        """
        Returns a tuple of (volumes, volume mounts) for the file store.
        """
        return [], []


class ExternalFileStoreConfig(FileStoreConfig):
    """
    Configuration for an S3-compatible file store that is managed outside of the
    operator.
    """

    def __init__(self, bucket, url, secret_name=None):
        self.bucket = bucket
        self.url = url
        self.secret_name = secret_name

    def env_vars(self, instance):
        return s3_env_vars(self.secret_name, self.bucket, self.url, True)


class LocalFileStoreConfig(FileStoreConfig):
    """
    Configuration for a file store that uses a persistent volume claim.
    """

    def env_vars(self, instance):
        return [
            {"name": "MM_FILESETTINGS_DRIVERNAME", "value": "local"},
            {"name": "MM_FILESETTINGS_DIRECTORY", "value": mattermost.LOCAL_FILE_PATH},
        ]

    def volumes(self, instance):
        volumes = [
            {
                "name": mattermost.FILE_STORE_VOLUME_NAME,
                "persistentVolumeClaim": {"claimName": instance.metadata.name},
            },
        ]
        volume_mounts = [
            {
                "name": mattermost.FILE_STORE_VOLUME_NAME,
                "mountPath": mattermost.LOCAL_FILE_PATH,
            },
        ]
        return volumes, volume_mounts


class MinioFileStoreConfig(FileStoreConfig):
    """
    Configuration for a file store provisioned by the MinIO operator.
    """

    def __init__(self, secret_name, url):
        self.secret_name = secret_name
        self.url = url

    def env_vars(self, instance):
        return s3_env_vars(self.secret_name, instance.metadata.name, self.url, False)

    def init_containers(self, instance):
        credentials = [
            {
                "name": ACCESS_KEY,
                "valueFrom": mattermost.env_from_secret(self.secret_name, ACCESS_KEY),
            },
            {
                "name": SECRET_KEY,
                "valueFrom": mattermost.env_from_secret(self.secret_name, SECRET_KEY),
            },
        ]
        return [
            {
                "name": "create-minio-bucket",
                "image": "minio/mc:latest",
                "imagePullPolicy": "IfNotPresent",
                "env": credentials,
                "command": [
                    "/bin/sh",
                    "-c",
                    (
                        f"mc config host add localminio http://{self.url} "
                        "$(accesskey) $(secretkey) && "
                        f"mc mb localminio/{instance.metadata.name} -q -p"
                    ),
                ],
            },
            {
                "name": "init-check-minio",
                "image": "appropriate/curl:latest",
                "imagePullPolicy": "IfNotPresent",
                "command": [
                    "sh",
                    "-c",
                    (
                        f"until curl --max-time 5 http://{self.url}/minio/health/ready; "
                        "do echo waiting for minio; sleep 5; done;"
                    ),
                ],
            },
        ]


def local_pvc(instance: api.Mattermost, storage_size, access_modes):
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": instance.metadata.name,
            "namespace": instance.metadata.namespace,
            "labels": mattermost.labels(instance),
            "ownerReferences": [owner_reference(instance)],
        },
        "spec": {
            "accessModes": access_modes,
            "resources": {"requests": {"storage": storage_size}},
        },
    }


def minio_name(instance: api.Mattermost):
    return f"{instance.metadata.name}-minio"


def minio_instance(instance: api.Mattermost, spec: api.OperatorManagedMinio):
    """
    Returns the MinIO instance for an installation.
    """
    name = minio_name(instance)
    return {
        "apiVersion": "miniocontroller.min.io/v1beta1",
        "kind": "MinIOInstance",
        "metadata": {
            "name": name,
            "namespace": instance.metadata.namespace,
            "labels": mattermost.resource_labels(instance.metadata.name),
            "ownerReferences": [owner_reference(instance)],
        },
        "spec": {
            "replicas": spec.replicas,
            "mountPath": "/export",
            "credsSecret": {"name": name},
            "volumeClaimTemplate": {
                "metadata": {"name": name},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": spec.storage_size}},
                },
            },
        },
    }


async def check_file_store(resources: ResourceManager, instance: api.Mattermost):
    """
    Checks the file store for an installation and returns the file store configuration.
    """
    file_store = instance.spec.file_store
    if file_store.external:
        return await check_external(resources, instance, file_store.external)
    elif file_store.local and file_store.local.enabled:
        return await check_local(resources, instance, file_store.local)
    else:
        spec = file_store.operator_managed or api.OperatorManagedMinio()
        return await check_minio(resources, instance, spec)


async def check_external(resources, instance, spec: api.ExternalFileStore):
    if not spec.secret:
        return ExternalFileStoreConfig(spec.bucket, spec.url)
    secret = await resources.fetch(
        "v1", "Secret", spec.secret, instance.metadata.namespace
    )
    if secret is None:
        raise ConfigurationError(f"external filestore secret {spec.secret} does not exist")
    data = decode_secret_data(secret)
    for key in (ACCESS_KEY, SECRET_KEY):
        if key not in data:
            raise ConfigurationError(
                f"external filestore secret {spec.secret} does not have a '{key}' value"
            )
    return ExternalFileStoreConfig(spec.bucket, spec.url, spec.secret)


async def check_local(resources, instance, spec: api.LocalFileStore):
    current = await resources.fetch(
        "v1", "PersistentVolumeClaim", instance.metadata.name, instance.metadata.namespace
    )
    if current is None:
        desired = local_pvc(instance, spec.storage_size, ["ReadWriteMany"])
        await resources.create(instance, desired)
    else:
        # Access modes cannot be changed once the claim exists
        access_modes = current.get("spec", {}).get("accessModes") or ["ReadWriteMany"]
        desired = local_pvc(instance, spec.storage_size, list(access_modes))
        await resources.update(current, desired)
    return LocalFileStoreConfig()


async def check_minio(resources, instance, spec: api.OperatorManagedMinio):
    name = minio_name(instance)
    desired_secret = mattermost.secret(
        instance,
        name,
        {ACCESS_KEY: secrets.token_hex(8), SECRET_KEY: secrets.token_hex(14)},
    )
    # The generated keys are only used if the secret does not exist
    await resources.create_if_not_exists(instance, desired_secret)
    await resources.ensure(instance, minio_instance(instance, spec))
    service_name = f"{name}-hl-svc"
    namespace = instance.metadata.namespace
    service = await resources.fetch("v1", "Service", service_name, namespace)
    if service is None:
        raise ConfigurationError(f"minio service {service_name} does not exist yet")
    port = service["spec"]["ports"][0]["port"]
    url = f"{service_name}.{namespace}.svc.cluster.local:{port}"
    return MinioFileStoreConfig(name, url)
