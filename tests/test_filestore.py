import pytest

from mattermost_operator import filestore
from mattermost_operator.errors import ConfigurationError
from mattermost_operator.resources import ResourceManager

from .conftest import NAMESPACE, make_installation, secret_body


def env_values(env):
    return {e["name"]: e.get("value", e.get("valueFrom")) for e in env}


def external_installation(secret=None):
    external = {"url": "s3.example.com", "bucket": "chat-files"}
    if secret:
        external["secret"] = secret
    return make_installation(spec={"fileStore": {"external": external}})


@pytest.mark.asyncio
async def test_external_file_store_without_secret(kube):
    instance = external_installation()

    config = await filestore.check_file_store(ResourceManager(kube), instance)

    env = env_values(config.env_vars(instance))
    assert env == {
        "MM_FILESETTINGS_DRIVERNAME": "amazons3",
        "MM_FILESETTINGS_AMAZONS3BUCKET": "chat-files",
        "MM_FILESETTINGS_AMAZONS3ENDPOINT": "s3.example.com",
        "MM_FILESETTINGS_AMAZONS3SSL": "true",
    }
    assert config.init_containers(instance) == []
    assert config.volumes(instance) == ([], [])


@pytest.mark.asyncio
async def test_external_file_store_with_secret(kube):
    instance = external_installation("s3-credentials")
    kube.add(secret_body("s3-credentials", {"accesskey": "ak", "secretkey": "sk"}))

    config = await filestore.check_file_store(ResourceManager(kube), instance)

    env = env_values(config.env_vars(instance))
    assert env["MM_FILESETTINGS_AMAZONS3ACCESSKEYID"] == {
        "secretKeyRef": {"name": "s3-credentials", "key": "accesskey"}
    }
    assert env["MM_FILESETTINGS_AMAZONS3SECRETACCESSKEY"] == {
        "secretKeyRef": {"name": "s3-credentials", "key": "secretkey"}
    }


@pytest.mark.asyncio
async def test_external_file_store_secret_must_have_keys(kube):
    instance = external_installation("s3-credentials")
    kube.add(secret_body("s3-credentials", {"accesskey": "ak"}))

    with pytest.raises(ConfigurationError) as excinfo:
        await filestore.check_file_store(ResourceManager(kube), instance)

    assert str(excinfo.value) == (
        "external filestore secret s3-credentials does not have a 'secretkey' value"
    )


@pytest.mark.asyncio
async def test_external_file_store_secret_must_exist(kube):
    instance = external_installation("s3-credentials")

    with pytest.raises(ConfigurationError, match="does not exist"):
        await filestore.check_file_store(ResourceManager(kube), instance)


@pytest.mark.asyncio
async def test_local_file_store_creates_claim(kube):
    instance = make_installation(
        spec={"fileStore": {"local": {"enabled": True, "storageSize": "10Gi"}}}
    )

    config = await filestore.check_file_store(ResourceManager(kube), instance)

    claim = kube.get("v1", "PersistentVolumeClaim", "chat")
    assert claim["spec"]["accessModes"] == ["ReadWriteMany"]
    assert claim["spec"]["resources"]["requests"]["storage"] == "10Gi"
    assert env_values(config.env_vars(instance)) == {
        "MM_FILESETTINGS_DRIVERNAME": "local",
        "MM_FILESETTINGS_DIRECTORY": "/mattermost/data",
    }
    volumes, mounts = config.volumes(instance)
    assert volumes == [
        {"name": "mattermost-data", "persistentVolumeClaim": {"claimName": "chat"}}
    ]
    assert mounts == [{"name": "mattermost-data", "mountPath": "/mattermost/data"}]


@pytest.mark.asyncio
async def test_local_file_store_keeps_existing_access_modes(kube):
    instance = make_installation(spec={"fileStore": {"local": {"enabled": True}}})
    resources = ResourceManager(kube)
    await resources.create(
        instance, filestore.local_pvc(instance, "50Gi", ["ReadWriteOnce"])
    )

    await filestore.check_file_store(resources, instance)

    claim = kube.get("v1", "PersistentVolumeClaim", "chat")
    assert claim["spec"]["accessModes"] == ["ReadWriteOnce"]
    assert kube.writes_for("PersistentVolumeClaim") == [
        ("create", "PersistentVolumeClaim", NAMESPACE, "chat")
    ]


@pytest.mark.asyncio
async def test_operator_managed_minio_waits_for_service(kube):
    instance = make_installation(spec={})

    with pytest.raises(ConfigurationError, match="chat-minio-hl-svc"):
        await filestore.check_file_store(ResourceManager(kube), instance)

    minio = kube.get("miniocontroller.min.io/v1beta1", "MinIOInstance", "chat-minio")
    assert minio["spec"]["credsSecret"] == {"name": "chat-minio"}
    assert minio["spec"]["mountPath"] == "/export"
    assert kube.get("v1", "Secret", "chat-minio") is not None


@pytest.mark.asyncio
async def test_operator_managed_minio(kube):
    instance = make_installation(spec={})
    kube.add(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "chat-minio-hl-svc", "namespace": NAMESPACE},
            "spec": {"ports": [{"port": 9000}]},
        }
    )

    config = await filestore.check_file_store(ResourceManager(kube), instance)

    url = "chat-minio-hl-svc.default.svc.cluster.local:9000"
    assert config.url == url
    env = env_values(config.env_vars(instance))
    assert env["MM_FILESETTINGS_AMAZONS3BUCKET"] == "chat"
    assert env["MM_FILESETTINGS_AMAZONS3ENDPOINT"] == url
    assert env["MM_FILESETTINGS_AMAZONS3SSL"] == "false"
    init_containers = config.init_containers(instance)
    assert [c["name"] for c in init_containers] == [
        "create-minio-bucket",
        "init-check-minio",
    ]
    assert f"http://{url}" in init_containers[0]["command"][2]
    assert "localminio/chat" in init_containers[0]["command"][2]
