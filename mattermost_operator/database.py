import logging
import secrets

from . import mattermost
from .errors import ConfigurationError
from .models import v1beta1 as api
from .resources import ResourceManager, decode_secret_data, owner_reference


LOGGER = logging.getLogger(__name__)


MYSQL_DATABASE = "mysql"
POSTGRES_DATABASE = "postgres"


def database_type(connection_string):
    """
    Returns the type of database for the given connection string.
    """
    if connection_string.startswith("mysql"):
        return MYSQL_DATABASE
    elif connection_string.startswith("postgres"):
        return POSTGRES_DATABASE
    else:
        return "unknown"


class DatabaseConfig:
    """
    Base class for database configurations.
    """

    def env_vars(self, instance: api.Mattermost):
        """
        Returns the env vars that configure the application to use the database.
        """
        return []

    def init_containers(self, instance: api.Mattermost):
        """
        Returns the init containers that wait for the database to be available.
        """
        return []


class ExternalDatabaseConfig(DatabaseConfig):
    """
    Configuration for a database that is managed outside of the operator.
    """

    def __init__(self, secret_name, db_type, has_reader_endpoints, has_check_url):
        self.secret_name = secret_name
        self.db_type = db_type
        self.has_reader_endpoints = has_reader_endpoints
        self.has_check_url = has_check_url

    @classmethod
    def from_secret(cls, secret):
        name = secret["metadata"]["name"]
        data = decode_secret_data(secret)
        if "DB_CONNECTION_STRING" not in data:
            raise ConfigurationError(
                f"external database secret {name} does not contain "
                "DB_CONNECTION_STRING key"
            )
        if not data["DB_CONNECTION_STRING"]:
            raise ConfigurationError("external database connection string is empty")
        return cls(
            name,
            database_type(data["DB_CONNECTION_STRING"]),
            "MM_SQLSETTINGS_DATASOURCEREPLICAS" in data,
            "DB_CONNECTION_CHECK_URL" in data,
        )

    def env_vars(self, instance):
        env = [
            {
                "name": "MM_CONFIG",
                "valueFrom": mattermost.env_from_secret(
                    self.secret_name, "DB_CONNECTION_STRING"
                ),
            },
        ]
        if self.has_reader_endpoints:
            env.append(
                {
                    "name": "MM_SQLSETTINGS_DATASOURCEREPLICAS",
                    "valueFrom": mattermost.env_from_secret(
                        self.secret_name, "MM_SQLSETTINGS_DATASOURCEREPLICAS"
                    ),
                }
            )
        return env

    def init_containers(self, instance):
        if instance.spec.database.disable_readiness_check or not self.has_check_url:
            return []
        env = [
            {
                "name": "DB_CONNECTION_CHECK_URL",
                "valueFrom": mattermost.env_from_secret(
                    self.secret_name, "DB_CONNECTION_CHECK_URL"
                ),
            },
        ]
        if self.db_type == MYSQL_DATABASE:
            image = "appropriate/curl:latest"
            check = "curl --max-time 5 $DB_CONNECTION_CHECK_URL"
        elif self.db_type == POSTGRES_DATABASE:
            image = "postgres:13"
            check = "pg_isready -h $DB_CONNECTION_CHECK_URL"
        else:
            return []
        return [
            {
                "name": "init-check-database",
                "image": image,
                "imagePullPolicy": "IfNotPresent",
                "env": env,
                "command": [
                    "sh",
                    "-c",
                    f"until {check}; do echo waiting for database; sleep 5; done;",
                ],
            },
        ]


class MySQLDatabaseConfig(DatabaseConfig):
    """
    Configuration for a MySQL database provisioned by the MySQL operator.
    """

    def __init__(self, secret_name, database_name):
        self.secret_name = secret_name
        self.database_name = database_name

    @classmethod
    def from_secret(cls, secret):
        data = decode_secret_data(secret)
        for key, label in [
            ("ROOT_PASSWORD", "root password"),
            ("USER", "username"),
            ("PASSWORD", "password"),
            ("DATABASE", "name"),
        ]:
            if not data.get(key):
                raise ConfigurationError(f"database {label} shouldn't be empty")
        return cls(secret["metadata"]["name"], data["DATABASE"])

    def env_vars(self, instance):
        mysql_name = cluster_name(instance)
        namespace = instance.metadata.namespace
        credentials = "$(MYSQL_USERNAME):$(MYSQL_PASSWORD)"
        return [
            {
                "name": "MYSQL_USERNAME",
                "valueFrom": mattermost.env_from_secret(self.secret_name, "USER"),
            },
            {
                "name": "MYSQL_PASSWORD",
                "valueFrom": mattermost.env_from_secret(self.secret_name, "PASSWORD"),
            },
            {
                "name": "MM_SQLSETTINGS_DATASOURCEREPLICAS",
                "value": (
                    f"{credentials}@tcp({mysql_name}-mysql.{namespace}:3306)/"
                    f"{self.database_name}?readTimeout=30s&writeTimeout=30s"
                ),
            },
            {
                "name": "MM_CONFIG",
                "value": (
                    f"mysql://{credentials}"
                    f"@tcp({mysql_name}-mysql-master.{namespace}:3306)/"
                    f"{self.database_name}"
                    "?charset=utf8mb4,utf8&readTimeout=30s&writeTimeout=30s"
                ),
            },
        ]

    def init_containers(self, instance):
        if instance.spec.database.disable_readiness_check:
            return []
        namespace = instance.metadata.namespace
        url = f"http://{cluster_name(instance)}-mysql-master.{namespace}:3306"
        return [
            {
                "name": "init-check-operator-mysql",
                "image": "appropriate/curl:latest",
                "imagePullPolicy": "IfNotPresent",
                "command": [
                    "sh",
                    "-c",
                    (
                        f"until curl --max-time 5 {url}; "
                        "do echo waiting for mysql; sleep 5; done;"
                    ),
                ],
            },
        ]


def cluster_name(instance: api.Mattermost):
    """
    Returns the name of the MySQL cluster for an installation.
    """
    return mattermost.hash_with_prefix("db", instance.metadata.name)


def secret_name(instance: api.Mattermost):
    """
    Returns the name of the secret containing the MySQL credentials for an installation.
    """
    return f"{instance.metadata.name}-mysql-root-password"


def mysql_cluster(instance: api.Mattermost, spec: api.OperatorManagedDatabase):
    """
    Returns the MySQL cluster for an installation.
    """
    return {
        "apiVersion": "mysql.presslabs.org/v1alpha1",
        "kind": "MysqlCluster",
        "metadata": {
            "name": cluster_name(instance),
            "namespace": instance.metadata.namespace,
            "labels": mattermost.resource_labels(instance.metadata.name),
            "ownerReferences": [owner_reference(instance)],
        },
        "spec": {
            "mysqlVersion": "5.7",
            "replicas": spec.replicas,
            "secretName": secret_name(instance),
            "volumeSpec": {
                "persistentVolumeClaim": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": spec.storage_size}},
                },
            },
        },
    }


async def check_database(resources: ResourceManager, instance: api.Mattermost):
    """
    Checks the database for an installation and returns the database configuration.
    """
    external = instance.spec.database.external
    if external:
        secret = await resources.fetch(
            "v1", "Secret", external.secret, instance.metadata.namespace
        )
        if secret is None:
            raise ConfigurationError(
                f"external database secret {external.secret} does not exist"
            )
        return ExternalDatabaseConfig.from_secret(secret)
    spec = instance.spec.database.operator_managed or api.OperatorManagedDatabase()
    if spec.type == MYSQL_DATABASE:
        return await check_mysql(resources, instance, spec)
    elif spec.type == POSTGRES_DATABASE:
        raise ConfigurationError("database type 'postgres' not yet implemented")
    else:
        raise ConfigurationError(f"database of type '{spec.type}' is not supported")


async def check_mysql(resources: ResourceManager, instance, spec):
    await resources.ensure(instance, mysql_cluster(instance, spec))
    desired = mattermost.secret(
        instance,
        secret_name(instance),
        {
            "ROOT_PASSWORD": secrets.token_hex(8),
            "USER": "mmuser",
            "PASSWORD": secrets.token_hex(8),
            "DATABASE": "mattermost",
        },
    )
    # The generated credentials are only used if the secret does not exist
    secret = await resources.create_if_not_exists(instance, desired)
    return MySQLDatabaseConfig.from_secret(secret or desired)
