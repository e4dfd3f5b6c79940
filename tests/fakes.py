import copy
import itertools
import json
import uuid

import easykube
import httpx

from pydantic.json import pydantic_encoder


#: Map of resource names to kinds for the resources used by the operator
KINDS = {
    "secrets": "Secret",
    "services": "Service",
    "serviceaccounts": "ServiceAccount",
    "roles": "Role",
    "rolebindings": "RoleBinding",
    "ingresses": "Ingress",
    "deployments": "Deployment",
    "replicasets": "ReplicaSet",
    "pods": "Pod",
    "jobs": "Job",
    "persistentvolumeclaims": "PersistentVolumeClaim",
    "mysqlclusters": "MysqlCluster",
    "minioinstances": "MinIOInstance",
    "mattermosts": "Mattermost",
}

#: Kinds whose generation is incremented when the spec changes
GENERATION_KINDS = {"Deployment", "Mattermost"}


def api_error(status_code, message="error"):
    """
    Returns an easykube API error with the given status code.
    """
    request = httpx.Request("GET", "https://kubernetes.default.svc")
    response = httpx.Response(status_code, json={"message": message}, request=request)
    return easykube.ApiError(
        httpx.HTTPStatusError(message, request=request, response=response)
    )


class FakeResource:
    def __init__(self, kube, api_version, kind, subresource=None):
        self.kube = kube
        self.api_version = api_version
        self.kind = kind
        self.subresource = subresource

    def _key(self, name, namespace):
        return (self.api_version, self.kind, namespace, name)

    async def fetch(self, id, namespace=None):  # noqa: A002
        self.kube.reads.append(("fetch", self.kind, namespace, id))
        key = self._key(id, namespace)
        if key in self.kube.errors:
            raise self.kube.errors[key]
        try:
            return copy.deepcopy(self.kube.objects[key])
        except KeyError:
            raise api_error(404, f"{self.kind} {id} not found")

    async def create(self, data, namespace=None):
        data = self.kube.encode(data)
        namespace = namespace or data["metadata"].get("namespace")
        key = self._key(data["metadata"]["name"], namespace)
        if key in self.kube.objects:
            raise api_error(409, "already exists")
        self.kube.writes.append(("create", self.kind, namespace, key[3]))
        data.setdefault("apiVersion", self.api_version)
        data.setdefault("kind", self.kind)
        metadata = data["metadata"]
        metadata["namespace"] = namespace
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = self.kube.next_version()
        if self.kind in GENERATION_KINDS:
            metadata["generation"] = 1
        self.kube.objects[key] = data
        return copy.deepcopy(data)

    async def replace(self, id, data, namespace=None):  # noqa: A002
        data = self.kube.encode(data)
        key = self._key(id, namespace)
        if key not in self.kube.objects:
            raise api_error(404, f"{self.kind} {id} not found")
        existing = self.kube.objects[key]
        version = data.get("metadata", {}).get("resourceVersion")
        if version and version != existing["metadata"]["resourceVersion"]:
            raise api_error(409, "the object has been modified")
        if self.subresource == "status":
            self.kube.writes.append(("status", self.kind, namespace, id))
            updated = copy.deepcopy(existing)
            updated["status"] = data.get("status", {})
        else:
            self.kube.writes.append(("replace", self.kind, namespace, id))
            updated = data
            metadata = updated["metadata"]
            for field in ("uid", "namespace", "generation"):
                if field in existing["metadata"]:
                    metadata.setdefault(field, existing["metadata"][field])
            if "status" in existing:
                updated["status"] = existing["status"]
            if (
                self.kind in GENERATION_KINDS
                and updated.get("spec") != existing.get("spec")
            ):
                metadata["generation"] = existing["metadata"].get("generation", 0) + 1
        updated["metadata"]["resourceVersion"] = self.kube.next_version()
        self.kube.objects[key] = updated
        return copy.deepcopy(updated)

    async def delete(self, id, propagation_policy=None, namespace=None):  # noqa: A002
        key = self._key(id, namespace)
        if key not in self.kube.objects:
            raise api_error(404, f"{self.kind} {id} not found")
        self.kube.writes.append(("delete", self.kind, namespace, id))
        self.kube.deletes.append((self.kind, namespace, id, propagation_policy))
        del self.kube.objects[key]

    async def list(self, labels=None, namespace=None, all_namespaces=False):
        for key, obj in list(self.kube.objects.items()):
            api_version, kind, obj_namespace, _ = key
            if api_version != self.api_version or kind != self.kind:
                continue
            if not all_namespaces and namespace and obj_namespace != namespace:
                continue
            obj_labels = obj.get("metadata", {}).get("labels") or {}
            if any(obj_labels.get(k) != v for k, v in (labels or {}).items()):
                continue
            yield copy.deepcopy(obj)


class FakeApi:
    def __init__(self, kube, api_version):
        self.kube = kube
        self.api_version = api_version

    async def resource(self, name):
        name, _, subresource = name.partition("/")
        kind = KINDS.get(name, name)
        return FakeResource(self.kube, self.api_version, kind, subresource or None)


class FakeKube:
    """
    In-memory stand-in for the easykube async client.
    """

    def __init__(self):
        self.objects = {}
        #: Errors to raise when fetching specific objects
        self.errors = {}
        self.reads = []
        self.writes = []
        self.deletes = []
        self._versions = itertools.count(1)

    def next_version(self):
        return str(next(self._versions))

    def encode(self, obj):
        return json.loads(json.dumps(obj, default=pydantic_encoder))

    def api(self, api_version):
        return FakeApi(self, api_version)

    async def api_preferred_version(self, api_group):
        version = next(
            key[0]
            for key in self.objects
            if key[0].startswith(f"{api_group}/")
        )
        return FakeApi(self, version)

    def add(self, obj):
        """
        Adds the given object directly, returning the stored object.
        """
        obj = self.encode(obj)
        metadata = obj["metadata"]
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata.setdefault("resourceVersion", self.next_version())
        if obj["kind"] in GENERATION_KINDS:
            metadata.setdefault("generation", 1)
        key = (obj["apiVersion"], obj["kind"], metadata.get("namespace"), metadata["name"])
        self.objects[key] = obj
        return obj

    def get(self, api_version, kind, name, namespace="default"):
        return self.objects.get((api_version, kind, namespace, name))

    def set_status(self, api_version, kind, name, status, namespace="default"):
        """
        Sets the status of an object as if a controller had updated it.
        """
        obj = self.objects[(api_version, kind, namespace, name)]
        obj["status"] = status
        obj["metadata"]["resourceVersion"] = self.next_version()
        return obj

    def writes_for(self, kind):
        return [write for write in self.writes if write[1] == kind]
