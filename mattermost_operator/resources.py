import base64
import copy
import json
import logging

import easykube
import jsonpatch

from pydantic.json import pydantic_encoder

from .config import settings


LOGGER = logging.getLogger(__name__)


_MISSING = object()


def encode(obj):
    """
    Returns the given object as it would be sent on the wire, i.e. after a round-trip
    through the JSON encoder used by the Kubernetes client.
    """
    return json.loads(json.dumps(obj, default=pydantic_encoder))


def owner_reference(owner):
    """
    Returns a controller owner reference for the given installation.
    """
    return {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.metadata.name,
        "uid": owner.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def decode_secret_data(secret):
    """
    Returns the data from the given secret with the values base64-decoded.
    """
    return {
        key: base64.b64decode(value).decode()
        for key, value in (secret.get("data") or {}).items()
    }


def last_applied(obj, annotation=None):
    """
    Returns the last applied configuration for the given object, or an empty dict if
    there is no last applied configuration.
    """
    annotation = annotation or settings.last_applied_annotation
    annotations = obj.get("metadata", {}).get("annotations") or {}
    data = annotations.get(annotation)
    return json.loads(data) if data else {}


def _strip(obj, annotation):
    # Remove the fields that are managed by the server or by this module
    obj = copy.deepcopy(obj)
    obj.pop("status", None)
    metadata = obj.get("metadata", {})
    metadata.pop("resourceVersion", None)
    annotations = metadata.get("annotations")
    if annotations:
        annotations.pop(annotation, None)
        if not annotations:
            metadata.pop("annotations")
    return obj


def set_last_applied(obj, annotation=None):
    """
    Stores the given object in its own last applied annotation.
    """
    annotation = annotation or settings.last_applied_annotation
    data = json.dumps(_strip(encode(obj), annotation), sort_keys=True)
    obj.setdefault("metadata", {}).setdefault("annotations", {})[annotation] = data
    return obj


def _already_applied(op, live):
    # Values added to the desired object that the live object already has, e.g.
    # fields that were assigned by the server and copied into the desired object
    if op["op"] not in {"add", "replace"}:
        return False
    value = jsonpatch.JsonPointer(op["path"]).resolve(live, _MISSING)
    return value == op["value"]


def compute_patch(current, desired, annotation=None):
    """
    Computes the patch between the last applied configuration of the current object
    and the desired object.

    Changes that the live object already reflects are dropped, so that values the
    server assigns do not cause an update. Values that the server rewrites into a
    canonical form, e.g. resource quantities, are only compared as applied.

    Returns a list of JSON patch operations, which is empty if no update is required.
    """
    annotation = annotation or settings.last_applied_annotation
    current = encode(current)
    desired = _strip(encode(desired), annotation)
    patch = jsonpatch.make_patch(last_applied(current, annotation), desired).patch
    live = _strip(current, annotation)
    return [op for op in patch if not _already_applied(op, live)]


def copy_service_auto_assigned_fields(desired, current):
    """
    Copies the fields that are assigned by the server for a service into the desired
    service when the desired service leaves them empty.
    """
    desired_spec = desired.setdefault("spec", {})
    current_spec = current.get("spec", {})
    if not desired_spec.get("clusterIP") and current_spec.get("clusterIP"):
        desired_spec["clusterIP"] = current_spec["clusterIP"]
    if not desired_spec.get("clusterIPs") and current_spec.get("clusterIPs"):
        desired_spec["clusterIPs"] = list(current_spec["clusterIPs"])
    if (
        desired_spec.get("type") == "LoadBalancer"
        and current_spec.get("type") == "LoadBalancer"
        and not desired_spec.get("loadBalancerIP")
        and current_spec.get("loadBalancerIP")
    ):
        desired_spec["loadBalancerIP"] = current_spec["loadBalancerIP"]
    return desired


class ResourceManager:
    """
    Creates and updates the child resources of installations.
    """

    def __init__(self, ekclient, last_applied_annotation=None):
        self.ekclient = ekclient
        self.annotation = last_applied_annotation or settings.last_applied_annotation

    async def resource(self, api_version, kind):
        """
        Returns an easykube resource for the given API version and kind.
        """
        return await self.ekclient.api(api_version).resource(kind)

    async def fetch(self, api_version, kind, name, namespace):
        """
        Returns the specified object, or None if it does not exist.
        """
        resource = await self.resource(api_version, kind)
        try:
            return await resource.fetch(name, namespace=namespace)
        except easykube.ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise

    async def create(self, owner, desired):
        """
        Creates the desired object as a child of the given owner.
        """
        desired = copy.deepcopy(desired)
        metadata = desired.setdefault("metadata", {})
        owner_references = metadata.setdefault("ownerReferences", [])
        if not any(ref.get("uid") == owner.metadata.uid for ref in owner_references):
            owner_references.append(owner_reference(owner))
        set_last_applied(desired, self.annotation)
        LOGGER.info(
            "creating %s %s/%s",
            desired["kind"],
            metadata.get("namespace"),
            metadata["name"],
        )
        resource = await self.resource(desired["apiVersion"], desired["kind"])
        return await resource.create(desired, namespace=metadata.get("namespace"))

    async def create_if_not_exists(self, owner, desired):
        """
        Creates the desired object if it does not exist.

        Returns the current object if it exists, or None if the object was created.
        """
        metadata = desired["metadata"]
        current = await self.fetch(
            desired["apiVersion"],
            desired["kind"],
            metadata["name"],
            metadata.get("namespace"),
        )
        if current is None:
            await self.create(owner, desired)
        return current

    async def update(self, current, desired):
        """
        Updates the current object to match the desired object if they differ.

        Returns True if an update was made, False otherwise.
        """
        patch = compute_patch(current, desired, self.annotation)
        if not patch:
            return False
        metadata = desired["metadata"]
        LOGGER.info(
            "updating %s %s/%s - %s",
            desired["kind"],
            metadata.get("namespace"),
            metadata["name"],
            json.dumps(patch),
        )
        desired = set_last_applied(copy.deepcopy(desired), self.annotation)
        # The resource version must be set after the last applied annotation
        # so that it does not appear in the annotation
        desired["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
        resource = await self.resource(desired["apiVersion"], desired["kind"])
        await resource.replace(
            metadata["name"], desired, namespace=metadata.get("namespace")
        )
        return True

    async def ensure(self, owner, desired):
        """
        Creates the desired object if it does not exist or updates it if it does.
        """
        current = await self.create_if_not_exists(owner, desired)
        if current is not None:
            await self.update(current, desired)

    async def delete(self, api_version, kind, name, namespace):
        """
        Deletes the specified object with background propagation.

        Returns True if the object was deleted, False if it did not exist.
        """
        resource = await self.resource(api_version, kind)
        try:
            await resource.delete(
                name, propagation_policy="Background", namespace=namespace
            )
        except easykube.ApiError as exc:
            if exc.status_code == 404:
                return False
            else:
                raise
        LOGGER.info("deleted %s %s/%s", kind, namespace, name)
        return True
