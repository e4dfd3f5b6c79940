import jsonpatch
import yaml

from .errors import PatchError
from .resources import encode


def apply_patch(patch, obj):
    """
    Applies the given resource patch to the given object.

    Returns a tuple of (object, applied). When the patch is not set, is disabled or is
    empty, the object is returned unchanged.
    """
    if not patch or patch.disable or not (patch.patch or "").strip():
        return obj, False
    # The patch is YAML, which is a superset of JSON
    try:
        operations = yaml.safe_load(patch.patch)
    except yaml.YAMLError as exc:
        raise PatchError(f"failed to parse patch: {exc}") from exc
    if not isinstance(operations, list):
        raise PatchError("patch must be a list of JSON patch operations")
    original = encode(obj)
    try:
        patched = jsonpatch.JsonPatch(operations).apply(original)
    except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as exc:
        raise PatchError(f"failed to apply patch: {exc}") from exc
    except (TypeError, KeyError, AttributeError) as exc:
        raise PatchError(f"invalid patch operation: {exc}") from exc
    if not isinstance(patched, dict):
        raise PatchError("patched object is not an object")
    for key in ("apiVersion", "kind"):
        if patched.get(key) != original.get(key):
            raise PatchError(f"patch must not change {key}")
    return patched, True
