import pytest

from mattermost_operator.errors import PatchError
from mattermost_operator.models import v1beta1 as api
from mattermost_operator.patch import apply_patch


def service():
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "chat", "labels": {"app": "mattermost"}},
        "spec": {"type": "ClusterIP", "ports": [{"name": "app", "port": 8065}]},
    }


@pytest.mark.parametrize(
    "patch",
    [
        None,
        api.Patch(disable=True, patch='[{"op": "remove", "path": "/spec"}]'),
        api.Patch(patch=""),
        api.Patch(patch="   \n"),
    ],
)
def test_unset_disabled_or_empty_patch_is_not_applied(patch):
    obj = service()

    patched, applied = apply_patch(patch, obj)

    assert applied is False
    assert patched is obj


def test_json_patch_is_applied():
    obj = service()
    patch = api.Patch(
        patch=(
            '[{"op": "add", "path": "/metadata/labels/team", "value": "chat"},'
            ' {"op": "replace", "path": "/spec/ports/0/port", "value": 80}]'
        )
    )

    patched, applied = apply_patch(patch, obj)

    assert applied is True
    assert patched["metadata"]["labels"] == {"app": "mattermost", "team": "chat"}
    assert patched["spec"]["ports"][0]["port"] == 80
    # The original object is left alone
    assert obj["spec"]["ports"][0]["port"] == 8065


def test_yaml_patch_is_applied():
    patch = api.Patch(
        patch="\n".join(
            [
                "- op: add",
                "  path: /metadata/annotations",
                "  value:",
                "    example.com/owner: platform",
            ]
        )
    )

    patched, applied = apply_patch(patch, service())

    assert applied is True
    assert patched["metadata"]["annotations"] == {"example.com/owner": "platform"}


@pytest.mark.parametrize(
    "document",
    [
        # Not a valid document
        "[{",
        # Not a list of operations
        '{"op": "add", "path": "/metadata/labels/x", "value": "y"}',
        # Path does not exist
        '[{"op": "remove", "path": "/spec/selector"}]',
        # Unknown operation
        '[{"op": "frobnicate", "path": "/spec"}]',
        # Missing operation
        '[{"path": "/spec"}]',
        # Failed test
        '[{"op": "test", "path": "/spec/type", "value": "LoadBalancer"}]',
    ],
)
def test_invalid_patch_raises_patch_error(document):
    with pytest.raises(PatchError):
        apply_patch(api.Patch(patch=document), service())


def test_patch_must_not_change_kind():
    patch = api.Patch(patch='[{"op": "replace", "path": "/kind", "value": "Pod"}]')

    with pytest.raises(PatchError, match="kind"):
        apply_patch(patch, service())


def test_patch_must_produce_an_object():
    patch = api.Patch(patch='[{"op": "replace", "path": "", "value": [1, 2]}]')

    with pytest.raises(PatchError):
        apply_patch(patch, service())
