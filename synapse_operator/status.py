import logging

from .models.v1alpha1 import Synapse, SynapseState
from .utils import ekresource_for_model, merge_patch

logger = logging.getLogger(__name__)


def set_failed(instance, reason):
    """
    Marks the Synapse as failed with the given reason.
    """
    instance.status.state = SynapseState.FAILED
    instance.status.reason = reason


def set_running(instance):
    """
    Marks the Synapse as running and clears any previous failure reason.

    Returns true if the state changed, false otherwise.
    """
    if instance.status.state == SynapseState.RUNNING:
        return False
    instance.status.state = SynapseState.RUNNING
    instance.status.reason = ""
    return True


async def project_status(client, instance, observed):
    """
    Patches the status subresource of the Synapse so that it matches the working
    copy of the status held by the given instance.

    The observed status is the raw status from the copy of the Synapse that the
    working copy was derived from, and the patch contains only the fields that differ
    from it. The patch carries the resource version of that copy, so if the Synapse
    was written since it was read the patch fails with a conflict rather than
    overwriting the other write. Fields that the working copy does not know about
    are left alone.

    Returns the status as stored after the patch, which is the observed status for
    the next projection. If nothing changed, no patch is made and the observed
    status is returned as-is.
    """
    name = instance.metadata.name
    namespace = instance.metadata.namespace
    patch = merge_patch(
        observed,
        instance.status.model_dump(mode = "json", by_alias = True),
        prune = False
    )
    if not patch:
        return observed
    logger.debug("patching status of synapse %s/%s: %s", namespace, name, patch)
    ekresource = await ekresource_for_model(client, Synapse, "status")
    data = await ekresource.patch(
        name,
        {
            # Include the resource version for optimistic concurrency
            "metadata": { "resourceVersion": instance.metadata.resource_version },
            "status": patch,
        },
        namespace = namespace
    )
    # Store the new resource version
    instance.metadata.resource_version = data["metadata"]["resourceVersion"]
    return data.get("status") or {}
