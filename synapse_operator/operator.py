import asyncio
import functools
import logging
import sys

import kopf
import pydantic

from easykube import ApiError, Configuration
from kube_custom_resource import CustomResourceRegistry

from . import models
from .config import settings
from .models import v1alpha1 as api
from .reconcile import ReconcileError, SynapseReconciler, reconcile_synapse
from .resources import OWNER_LABEL

logger = logging.getLogger(__name__)


# Create an easykube client from the environment
from pydantic.json import pydantic_encoder
ekclient = (
    Configuration
        .from_environment(json_encoder = pydantic_encoder)
        .async_client(default_field_manager = settings.easykube_field_manager)
)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


#: The owned kinds whose events cause the owning synapse to be reconciled
OWNED_KINDS = [
    ("v1", "configmaps"),
    ("v1", "services"),
    ("v1", "persistentvolumeclaims"),
    ("v1", "serviceaccounts"),
    ("apps/v1", "deployments"),
    ("rbac.authorization.k8s.io/v1", "rolebindings"),
]


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.admission.server = kopf.WebhookServer(
        addr = "0.0.0.0",
        port = settings.webhook.port,
        host = settings.webhook.host,
        certfile = settings.webhook.certfile,
        pkeyfile = settings.webhook.keyfile
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    if settings.webhook.managed:
        kopf_settings.admission.managed = f"webhook.{settings.api_group}"
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up
    # If they are not, the kopf watches will not start properly so we exit and get restarted
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            logger.exception(
                "api for %s.%s not available - exiting",
                crd.plural_name,
                crd.api_group
            )
            sys.exit(1)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    await ekclient.aclose()


def model_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            try:
                return await func(**handler_kwargs)
            except ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


@model_handler(api.Synapse, kopf.on.validate, id = "validate-synapse")
async def validate_synapse(spec, operation, **kwargs):
    """
    Validates synapse objects.
    """
    if operation not in {"CREATE", "UPDATE"}:
        return
    try:
        _ = api.SynapseSpec.model_validate(spec)
    except pydantic.ValidationError as exc:
        raise kopf.AdmissionError(str(exc), code = 400)


@model_handler(api.Synapse, kopf.on.create, backoff = settings.requeue.error)
@model_handler(api.Synapse, kopf.on.update, field = "spec", backoff = settings.requeue.error)
async def on_synapse_changed(logger, name, namespace, **kwargs):
    """
    Executes when a synapse is created or the spec of an existing synapse is updated.
    """
    await reconcile_synapse(ekclient, name, namespace, logger)


@model_handler(api.Synapse, kopf.on.resume, backoff = settings.requeue.error)
@model_handler(
    api.Synapse,
    kopf.on.timer,
    # Since we have create and update handlers, we want to idle after a change
    interval = settings.timer_interval,
    idle = settings.timer_interval,
    backoff = settings.requeue.error
)
async def on_synapse_resync(logger, name, namespace, **kwargs):
    """
    Executes for each synapse when the operator is resumed and periodically after that,
    picking up changes to objects that are not watched.
    """
    await reconcile_synapse(ekclient, name, namespace, logger)


def on_owned_object_event(api_version, plural):
    """
    Registers a handler that reconciles the owning synapse when an object of the given
    kind that carries the owner label changes.
    """
    @kopf.on.event(
        api_version,
        plural,
        id = f"reconcile-owner-{plural}",
        labels = { OWNER_LABEL: kopf.PRESENT }
    )
    async def handler(body, namespace, logger, **kwargs):
        owner = body["metadata"].get("labels", {}).get(OWNER_LABEL)
        if not owner:
            return
        # Retry the pass until it completes without conflict
        # kopf retry logic does not apply to events
        while True:
            try:
                await SynapseReconciler(ekclient, logger).reconcile(owner, namespace)
            except ApiError as exc:
                # On a conflict response, go round again
                if exc.status_code == 409:
                    continue
                else:
                    raise
            except ReconcileError as exc:
                # The handlers for the synapse itself retry on their own schedule
                logger.warning("reconcile of synapse %s failed: %s", owner, exc)
            break
    return handler


for api_version, plural in OWNED_KINDS:
    on_owned_object_event(api_version, plural)
