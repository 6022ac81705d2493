import copy
import dataclasses
import logging
import typing as t

import kopf
from easykube import ApiError

from . import documents, postgres, resources
from .config import settings
from .models.v1alpha1 import DatabaseState, Synapse
from .resources import ChildKind, object_metadata
from .status import project_status, set_failed, set_running
from .utils import ekresource_for_model


@dataclasses.dataclass(frozen = True)
class Result:
    """
    The outcome of a reconcile pass that did not raise.
    """
    #: The number of seconds after which another pass should run, or None for no requeue
    requeue_after: t.Optional[float] = None
    #: A human-readable explanation for the outcome
    message: str = ""


#: The result of a pass that converged or that cannot make progress without a new event
DONE = Result()


class ReconcileError(Exception):
    """
    Raised when a reconcile pass fails without changing the status of the Synapse.
    """
    def __init__(self, message, delay = None):
        super().__init__(message)
        self.delay = settings.requeue.error if delay is None else delay


class SynapseReconciler:
    """
    Converges the cluster towards the state declared by a Synapse in a single pass.

    Each phase either completes, returns a result that ends the pass early or raises.
    The order of the phases matters: service IPs are discovered before the documents
    that embed them are written, and the database section is written only once the
    database is ready.
    """
    def __init__(self, client, logger = None):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        # The raw status of the Synapse as last read or written by this pass
        self.observed_status = {}

    async def _fetch(self, kind: ChildKind, name, namespace):
        """
        Returns the named object of the given kind, or None if it does not exist.
        """
        ekresource = await kind.resource(self.client)
        try:
            return await ekresource.fetch(name, namespace = namespace)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise

    async def reconcile_resource(
        self,
        kind: ChildKind,
        template: resources.Template,
        instance: Synapse,
        metadata
    ):
        """
        Returns the child named by the metadata, creating it from the template if it
        does not exist.

        An existing child is returned as-is, even if it differs from what the template
        would produce now.
        """
        existing = await self._fetch(kind, metadata["name"], metadata["namespace"])
        if existing is not None:
            return existing
        child = template(instance, metadata)
        if not child["metadata"].get("ownerReferences"):
            raise ValueError(f"template for {kind.kind} did not set an owner reference")
        self.logger.info("creating %s %s", kind.kind, metadata["name"])
        ekresource = await kind.resource(self.client)
        return await ekresource.create(child, namespace = metadata["namespace"])

    async def _project_status(self, instance):
        self.observed_status = await project_status(
            self.client,
            instance,
            self.observed_status
        )

    async def _fail(self, instance, reason, delay = None):
        """
        Marks the Synapse as failed, saves the status and returns a result that
        requeues after the given delay.
        """
        self.logger.warning("%s", reason)
        set_failed(instance, reason)
        await self._project_status(instance)
        return Result(requeue_after = delay, message = reason)

    def _config_map_missing(self, instance, name):
        return self._fail(
            instance,
            f"ConfigMap {name} does not exist in namespace {instance.metadata.namespace}",
            settings.requeue.config_map_missing
        )

    async def _edit_config_map(self, config_map, key, edit):
        """
        Applies the edit to the document under the given key of the ConfigMap and
        writes the ConfigMap back if the document changed.
        """
        name = config_map["metadata"]["name"]
        try:
            original = documents.load_document(config_map, key)
            document = edit(copy.deepcopy(original))
        except documents.DocumentError as exc:
            raise ReconcileError(
                f"unable to edit {key} in ConfigMap {name}: {exc}",
                settings.requeue.config_map_missing
            )
        # Comparing the parsed documents means a no-op edit leaves the text alone
        if document == original:
            return config_map
        self.logger.info("updating %s in ConfigMap %s", key, name)
        documents.store_document(config_map, key, document)
        ekresource = await resources.CONFIG_MAP.resource(self.client)
        # The resource version in the fetched object makes this fail on a concurrent update
        return await ekresource.replace(
            name,
            config_map,
            namespace = config_map["metadata"]["namespace"]
        )

    async def _edit_homeserver_config_map(self, instance, edit):
        """
        Applies the edit to the homeserver.yaml that will be mounted by the deployment.
        """
        name = instance.status.homeserver_config_map_name
        config_map = await self._fetch(resources.CONFIG_MAP, name, instance.metadata.namespace)
        if config_map is None:
            return await self._config_map_missing(instance, name)
        await self._edit_config_map(config_map, resources.HOMESERVER_KEY, edit)

    async def _fetch_instance(self, name, namespace):
        ekresource = await ekresource_for_model(self.client, Synapse)
        try:
            data = await ekresource.fetch(name, namespace = namespace)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise
        self.observed_status = copy.deepcopy(data.get("status") or {})
        return Synapse.model_validate(data)

    async def _resolve_homeserver_config(self, instance: Synapse):
        """
        Resolves the homeserver configuration from the user-supplied ConfigMap or
        from the values.
        """
        namespace = instance.metadata.namespace
        config_map_name = instance.spec.homeserver.config_map_name
        if config_map_name:
            config_map = await self._fetch(resources.CONFIG_MAP, config_map_name, namespace)
            if config_map is None:
                return await self._config_map_missing(instance, config_map_name)
            try:
                server_name, report_stats = documents.parse_homeserver(config_map)
            except documents.DocumentError as exc:
                raise ReconcileError(
                    f"invalid homeserver configuration in ConfigMap {config_map_name}: {exc}",
                    settings.requeue.config_map_missing
                )
            self.logger.info(
                "loaded homeserver.yaml from ConfigMap %s (server_name: %s, report_stats: %s)",
                config_map_name,
                server_name,
                report_stats
            )
        else:
            config_map_name = instance.metadata.name
            await self.reconcile_resource(
                resources.CONFIG_MAP,
                resources.homeserver_config_map,
                instance,
                object_metadata(config_map_name, namespace)
            )
            server_name = instance.spec.homeserver.values.server_name
            report_stats = instance.spec.homeserver.values.report_stats
        instance.status.homeserver_configuration.server_name = server_name
        instance.status.homeserver_configuration.report_stats = report_stats
        instance.status.homeserver_config_map_name = config_map_name

    async def _postgres_operator_installed(self, namespace):
        """
        Returns true if PostgresCluster resources can be listed, false otherwise.
        """
        try:
            ekresource = await resources.POSTGRES_CLUSTER.resource(self.client)
            _ = await ekresource.first(namespace = namespace)
        except Exception as exc:
            self.logger.warning("unable to list PostgresCluster resources: %s", exc)
            return False
        else:
            return True

    async def _provision_database(self, instance: Synapse):
        """
        Ensures that a PostgreSQL cluster exists for the homeserver and that the
        homeserver configuration uses it once it is ready.
        """
        name = instance.metadata.name
        namespace = instance.metadata.namespace
        connection_info = instance.status.database_connection_info
        if not await self._postgres_operator_installed(namespace):
            await self._fail(
                instance,
                (
                    "Cannot create PostgreSQL cluster: the postgres-operator is not "
                    "installed (PostgresCluster resources are not available)"
                )
            )
            # The CRD must be installed before anything can change, so don't retry
            return DONE
        await self.reconcile_resource(
            resources.CONFIG_MAP,
            resources.postgres_config_map,
            instance,
            object_metadata(resources.postgres_init_name(name), namespace)
        )
        cluster = await self.reconcile_resource(
            resources.POSTGRES_CLUSTER,
            resources.postgres_cluster,
            instance,
            object_metadata(name, namespace)
        )
        if postgres.is_postgres_cluster_ready(cluster):
            secret_name = resources.postgres_secret_name(name)
            secret = await self._fetch(resources.SECRET, secret_name, namespace)
        else:
            secret_name, secret = None, None
        # The secret is created by the postgres-operator shortly after the cluster
        if secret is None:
            if secret_name:
                self.logger.info("waiting for secret %s", secret_name)
            connection_info.state = DatabaseState.NOT_READY
            await self._project_status(instance)
            return Result(
                requeue_after = settings.requeue.database_not_ready,
                message = "PostgreSQL database not ready yet"
            )
        try:
            postgres.connection_info_from_secret(connection_info, secret)
        except postgres.MissingSecretKeyError as exc:
            return await self._fail(instance, str(exc), settings.requeue.config_map_missing)
        connection_info.state = DatabaseState.READY
        return await self._edit_homeserver_config_map(
            instance,
            lambda document: documents.merge_database_section(document, connection_info)
        )

    async def _service_ip(self, template, instance, metadata):
        """
        Ensures that the service exists and returns its cluster IP.
        """
        service = await self.reconcile_resource(
            resources.SERVICE,
            template,
            instance,
            metadata
        )
        ip = service.get("spec", {}).get("clusterIP")
        if not ip:
            raise ReconcileError(f"service {metadata['name']} does not have a cluster IP yet")
        return ip

    async def _provision_heisenbridge(self, instance: Synapse):
        """
        Ensures that Heisenbridge is deployed and registered with the homeserver.
        """
        namespace = instance.metadata.namespace
        bridge_status = instance.status.bridges_configuration.heisenbridge
        metadata = object_metadata(resources.heisenbridge_name(instance.metadata.name), namespace)
        bridge_status.ip = await self._service_ip(
            resources.heisenbridge_service,
            instance,
            metadata
        )
        config_map_name = instance.spec.bridges.heisenbridge.config_map.name
        bridge_status.config_map_name = config_map_name or metadata["name"]
        if config_map_name:
            config_map = await self._fetch(resources.CONFIG_MAP, config_map_name, namespace)
            if config_map is None:
                return await self._config_map_missing(instance, config_map_name)
            url = resources.heisenbridge_url(bridge_status.ip)
            await self._edit_config_map(
                config_map,
                resources.HEISENBRIDGE_KEY,
                lambda document: documents.rewrite_bridge_url(document, url)
            )
        else:
            await self.reconcile_resource(
                resources.CONFIG_MAP,
                resources.heisenbridge_config_map,
                instance,
                metadata
            )
        await self.reconcile_resource(
            resources.DEPLOYMENT,
            resources.heisenbridge_deployment,
            instance,
            metadata
        )
        return await self._edit_homeserver_config_map(
            instance,
            lambda document: documents.merge_appservice_registration(
                document,
                resources.HEISENBRIDGE_REGISTRATION_PATH
            )
        )

    async def reconcile(self, name, namespace):
        """
        Runs a single reconcile pass for the named Synapse.
        """
        instance = await self._fetch_instance(name, namespace)
        if instance is None:
            # Owned children are garbage collected by Kubernetes
            self.logger.info("synapse no longer exists - nothing to do")
            return DONE

        result = await self._resolve_homeserver_config(instance)
        if result:
            return result

        if instance.spec.create_new_postgre_sql:
            result = await self._provision_database(instance)
            if result:
                return result

        metadata = object_metadata(name, namespace)
        instance.status.ip = await self._service_ip(resources.service, instance, metadata)

        if instance.spec.bridges.heisenbridge.enabled:
            result = await self._provision_heisenbridge(instance)
            if result:
                return result

        for kind, template in [
            (resources.SERVICE_ACCOUNT, resources.service_account),
            (resources.ROLE_BINDING, resources.role_binding),
            (resources.PERSISTENT_VOLUME_CLAIM, resources.persistent_volume_claim),
            (resources.DEPLOYMENT, resources.deployment),
        ]:
            await self.reconcile_resource(kind, template, instance, metadata)

        if set_running(instance):
            self.logger.info("synapse is running")
        await self._project_status(instance)
        return DONE


async def reconcile_synapse(client, name, namespace, logger = None):
    """
    Runs a reconcile pass for the named Synapse from a kopf handler.

    A pass that asks to be retried raises a kopf.TemporaryError with the requested
    delay, so kopf runs the handler again no sooner than that.
    """
    reconciler = SynapseReconciler(client, logger)
    try:
        result = await reconciler.reconcile(name, namespace)
    except ReconcileError as exc:
        raise kopf.TemporaryError(str(exc), delay = exc.delay)
    if result.requeue_after is not None:
        raise kopf.TemporaryError(
            result.message or "reconcile requested a retry",
            delay = result.requeue_after
        )
    return result
