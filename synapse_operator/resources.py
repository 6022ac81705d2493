import dataclasses
import hashlib
import hmac
import typing as t

import kopf

from .config import settings
from .template import default_loader


#: The key of the homeserver configuration in its ConfigMap
HOMESERVER_KEY = "homeserver.yaml"
#: The key of the Heisenbridge configuration in its ConfigMap
HEISENBRIDGE_KEY = "heisenbridge.yaml"
#: The key of the database initialisation SQL in its ConfigMap
CREATEDB_KEY = "createdb.sql"

#: The path at which the homeserver pod mounts the Heisenbridge registration
HEISENBRIDGE_REGISTRATION_PATH = f"/data-heisenbridge/{HEISENBRIDGE_KEY}"


@dataclasses.dataclass(frozen = True)
class ChildKind:
    """
    Describes a kind of namespaced resource that the operator reads or creates
    on behalf of a Synapse.
    """
    #: The API version of the kind, e.g. apps/v1
    api_version: str
    #: The plural name of the kind as used in the API path
    plural: str
    #: The kind itself
    kind: str

    async def resource(self, client):
        """
        Returns the easykube resource for this kind.
        """
        return await client.api(self.api_version).resource(self.plural)


CONFIG_MAP = ChildKind("v1", "configmaps", "ConfigMap")
PERSISTENT_VOLUME_CLAIM = ChildKind("v1", "persistentvolumeclaims", "PersistentVolumeClaim")
SERVICE = ChildKind("v1", "services", "Service")
SERVICE_ACCOUNT = ChildKind("v1", "serviceaccounts", "ServiceAccount")
ROLE_BINDING = ChildKind("rbac.authorization.k8s.io/v1", "rolebindings", "RoleBinding")
DEPLOYMENT = ChildKind("apps/v1", "deployments", "Deployment")
POSTGRES_CLUSTER = ChildKind(
    settings.postgresql.api_version,
    "postgresclusters",
    "PostgresCluster"
)
#: Secrets are read but never created by the operator
SECRET = ChildKind("v1", "secrets", "Secret")


#: Type for a template function
Template = t.Callable[[t.Any, dict], dict]


#: The label on child resources that names the owning Synapse
OWNER_LABEL = "synapse_cr"


def labels_for_synapse(name):
    """
    Returns the labels for the child resources of the named Synapse.
    """
    return { "app": "synapse", OWNER_LABEL: name }


def object_metadata(name, namespace):
    """
    Returns the metadata that a template uses to name a child resource.
    """
    return { "name": name, "namespace": namespace }


def heisenbridge_name(name):
    """
    Returns the name of the Heisenbridge children of the named Synapse.
    """
    return f"{name}-heisenbridge"


def postgres_init_name(name):
    """
    Returns the name of the ConfigMap holding the database initialisation SQL.

    This cannot share the name of the Synapse, as the generated homeserver
    ConfigMap already has it.
    """
    return f"{name}-postgres-init"


def postgres_secret_name(name):
    """
    Returns the name of the secret in which the postgres-operator puts the
    credentials for the synapse user.
    """
    return f"{name}-pguser-synapse"


def _child(kind: ChildKind, instance, metadata, **body):
    """
    Returns a child resource of the given kind with the common metadata applied,
    owned by the given Synapse.
    """
    child = {
        "apiVersion": kind.api_version,
        "kind": kind.kind,
        "metadata": {
            "name": metadata["name"],
            "namespace": metadata["namespace"],
            "labels": labels_for_synapse(instance.metadata.name),
        },
        **body,
    }
    kopf.adopt(child, instance.model_dump(by_alias = True))
    return child


def _selector(instance, component):
    return { **labels_for_synapse(instance.metadata.name), "component": component }


def _token(instance, purpose):
    # Keyed so that the token cannot be derived from the UID alone
    key = settings.heisenbridge.token_key.get_secret_value().encode()
    data = f"{instance.metadata.uid}/{purpose}".encode()
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def homeserver_config_map(instance, metadata):
    """
    Returns the ConfigMap containing a homeserver.yaml generated from the values.
    """
    values = instance.spec.homeserver.values
    if not values:
        raise ValueError("homeserver values are required to generate a configuration")
    document = default_loader.render(
        HOMESERVER_KEY,
        server_name = values.server_name,
        report_stats = values.report_stats
    )
    return _child(CONFIG_MAP, instance, metadata, data = { HOMESERVER_KEY: document })


def persistent_volume_claim(instance, metadata):
    """
    Returns the PVC that holds the homeserver data.
    """
    return _child(
        PERSISTENT_VOLUME_CLAIM,
        instance,
        metadata,
        **default_loader.load("persistentvolumeclaim.yaml")
    )


def service(instance, metadata):
    """
    Returns the service for the homeserver.
    """
    return _child(
        SERVICE,
        instance,
        metadata,
        **default_loader.load(
            "service.yaml",
            selector = _selector(instance, "homeserver"),
            port_name = "synapse-unsecure",
            port = settings.synapse.port
        )
    )


def service_account(instance, metadata):
    """
    Returns the service account that the homeserver runs as.
    """
    return _child(SERVICE_ACCOUNT, instance, metadata)


def role_binding(instance, metadata):
    """
    Returns the role binding that grants the configured cluster role to the
    homeserver service account.
    """
    return _child(
        ROLE_BINDING,
        instance,
        metadata,
        **default_loader.load(
            "rolebinding.yaml",
            service_account_name = instance.metadata.name,
            namespace = metadata["namespace"]
        )
    )


def deployment(instance, metadata):
    """
    Returns the deployment for the homeserver.

    The homeserver ConfigMap, the server name and the bridge ConfigMap are taken
    from the status, so they must be resolved before this is called.
    """
    status = instance.status
    if not status.homeserver_config_map_name:
        raise ValueError("homeserver ConfigMap name has not been resolved")
    if instance.spec.bridges.heisenbridge.enabled:
        heisenbridge_config_map_name = status.bridges_configuration.heisenbridge.config_map_name
        if not heisenbridge_config_map_name:
            raise ValueError("Heisenbridge ConfigMap name has not been resolved")
    else:
        heisenbridge_config_map_name = None
    return _child(
        DEPLOYMENT,
        instance,
        metadata,
        **default_loader.load(
            "deployment.yaml",
            selector = _selector(instance, "homeserver"),
            service_account_name = instance.metadata.name,
            server_name = status.homeserver_configuration.server_name,
            report_stats = status.homeserver_configuration.report_stats,
            homeserver_config_map_name = status.homeserver_config_map_name,
            claim_name = instance.metadata.name,
            heisenbridge_config_map_name = heisenbridge_config_map_name
        )
    )


def heisenbridge_config_map(instance, metadata):
    """
    Returns the ConfigMap containing the default Heisenbridge registration.

    The URL points at the Heisenbridge service, so its IP must be known.
    """
    ip = instance.status.bridges_configuration.heisenbridge.ip
    if not ip:
        raise ValueError("Heisenbridge service IP has not been discovered")
    document = default_loader.render(
        HEISENBRIDGE_KEY,
        url = heisenbridge_url(ip),
        as_token = _token(instance, "heisenbridge/as_token"),
        hs_token = _token(instance, "heisenbridge/hs_token")
    )
    return _child(CONFIG_MAP, instance, metadata, data = { HEISENBRIDGE_KEY: document })


def heisenbridge_url(ip):
    """
    Returns the URL at which the homeserver reaches Heisenbridge.
    """
    return f"http://{ip}:{settings.heisenbridge.port}"


def heisenbridge_service(instance, metadata):
    """
    Returns the service for Heisenbridge.
    """
    return _child(
        SERVICE,
        instance,
        metadata,
        **default_loader.load(
            "service.yaml",
            selector = _selector(instance, "heisenbridge"),
            port_name = "heisenbridge",
            port = settings.heisenbridge.port
        )
    )


def heisenbridge_deployment(instance, metadata):
    """
    Returns the deployment for Heisenbridge.
    """
    status = instance.status
    if not status.ip:
        raise ValueError("homeserver service IP has not been discovered")
    config_map_name = status.bridges_configuration.heisenbridge.config_map_name
    if not config_map_name:
        raise ValueError("Heisenbridge ConfigMap name has not been resolved")
    return _child(
        DEPLOYMENT,
        instance,
        metadata,
        **default_loader.load(
            "heisenbridge-deployment.yaml",
            selector = _selector(instance, "heisenbridge"),
            config_map_name = config_map_name,
            homeserver_url = f"http://{status.ip}:{settings.synapse.port}"
        )
    )


def postgres_config_map(instance, metadata):
    """
    Returns the ConfigMap containing the SQL used to initialise the database.
    """
    return _child(
        CONFIG_MAP,
        instance,
        metadata,
        data = { CREATEDB_KEY: default_loader.render(CREATEDB_KEY) }
    )


def postgres_cluster(instance, metadata):
    """
    Returns the PostgresCluster for the homeserver database.
    """
    return _child(
        POSTGRES_CLUSTER,
        instance,
        metadata,
        **default_loader.load(
            "postgrescluster.yaml",
            init_sql_config_map_name = postgres_init_name(instance.metadata.name)
        )
    )
