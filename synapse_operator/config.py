import secrets

from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    FilePath,
    SecretStr,
    ValidationInfo,
    confloat,
    conint,
    constr,
    field_validator,
)


class RequeueConfiguration(Section):
    """
    Configuration for the delays used when a reconcile pass is rescheduled.
    """

    #: The number of seconds to wait when the managed database is not ready yet
    database_not_ready: confloat(ge=0) = 5
    #: The number of seconds to wait when a user-supplied ConfigMap is missing or invalid
    config_map_missing: confloat(ge=0) = 30
    #: The number of seconds to wait after any other error
    error: confloat(ge=0) = 1


class SynapseConfig(Section):
    """
    Configuration for the Synapse homeserver workloads.
    """

    #: The image to use for the Synapse containers
    image: constr(min_length=1) = "matrixdotorg/synapse:v1.60.0"
    #: The port that Synapse listens on for client traffic
    port: conint(gt=0) = 8008
    #: The size of the data volume
    storage_size: constr(min_length=1) = "5Gi"
    #: The cluster role that the Synapse service account is bound to
    #: The default allows the Synapse image to run as its own user on OpenShift
    cluster_role: constr(min_length=1) = "system:openshift:scc:anyuid"


class HeisenbridgeConfig(Section):
    """
    Configuration for the Heisenbridge IRC bridge workloads.
    """

    #: The image to use for the Heisenbridge container
    image: constr(min_length=1) = "hif1/heisenbridge:1.13"
    #: The port that Heisenbridge listens on for appservice traffic
    port: conint(gt=0) = 9898
    #: The key used to derive the appservice tokens for each bridge
    #: A random key is generated when none is configured
    token_key: SecretStr = Field(default_factory=lambda: SecretStr(secrets.token_hex(32)))


class PostgreSQLConfig(Section):
    """
    Configuration for managed PostgreSQL clusters.
    """

    #: The API version of the PostgresCluster resource
    api_version: constr(pattern=r"^[a-z0-9.-]+/[a-z0-9]+$") = (
        "postgres-operator.crunchydata.com/v1beta1"
    )
    #: The major version of PostgreSQL to deploy
    postgres_version: conint(gt=0) = 14
    #: The size of the volume for each PostgreSQL instance
    instance_storage_size: constr(min_length=1) = "1Gi"
    #: The size of the volume for the pgBackRest repository
    backup_storage_size: constr(min_length=1) = "1Gi"


class WebhookConfiguration(Section):
    """
    Configuration for the internal webhook server.
    """

    #: The port to run the webhook server on
    port: conint(ge=1000) = 8443
    #: Indicates whether kopf should manage the webhook configurations
    managed: bool = False
    #: The path to the TLS certificate to use
    certfile: FilePath | None = Field(None, validate_default=False)
    #: The path to the key for the TLS certificate
    keyfile: FilePath | None = Field(None, validate_default=False)
    #: The host for the webhook server (required for self-signed certificate generation)
    host: constr(min_length=1) | None = Field(None, validate_default=False)

    @field_validator("certfile")
    @classmethod
    def validate_certfile(cls, v, info: ValidationInfo):
        """
        Validate that certfile is specified when configs are not managed.
        """
        if not info.data.get("managed") and v is None:
            raise ValueError("required when webhook configurations are not managed")
        return v

    @field_validator("keyfile")
    @classmethod
    def validate_keyfile(cls, v, info: ValidationInfo):
        """
        Validate that keyfile is specified when certfile is present.
        """
        if info.data.get("certfile") is not None and v is None:
            raise ValueError("required when certfile is given")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v, info: ValidationInfo):
        """
        Validate that host is specified when there is no certificate specified.
        """
        if info.data.get("certfile") is None and v is None:
            raise ValueError("required when certfile is not given")
        return v


class Configuration(
    BaseConfiguration,
    default_path="/etc/synapse-operator/config.yaml",
    path_env_var="SYNAPSE_OPERATOR_CONFIG",
    env_prefix="SYNAPSE_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the Synapse CRDs
    api_group: constr(min_length=1) = "synapse.opdev.io"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["matrix"]
    )

    #: The prefix to use for operator annotations
    annotation_prefix: str = "synapse.opdev.io"

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "synapse-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The number of seconds to wait between timer executions
    timer_interval: conint(gt=0) = 60

    #: The delays used when rescheduling reconcile passes
    requeue: RequeueConfiguration = Field(default_factory=RequeueConfiguration)

    #: The webhook configuration
    webhook: WebhookConfiguration = Field(default_factory=WebhookConfiguration)

    #: Configuration for the Synapse workloads
    synapse: SynapseConfig = Field(default_factory=SynapseConfig)

    #: Configuration for the Heisenbridge workloads
    heisenbridge: HeisenbridgeConfig = Field(default_factory=HeisenbridgeConfig)

    #: Configuration for managed PostgreSQL clusters
    postgresql: PostgreSQLConfig = Field(default_factory=PostgreSQLConfig)


settings = Configuration()
