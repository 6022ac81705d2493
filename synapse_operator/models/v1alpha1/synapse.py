from kube_custom_resource import CustomResource, schema
from pydantic import Field, model_validator


class ConfigMapReference(schema.BaseModel):
    """
    A reference to a ConfigMap in the same namespace as the Synapse.
    """

    name: str = Field("", description="The name of the ConfigMap.")


class HomeserverValues(schema.BaseModel):
    """
    Values from which the operator renders a homeserver configuration.
    """

    server_name: str = Field(
        "",
        description=(
            "The domain name of the server. This is the name of the homeserver in "
            "the federation and appears at the end of every user ID."
        ),
    )
    report_stats: bool = Field(
        False, description="Whether to report anonymous usage statistics to matrix.org."
    )


class HomeserverSpec(schema.BaseModel):
    """
    The source of the homeserver configuration.

    Exactly one of configMap and values must be given.
    """

    config_map: schema.Optional[ConfigMapReference] = Field(
        None,
        description=(
            "A ConfigMap containing a complete homeserver.yaml. "
            "Mutually exclusive with values."
        ),
    )
    values: schema.Optional[HomeserverValues] = Field(
        None,
        description=(
            "Values used to generate a homeserver.yaml. "
            "Mutually exclusive with configMap."
        ),
    )

    @property
    def config_map_name(self):
        return self.config_map.name if self.config_map else ""

    @property
    def server_name(self):
        return self.values.server_name if self.values else ""

    @model_validator(mode="after")
    def validate_single_source(self):
        """
        Ensures that exactly one source is given for the homeserver configuration.
        """
        if self.config_map_name and self.server_name:
            raise ValueError("configMap and values are mutually exclusive")
        if not self.config_map_name and not self.server_name:
            raise ValueError("one of configMap.name or values.serverName is required")
        return self


class HeisenbridgeSpec(schema.BaseModel):
    """
    The spec for the Heisenbridge IRC bridge.
    """

    enabled: bool = Field(False, description="Indicates if Heisenbridge is deployed.")
    config_map: ConfigMapReference = Field(
        default_factory=ConfigMapReference,
        description=(
            "A ConfigMap containing a heisenbridge.yaml. "
            "If not given, a default configuration is generated."
        ),
    )


class BridgesSpec(schema.BaseModel):
    """
    The spec for the bridges deployed alongside the homeserver.
    """

    heisenbridge: HeisenbridgeSpec = Field(
        default_factory=HeisenbridgeSpec,
        description="Configuration for the Heisenbridge IRC bridge.",
    )


class SynapseSpec(schema.BaseModel):
    """
    The spec for a Synapse homeserver.
    """

    homeserver: HomeserverSpec = Field(
        ..., description="The configuration source for the homeserver."
    )
    create_new_postgre_sql: bool = Field(
        False,
        alias="createNewPostgreSQL",
        description=(
            "Indicates if a PostgreSQL cluster should be provisioned using the "
            "postgres-operator and used as the homeserver database."
        ),
    )
    bridges: BridgesSpec = Field(
        default_factory=BridgesSpec,
        description="The bridges to deploy alongside the homeserver.",
    )


class SynapseState(str, schema.Enum):
    """
    The state of a Synapse.
    """

    UNKNOWN = ""
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class DatabaseState(str, schema.Enum):
    """
    The state of the managed database for a Synapse.
    """

    UNKNOWN = ""
    NOT_READY = "NOT READY"
    READY = "READY"


class HomeserverConfigurationStatus(schema.BaseModel):
    """
    The homeserver settings resolved from the configuration source.
    """

    server_name: str = Field("", description="The server name of the homeserver.")
    report_stats: bool = Field(
        False, description="Whether the homeserver reports usage statistics."
    )


class DatabaseConnectionInfo(schema.BaseModel):
    """
    Connection information for the managed database.
    """

    state: DatabaseState = Field(
        DatabaseState.UNKNOWN, description="The state of the database."
    )
    connection_url: str = Field(
        "",
        alias="connectionURL",
        description="The host and port of the database, as host:port.",
    )
    database_name: str = Field("", description="The name of the database.")
    user: str = Field("", description="The user to connect as.")
    password: str = Field(
        "", description="The password for the user, base64-encoded."
    )


class HeisenbridgeStatus(schema.BaseModel):
    """
    The observed state of the Heisenbridge IRC bridge.
    """

    ip: str = Field("", description="The cluster IP of the Heisenbridge service.")
    config_map_name: str = Field(
        "", description="The name of the ConfigMap mounted by Heisenbridge."
    )


class BridgesStatus(schema.BaseModel):
    """
    The observed state of the bridges.
    """

    heisenbridge: HeisenbridgeStatus = Field(default_factory=HeisenbridgeStatus)


class SynapseStatus(schema.BaseModel, extra="allow"):
    """
    The status of a Synapse.
    """

    state: SynapseState = Field(
        SynapseState.UNKNOWN, description="The state of the homeserver."
    )
    reason: str = Field("", description="The reason for a FAILED state.")
    ip: str = Field("", description="The cluster IP of the homeserver service.")
    homeserver_config_map_name: str = Field(
        "", description="The name of the ConfigMap mounted by the homeserver."
    )
    homeserver_configuration: HomeserverConfigurationStatus = Field(
        default_factory=HomeserverConfigurationStatus,
        description="The resolved homeserver settings.",
    )
    database_connection_info: DatabaseConnectionInfo = Field(
        default_factory=DatabaseConnectionInfo,
        description="Connection information for the managed database.",
    )
    bridges_configuration: BridgesStatus = Field(
        default_factory=BridgesStatus,
        description="The observed state of the bridges.",
    )


class Synapse(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Server Name",
            "type": "string",
            "jsonPath": ".status.homeserverConfiguration.serverName",
        },
        {
            "name": "State",
            "type": "string",
            "jsonPath": ".status.state",
        },
        {
            "name": "IP",
            "type": "string",
            "jsonPath": ".status.ip",
            "priority": 1,
        },
    ],
):
    """
    A Matrix homeserver deployment.
    """

    spec: SynapseSpec
    status: SynapseStatus = Field(default_factory=SynapseStatus)
