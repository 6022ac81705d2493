import base64


#: The keys that the postgres-operator puts in the secret for a user
SECRET_KEYS = ["host", "port", "dbname", "user", "password"]

#: The name of the database used by Synapse
#: The dbname in the secret is not used as the postgres-operator does not create
#: the database with the settings that Synapse requires
DATABASE_NAME = "synapse"


class MissingSecretKeyError(Exception):
    """
    Raised when the secret for the database user is missing a key.
    """
    def __init__(self, key):
        self.key = key
        super().__init__(f"missing {key} in PostgreSQL Secret")


def is_postgres_cluster_ready(cluster):
    """
    Returns true if every instance set in the spec of the given PostgresCluster
    has all of its replicas ready and updated, false otherwise.
    """
    instances_status = {
        instance["name"]: instance
        for instance in cluster.get("status", {}).get("instances", [])
    }
    for instance_spec in cluster.get("spec", {}).get("instances", []):
        # The CRD defaults the replicas to 1
        desired = instance_spec.get("replicas", 1)
        instance_status = instances_status.get(instance_spec.get("name", ""))
        # An instance set that is not in the status yet is not ready
        if instance_status is None:
            return False
        if not (
            instance_status.get("replicas", 0) ==
            instance_status.get("readyReplicas", 0) ==
            instance_status.get("updatedReplicas", 0) ==
            desired
        ):
            return False
    return True


def connection_info_from_secret(connection_info, secret):
    """
    Populates the given database connection info from the secret for the synapse user.

    The password is kept base64-encoded, as it is in the secret.
    """
    data = secret.get("data") or {}
    for key in SECRET_KEYS:
        if key not in data:
            raise MissingSecretKeyError(key)
    decode = lambda key: base64.b64decode(data[key]).decode()
    connection_info.connection_url = f"{decode('host')}:{decode('port')}"
    connection_info.database_name = DATABASE_NAME
    connection_info.user = decode("user")
    connection_info.password = data["password"]
    return connection_info
