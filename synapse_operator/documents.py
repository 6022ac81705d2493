import base64
import binascii

import yaml


#: The bounds of a 64-bit signed integer, which a database port must fit into
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


class DocumentError(Exception):
    """
    Raised when a configuration document cannot be loaded or edited.
    """


class MissingDocumentError(DocumentError):
    """
    Raised when a ConfigMap does not contain the expected document.
    """
    def __init__(self, key):
        self.key = key
        super().__init__(f"missing {key} in ConfigMap")


class MalformedDocumentError(DocumentError):
    """
    Raised when a document is not a valid YAML mapping.
    """


class MissingKeyError(DocumentError):
    """
    Raised when a required key is missing from a document.
    """
    def __init__(self, key, document = "homeserver.yaml"):
        self.key = key
        super().__init__(f"missing {key} key in {document}")


class InvalidTypeError(DocumentError):
    """
    Raised when a key in a document has the wrong type.
    """
    def __init__(self, key, expected):
        self.key = key
        self.expected = expected
        super().__init__(f"error converting {key} to {expected}")


class InvalidConnectionInfoError(DocumentError):
    """
    Raised when the database connection information cannot be written to a document.
    """


def load_document(config_map, key):
    """
    Loads the YAML document stored under the given key of a ConfigMap.
    """
    try:
        data = config_map.get("data", {})[key]
    except KeyError:
        raise MissingDocumentError(key)
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise MalformedDocumentError(f"malformed {key}: {exc}")
    # An empty document is treated as an empty mapping
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise MalformedDocumentError(f"malformed {key}: expected a mapping")
    return document


def dump_document(document):
    """
    Returns the YAML for a document, preserving the order of the keys.
    """
    return yaml.safe_dump(document, sort_keys = False)


def store_document(config_map, key, document):
    """
    Writes the document into the given key of a ConfigMap, leaving the other keys alone.
    """
    config_map.setdefault("data", {})[key] = dump_document(document)
    return config_map


def parse_homeserver(config_map):
    """
    Returns a tuple of (server_name, report_stats) from the homeserver.yaml in a ConfigMap.
    """
    document = load_document(config_map, "homeserver.yaml")
    if "server_name" not in document:
        raise MissingKeyError("server_name")
    server_name = document["server_name"]
    if not isinstance(server_name, str):
        raise InvalidTypeError("server_name", "string")
    if "report_stats" not in document:
        raise MissingKeyError("report_stats")
    report_stats = document["report_stats"]
    if not isinstance(report_stats, bool):
        raise InvalidTypeError("report_stats", "bool")
    return server_name, report_stats


def split_connection_url(connection_url):
    """
    Splits a host:port connection URL into a host and an integer port.
    """
    host, sep, port = connection_url.rpartition(":")
    if not sep or not host:
        raise InvalidConnectionInfoError(
            f"error parsing the connection URL with value: {connection_url}"
        )
    try:
        port = int(port, 10)
    except ValueError:
        raise InvalidConnectionInfoError(f"invalid port in connection URL: {connection_url}")
    if not INT64_MIN <= port <= INT64_MAX:
        raise InvalidConnectionInfoError(f"port out of range in connection URL: {connection_url}")
    return host, port


def merge_database_section(document, connection_info):
    """
    Replaces the database section of a homeserver document with one that uses the
    given connection information.

    The password in the connection information is base64-encoded.
    """
    for field in ["user", "password", "database_name", "connection_url"]:
        if not getattr(connection_info, field):
            raise InvalidConnectionInfoError(f"missing {field} in database connection info")
    host, port = split_connection_url(connection_info.connection_url)
    try:
        password = base64.b64decode(connection_info.password, validate = True).decode()
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidConnectionInfoError("password in database connection info is not valid base64")
    document["database"] = {
        "name": "psycopg2",
        "txn_limit": 0,
        "args": {
            "user": connection_info.user,
            "password": password,
            "database": connection_info.database_name,
            "host": host,
            "port": port,
            "cp_min": 5,
            "cp_max": 10,
        },
    }
    return document


def merge_appservice_registration(document, path):
    """
    Adds the given registration path to the app_service_config_files of a homeserver
    document, if it is not already present.
    """
    existing = document.get("app_service_config_files") or []
    if not isinstance(existing, list):
        raise InvalidTypeError("app_service_config_files", "list")
    # Remove any duplicates while keeping the order
    merged = list(dict.fromkeys([*existing, path]))
    document["app_service_config_files"] = merged
    return document


def rewrite_bridge_url(document, url):
    """
    Sets the URL in a Heisenbridge registration document.
    """
    document["url"] = url
    return document
