import base64
import unittest

import yaml

from synapse_operator import documents
from synapse_operator.models import v1alpha1 as api

from .fake import config_map


def homeserver_config_map(document):
    return config_map("homeserver", { "homeserver.yaml": document })


class TestParseHomeserver(unittest.TestCase):
    def test_parse_valid(self):
        cm = homeserver_config_map("server_name: example.com\nreport_stats: true\n")

        self.assertEqual(documents.parse_homeserver(cm), ("example.com", True))

    def test_parse_missing_document(self):
        cm = config_map("homeserver", { "other.yaml": "foo: bar\n" })

        with self.assertRaises(documents.MissingDocumentError):
            documents.parse_homeserver(cm)

    def test_parse_missing_server_name(self):
        cm = homeserver_config_map("report_stats: true\n")

        with self.assertRaises(documents.MissingKeyError) as ctx:
            documents.parse_homeserver(cm)
        self.assertEqual(str(ctx.exception), "missing server_name key in homeserver.yaml")

    def test_parse_missing_report_stats(self):
        cm = homeserver_config_map("server_name: example.com\n")

        with self.assertRaises(documents.MissingKeyError) as ctx:
            documents.parse_homeserver(cm)
        self.assertEqual(ctx.exception.key, "report_stats")

    def test_parse_server_name_wrong_type(self):
        cm = homeserver_config_map("server_name: 42\nreport_stats: true\n")

        with self.assertRaises(documents.InvalidTypeError) as ctx:
            documents.parse_homeserver(cm)
        self.assertEqual(str(ctx.exception), "error converting server_name to string")

    def test_parse_report_stats_wrong_type(self):
        cm = homeserver_config_map("server_name: example.com\nreport_stats: sometimes\n")

        with self.assertRaises(documents.InvalidTypeError) as ctx:
            documents.parse_homeserver(cm)
        self.assertEqual(ctx.exception.expected, "bool")

    def test_parse_malformed_yaml(self):
        cm = homeserver_config_map("server_name: [example.com\n")

        with self.assertRaises(documents.MalformedDocumentError):
            documents.parse_homeserver(cm)

    def test_parse_not_a_mapping(self):
        cm = homeserver_config_map("- server_name\n- report_stats\n")

        with self.assertRaises(documents.MalformedDocumentError):
            documents.parse_homeserver(cm)


class TestSplitConnectionUrl(unittest.TestCase):
    def test_split(self):
        self.assertEqual(
            documents.split_connection_url("db.ns.svc:5432"),
            ("db.ns.svc", 5432)
        )

    def test_split_uses_last_colon(self):
        self.assertEqual(documents.split_connection_url("a:b:5432"), ("a:b", 5432))

    def test_split_no_port(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.split_connection_url("db.ns.svc")

    def test_split_port_not_a_number(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.split_connection_url("db.ns.svc:postgres")

    def test_split_port_out_of_range(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.split_connection_url(f"db.ns.svc:{2 ** 63}")


class TestMergeDatabaseSection(unittest.TestCase):
    def connection_info(self, **overrides):
        params = dict(
            state = api.DatabaseState.READY,
            connection_url = "test-primary.ns.svc:5432",
            database_name = "synapse",
            user = "synapse",
            password = base64.b64encode(b"s3cret").decode(),
        )
        params.update(overrides)
        return api.DatabaseConnectionInfo(**params)

    def test_merge_replaces_database_section(self):
        document = {
            "server_name": "example.com",
            "database": { "name": "sqlite3", "args": { "database": "/data/homeserver.db" } },
        }

        documents.merge_database_section(document, self.connection_info())

        self.assertEqual(
            document["database"],
            {
                "name": "psycopg2",
                "txn_limit": 0,
                "args": {
                    "user": "synapse",
                    "password": "s3cret",
                    "database": "synapse",
                    "host": "test-primary.ns.svc",
                    "port": 5432,
                    "cp_min": 5,
                    "cp_max": 10,
                },
            }
        )
        # Unrelated keys are preserved
        self.assertEqual(document["server_name"], "example.com")

    def test_merge_missing_field(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.merge_database_section({}, self.connection_info(user = ""))

    def test_merge_invalid_password(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.merge_database_section({}, self.connection_info(password = "not base64!"))

    def test_merge_invalid_connection_url(self):
        with self.assertRaises(documents.InvalidConnectionInfoError):
            documents.merge_database_section({}, self.connection_info(connection_url = "nohost"))


class TestAppserviceRegistration(unittest.TestCase):
    def test_merge_adds_path(self):
        document = documents.merge_appservice_registration({}, "/data-heisenbridge/heisenbridge.yaml")

        self.assertEqual(
            document["app_service_config_files"],
            ["/data-heisenbridge/heisenbridge.yaml"]
        )

    def test_merge_keeps_existing_paths(self):
        document = { "app_service_config_files": ["/data/other.yaml"] }

        documents.merge_appservice_registration(document, "/data-heisenbridge/heisenbridge.yaml")

        self.assertEqual(
            document["app_service_config_files"],
            ["/data/other.yaml", "/data-heisenbridge/heisenbridge.yaml"]
        )

    def test_merge_is_idempotent(self):
        document = {}
        for _ in range(3):
            documents.merge_appservice_registration(document, "/data-heisenbridge/heisenbridge.yaml")

        self.assertEqual(
            document["app_service_config_files"],
            ["/data-heisenbridge/heisenbridge.yaml"]
        )

    def test_merge_not_a_list(self):
        with self.assertRaises(documents.InvalidTypeError):
            documents.merge_appservice_registration(
                { "app_service_config_files": "/data/other.yaml" },
                "/data-heisenbridge/heisenbridge.yaml"
            )


class TestStoreDocument(unittest.TestCase):
    def test_store_leaves_other_keys(self):
        cm = config_map("homeserver", { "homeserver.yaml": "a: 1\n", "log.config": "x" })

        documents.store_document(cm, "homeserver.yaml", { "a": 2, "b": [1, 2] })

        self.assertEqual(cm["data"]["log.config"], "x")
        self.assertEqual(yaml.safe_load(cm["data"]["homeserver.yaml"]), { "a": 2, "b": [1, 2] })

    def test_rewrite_bridge_url(self):
        cm = config_map(
            "bridge",
            { "heisenbridge.yaml": "id: heisenbridge\nurl: http://old:9898\n" }
        )

        document = documents.rewrite_bridge_url(
            documents.load_document(cm, "heisenbridge.yaml"),
            "http://10.0.0.1:9898"
        )

        self.assertEqual(document, { "id": "heisenbridge", "url": "http://10.0.0.1:9898" })
