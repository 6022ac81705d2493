import unittest

import pydantic

from synapse_operator.models import v1alpha1 as api


class TestSynapseSpec(unittest.TestCase):
    def test_values(self):
        spec = api.SynapseSpec.model_validate(
            { "homeserver": { "values": { "serverName": "example.com", "reportStats": True } } }
        )

        self.assertEqual(spec.homeserver.server_name, "example.com")
        self.assertTrue(spec.homeserver.values.report_stats)
        self.assertEqual(spec.homeserver.config_map_name, "")
        self.assertFalse(spec.create_new_postgre_sql)
        self.assertFalse(spec.bridges.heisenbridge.enabled)

    def test_config_map(self):
        spec = api.SynapseSpec.model_validate(
            {
                "homeserver": { "configMap": { "name": "my-homeserver" } },
                "createNewPostgreSQL": True,
                "bridges": { "heisenbridge": { "enabled": True } },
            }
        )

        self.assertEqual(spec.homeserver.config_map_name, "my-homeserver")
        self.assertTrue(spec.create_new_postgre_sql)
        self.assertTrue(spec.bridges.heisenbridge.enabled)
        self.assertEqual(spec.bridges.heisenbridge.config_map.name, "")

    def test_both_sources(self):
        with self.assertRaises(pydantic.ValidationError) as ctx:
            api.SynapseSpec.model_validate(
                {
                    "homeserver": {
                        "configMap": { "name": "my-homeserver" },
                        "values": { "serverName": "example.com" },
                    },
                }
            )
        self.assertIn("configMap and values are mutually exclusive", str(ctx.exception))

    def test_no_source(self):
        for homeserver in [{}, { "configMap": { "name": "" } }, { "values": { "serverName": "" } }]:
            with self.subTest(homeserver = homeserver):
                with self.assertRaises(pydantic.ValidationError) as ctx:
                    api.SynapseSpec.model_validate({ "homeserver": homeserver })
                self.assertIn(
                    "one of configMap.name or values.serverName is required",
                    str(ctx.exception)
                )


class TestSynapseStatus(unittest.TestCase):
    def test_defaults(self):
        status = api.SynapseStatus()

        self.assertEqual(status.state, api.SynapseState.UNKNOWN)
        self.assertEqual(status.database_connection_info.state, api.DatabaseState.UNKNOWN)

    def test_default_states_are_enum_members(self):
        status = api.SynapseStatus()

        self.assertIs(status.state, api.SynapseState.UNKNOWN)
        self.assertIs(status.database_connection_info.state, api.DatabaseState.UNKNOWN)
        data = status.model_dump(mode = "json", by_alias = True)
        self.assertEqual(data["state"], "")
        self.assertEqual(data["databaseConnectionInfo"]["state"], "")

    def test_dump_uses_wire_names(self):
        status = api.SynapseStatus()
        status.state = api.SynapseState.RUNNING
        status.database_connection_info.state = api.DatabaseState.NOT_READY
        status.database_connection_info.connection_url = "db:5432"

        data = status.model_dump(mode = "json", by_alias = True)

        self.assertEqual(data["state"], "RUNNING")
        self.assertEqual(data["databaseConnectionInfo"]["state"], "NOT READY")
        self.assertEqual(data["databaseConnectionInfo"]["connectionURL"], "db:5432")
        self.assertIn("homeserverConfigMapName", data)
        self.assertIn("configMapName", data["bridgesConfiguration"]["heisenbridge"])
