import json
import logging
import tempfile
import unittest
from pathlib import Path

from mdr_registry.config import RegistryConfig, configure_logging
from mdr_registry.services import RegistryServices


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        cfg = RegistryConfig.from_env({})
        self.assertEqual(cfg.db_path, "mdr.sqlite")
        self.assertEqual(cfg.log_level, "WARNING")
        self.assertFalse(cfg.enforce_roles)
        self.assertIsNone(cfg.attribute_schema_path)

    def test_environment_and_overrides(self):
        cfg = RegistryConfig.from_env({
            "MDR_DB_PATH": "/tmp/x.sqlite",
            "MDR_LOG_LEVEL": "debug",
            "MDR_ENFORCE_ROLES": "yes",
        })
        self.assertEqual(cfg.db_path, "/tmp/x.sqlite")
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertTrue(cfg.enforce_roles)
        self.assertEqual(cfg.with_overrides(db_path="other.sqlite", log_level=None).log_level, "DEBUG")

    def test_attribute_schema_loaded_at_startup(self):
        with tempfile.TemporaryDirectory() as td:
            defs = Path(td) / "attributes.json"
            defs.write_text(json.dumps({"attributes": [
                {"name": "steward", "value_type": "string", "applies_to": ["DataSetDefinition"]},
            ]}), encoding="utf-8")
            cfg = RegistryConfig(db_path=str(Path(td) / "mdr.sqlite"), attribute_schema_path=str(defs))
            svc = RegistryServices.from_config(cfg)
            self.assertIn("steward", svc.attribute_schema().definitions)
            item_id, _ = svc.create_item("DataSetDefinition", {"name": "P", "attributes": {"steward": "HR"}})
            self.assertEqual(svc.get_item(item_id).attributes["attributes"], {"steward": "HR"})

    def test_configure_logging_is_idempotent(self):
        configure_logging("info")
        configure_logging("debug")
        logger = logging.getLogger("mdr_registry")
        self.assertEqual(logger.level, logging.DEBUG)
        self.assertEqual(len(logger.handlers), 1)


if __name__ == "__main__":
    unittest.main()
