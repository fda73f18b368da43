import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from functions.utils.common import (
    load_all_parameters,
    load_generation_params,
    load_store_params,
    load_yaml_dict,
    map_engine_params,
    reset_parameters_cache,
)

from utils_test_support import LoggingTestCase


class TestLoadYamlDict(LoggingTestCase):
    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()
        super().tearDown()

    def test_missing_file_returns_empty(self):
        self.assertEqual(load_yaml_dict(self.tmp / "nope.yaml"), {})

    def test_non_mapping_returns_empty(self):
        p = self.tmp / "list.yaml"
        p.write_text("- a\n- b\n", encoding="utf-8")
        self.assertEqual(load_yaml_dict(p), {})

    def test_invalid_yaml_returns_empty(self):
        p = self.tmp / "broken.yaml"
        p.write_text("a: [unclosed\n", encoding="utf-8")
        self.assertEqual(load_yaml_dict(p), {})

    def test_mapping(self):
        p = self.tmp / "ok.yaml"
        p.write_text("generation:\n  model_name: m\n", encoding="utf-8")
        self.assertEqual(load_yaml_dict(str(p)), {"generation": {"model_name": "m"}})


class TestParameters(LoggingTestCase):
    def tearDown(self):
        reset_parameters_cache()
        super().tearDown()

    def test_repo_parameters_have_core_sections(self):
        reset_parameters_cache()
        params = load_all_parameters()
        for section in ("generation", "validation", "store", "security"):
            with self.subTest(section=section):
                self.assertIsInstance(params.get(section), dict)

    def test_parameters_yaml_env_override(self):
        with tempfile.TemporaryDirectory() as d:
            p = Path(d) / "custom.yaml"
            p.write_text("generation:\n  model_name: custom-model\n", encoding="utf-8")
            with patch.dict(os.environ, {"PARAMETERS_YAML": str(p)}):
                reset_parameters_cache()
                self.assertEqual(load_generation_params()["model_name"], "custom-model")

    def test_section_that_is_not_a_mapping(self):
        self.assertEqual(load_generation_params({"generation": "oops"}), {})

    def test_mongo_uri_env_override(self):
        params = {"store": {"backend": "mongo", "mongo_uri": "mongodb://localhost:27017"}}
        with patch.dict(os.environ, {"MONGO_URI": "mongodb://db:27017"}):
            cfg = load_store_params(params)
        self.assertEqual(cfg["mongo_uri"], "mongodb://db:27017")
        self.assertEqual(params["store"]["mongo_uri"], "mongodb://localhost:27017")


class TestMapEngineParams(LoggingTestCase):
    def test_maps_and_casts(self):
        out = map_engine_params(
            {
                "model_name": "gemini-x",
                "temperature": "0.3",
                "top_p": 1,
                "max_tokens": "4096",
                "timeout_seconds": 60.0,
                "use_stub": True,
            }
        )
        self.assertEqual(
            out,
            {
                "model": "gemini-x",
                "temperature": 0.3,
                "top_p": 1.0,
                "max_output_tokens": 4096,
                "timeout_seconds": 60,
            },
        )

    def test_empty(self):
        self.assertEqual(map_engine_params({}), {})


if __name__ == "__main__":
    unittest.main()
