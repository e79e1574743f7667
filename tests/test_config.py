import os
import shutil
import tempfile
import unittest
from unittest import mock

import cgate


class ConfigMappingTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = cgate.AnalysisConfig.from_mapping(None)
        self.assertEqual(config.options["max_line_length"], 80)
        self.assertEqual(config.options["path_limit"], 512)
        self.assertEqual(config.options["module_state_threshold"], 5)
        self.assertEqual(config.options["status_macros"], ["WIFEXITED", "WEXITSTATUS"])
        self.assertIsNone(config.options["module_prefix"])

    def test_unknown_rule_id(self) -> None:
        with self.assertRaisesRegex(cgate.ConfigurationError, "unknown rule id 'naming.nope'"):
            cgate.AnalysisConfig.from_mapping({"rules": {"naming.nope": "MUST"}})

    def test_bad_severity(self) -> None:
        with self.assertRaisesRegex(cgate.ConfigurationError, "bad severity"):
            cgate.AnalysisConfig.from_mapping({"rules": {"naming.case": "SOMETIMES"}})

    def test_unknown_option(self) -> None:
        with self.assertRaisesRegex(cgate.ConfigurationError, "unknown option 'tab_width'"):
            cgate.AnalysisConfig.from_mapping({"options": {"tab_width": 4}})

    def test_option_types(self) -> None:
        for options in ({"path_limit": 0}, {"max_line_length": True}, {"banned_functions": "gets"}):
            with self.subTest(options=options):
                with self.assertRaises(cgate.ConfigurationError):
                    cgate.AnalysisConfig.from_mapping({"options": options})

    def test_unknown_top_level_key(self) -> None:
        with self.assertRaises(cgate.ConfigurationError):
            cgate.AnalysisConfig.from_mapping({"rule": {}})

    def test_disabling_a_rule(self) -> None:
        config = cgate.AnalysisConfig.from_mapping({"rules": {"security.banned-api": "off"}})
        report = cgate.analyze_source("demo.c", "void demo_R(char *b)\n{\n    gets(b);\n}\n", config)
        self.assertEqual([f for f in report.findings if f.rule_id == "security.banned-api"], [])
        self.assertEqual(report.categories["Security/Safe-C"].status, "PASS")

    def test_demoting_a_rule(self) -> None:
        config = cgate.AnalysisConfig.from_mapping({"rules": {"naming.case": {"severity": "should"}}})
        report = cgate.analyze_source("demo.c", "/* f */\nint badname;\n", config)
        found = [f for f in report.findings if f.rule_id == "naming.case"]
        self.assertEqual([f.severity for f in found], ["SHOULD"])
        self.assertEqual(report.categories["Naming"].status, "PASS")

    def test_promoting_a_rule(self) -> None:
        config = cgate.AnalysisConfig.from_mapping({"rules": {"style.line-length": {"severity": "MUST"}}})
        report = cgate.analyze_source("demo.c", "/* f */\nint demo_X; /*" + "x" * 80 + "*/\n", config)
        self.assertEqual(report.categories["Style"].status, "FAIL")

    def test_option_changes_rule_behaviour(self) -> None:
        config = cgate.AnalysisConfig.from_mapping({"options": {"max_line_length": 120}})
        report = cgate.analyze_source("demo.c", "/* f */\nint demo_X; /*" + "x" * 80 + "*/\n", config)
        self.assertEqual([f for f in report.findings if f.rule_id == "style.line-length"], [])

    def test_colliding_custom_rule_id(self) -> None:
        raw = {
            "custom_rules": [{
                "id": "naming.case", "category": "Naming", "severity": "MUST",
                "scope": "Function", "assert": "True", "message": "x",
            }]
        }
        with self.assertRaisesRegex(cgate.ConfigurationError, "already defined"):
            cgate.AnalysisConfig.from_mapping(raw)

    def test_rule_setting_for_custom_rule(self) -> None:
        raw = {
            "rules": {"custom.always": "SHOULD"},
            "custom_rules": [{
                "id": "custom.always", "category": "Style", "severity": "MUST",
                "scope": "SourceFile", "assert": "False", "message": "always",
            }],
        }
        config = cgate.AnalysisConfig.from_mapping(raw)
        report = cgate.analyze_source("demo.c", "/* f */\n", config)
        self.assertEqual([(f.rule_id, f.severity) for f in report.findings], [("custom.always", "SHOULD")])


class LoadConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir)

    def write(self, text):
        path = os.path.join(self.tmpdir, "cgate.yaml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def test_yaml_file(self) -> None:
        path = self.write(
            "rules:\n  style.line-length: SHOULD\n  conditional.dead-block: off\n"
            "options:\n  module_prefix: net\n  banned_functions: [gets, tmpnam]\n"
        )
        config = cgate.load_config(path)
        self.assertEqual(config.options["module_prefix"], "net")
        self.assertEqual(config.options["banned_functions"], ["gets", "tmpnam"])
        self.assertFalse(config.setting_for("conditional.dead-block").enabled)
        self.assertEqual(config.setting_for("style.line-length").severity, "SHOULD")

    def test_malformed_yaml(self) -> None:
        path = self.write("rules: [unclosed\n")
        with self.assertRaisesRegex(cgate.ConfigurationError, "malformed configuration"):
            cgate.load_config(path)

    def test_missing_file(self) -> None:
        with self.assertRaisesRegex(cgate.ConfigurationError, "could not read"):
            cgate.load_config(os.path.join(self.tmpdir, "absent.yaml"))

    def test_environment_variable(self) -> None:
        path = self.write("options:\n  path_limit: 64\n")
        with mock.patch.dict(os.environ, {cgate.CONFIG_ENV_VAR: path}):
            config = cgate.load_config()
        self.assertEqual(config.options["path_limit"], 64)

    def test_explicit_path_wins_over_environment(self) -> None:
        path = self.write("options:\n  path_limit: 64\n")
        with mock.patch.dict(os.environ, {cgate.CONFIG_ENV_VAR: os.path.join(self.tmpdir, "absent.yaml")}):
            config = cgate.load_config(path)
        self.assertEqual(config.options["path_limit"], 64)

    def test_no_configuration(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            config = cgate.load_config()
        self.assertEqual(config.rules, {})

    def test_shipped_example(self) -> None:
        example = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "cgate.example.yaml")
        config = cgate.load_config(example)
        self.assertEqual([rule.rule_id for rule in config.custom_rules], ["custom.no-alloca"])


if __name__ == "__main__":
    unittest.main()
