import unittest

import cgate


def analyze(text, path="demo.c", config=None):
    return cgate.analyze_source(path, text, config)


def of_rule(report, rule_id):
    return [finding for finding in report.findings if finding.rule_id == rule_id]


class FunctionRuleTests(unittest.TestCase):
    def test_guard_clauses_and_final_return_are_allowed(self) -> None:
        report = analyze(
            "/* pick */\n"
            "int demo_Pick(int a)\n"
            "{\n"
            "    if (a < 0) {\n"
            "        return -1;\n"
            "    }\n"
            "    if (a > 10) {\n"
            "        a = 10;\n"
            "    } else {\n"
            "        return 2;\n"
            "    }\n"
            "    return a;\n"
            "}\n"
        )
        found = of_rule(report, "functions.single-return")
        self.assertEqual([finding.line for finding in found], [10])

    def test_unreachable_code(self) -> None:
        report = analyze("/* f */\nint demo_Dead(void)\n{\n    return 1;\n    demo_Call();\n}\n")
        found = of_rule(report, "functions.unreachable-code")
        self.assertEqual([finding.line for finding in found], [5])

    def test_unresolved_goto_is_must(self) -> None:
        report = analyze("/* f */\nvoid demo_Jump(void)\n{\n    goto nowhere;\n}\n")
        found = of_rule(report, "functions.unresolved-goto")
        self.assertEqual(len(found), 1)
        self.assertIn("nowhere", found[0].message)
        self.assertEqual(report.categories["Functions"].status, "FAIL")

    def test_header_comment(self) -> None:
        report = analyze(
            "/* file */\nint demo_X;\nint demo_A(void)\n{\n    return 0;\n}\n\n/* B */\nint demo_B(void)\n{\n    return 1;\n}\n"
        )
        found = of_rule(report, "functions.header-comment")
        self.assertEqual([finding.line for finding in found], [3])


class HeaderRuleTests(unittest.TestCase):
    def test_missing_guard(self) -> None:
        report = analyze("/* api */\nint net_Open(void);\n", path="include/net_socket.h")
        found = of_rule(report, "headers.include-guard")
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].severity, "MUST")
        self.assertEqual(found[0].suggestion, "NET_SOCKET_H")

    def test_misnamed_guard_is_should(self) -> None:
        report = analyze("/* api */\n#ifndef WRONG_H\n#define WRONG_H\nint net_Open(void);\n#endif\n", path="net_socket.h")
        found = of_rule(report, "headers.include-guard")
        self.assertEqual([finding.severity for finding in found], ["SHOULD"])
        self.assertEqual(report.categories["Headers"].status, "PASS")

    def test_correct_guard(self) -> None:
        for guard in ("NET_SOCKET_H", "NET_SOCKET_H_"):
            text = f"/* api */\n#ifndef {guard}\n#define {guard}\nint net_Open(void);\n#endif /* {guard} */\n"
            report = analyze(text, path="net_socket.h")
            self.assertEqual(of_rule(report, "headers.include-guard"), [])

    def test_guard_is_not_required_in_sources(self) -> None:
        report = analyze("/* impl */\nint demo_X;\n")
        self.assertEqual(of_rule(report, "headers.include-guard"), [])

    def test_file_comment(self) -> None:
        report = analyze("int demo_X;\n")
        self.assertEqual(len(of_rule(report, "headers.file-comment")), 1)
        report = analyze("\n// demo\nint demo_X;\n")
        self.assertEqual(of_rule(report, "headers.file-comment"), [])


class StyleRuleTests(unittest.TestCase):
    def test_line_length(self) -> None:
        long_line = "int demo_X = 1;" + " " * 10 + "/* " + "x" * 80 + " */"
        report = analyze(f"/* f */\n{long_line}\n")
        found = of_rule(report, "style.line-length")
        self.assertEqual(len(found), 1)
        self.assertEqual((found[0].line, found[0].column), (2, 81))

    def test_line_length_option(self) -> None:
        config = cgate.AnalysisConfig.from_mapping({"options": {"max_line_length": 120}})
        report = analyze("/* f */\n" + "int demo_X;" + " " * 95 + "\n", config=config)
        self.assertEqual(of_rule(report, "style.line-length"), [])

    def test_pointer_in_boolean_context(self) -> None:
        report = analyze(
            "/* f */\n"
            "void demo_Check(char *p, int n)\n"
            "{\n"
            "    if (p && n) {\n"
            "        p[0] = 0;\n"
            "    }\n"
            "    while (!p) {\n"
            "        p = 0;\n"
            "    }\n"
            "}\n"
        )
        found = of_rule(report, "style.null-comparison")
        self.assertEqual([(f.line, f.suggestion) for f in found], [(4, "p != NULL"), (7, "p == NULL")])
        self.assertTrue(all(finding.fix is not None for finding in found))

    def test_unresolved_symbol_reported_once(self) -> None:
        report = analyze("/* f */\nint demo_F(void)\n{\n    return missing + missing;\n}\n")
        found = of_rule(report, "style.unresolved-symbol")
        self.assertEqual(len(found), 1)
        self.assertIn("missing", found[0].message)

    def test_module_state_threshold(self) -> None:
        text = "/* f */\n" + "".join(f"static int value{n};\n" for n in range(6))
        self.assertEqual(len(of_rule(analyze(text), "style.module-state")), 1)
        config = cgate.AnalysisConfig.from_mapping({"options": {"module_state_threshold": 6}})
        self.assertEqual(of_rule(analyze(text, config=config), "style.module-state"), [])

    def test_lex_error_becomes_must_finding(self) -> None:
        report = analyze('/* f */\nconst char *demo_S = "open;\n')
        found = of_rule(report, "style.lex-error")
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].severity, "MUST")

    def test_parse_ambiguity_is_reported(self) -> None:
        report = analyze("/* f */\nvoid demo_F(void)\n{\n    x = 1\n}\n")
        self.assertEqual(len(of_rule(report, "style.parse-ambiguity")), 1)

    def test_inline_suppression(self) -> None:
        report = analyze("/* f */\nint badName; // cgate: ignore[naming.case]\nint otherBad;\n")
        lines = [finding.line for finding in of_rule(report, "naming.case")]
        self.assertEqual(lines, [3])


class DebuggingRuleTests(unittest.TestCase):
    def test_debug_macro_shape(self) -> None:
        report = analyze(
            "/* f */\n"
            "void demo_Log(int x)\n"
            "{\n"
            "    DEBUG1(\"value %d\", x);\n"
            "    DEBUG2(\"other(): value %d\", x);\n"
            "    DEBUG_PRINT(\"x\");\n"
            "    DEBUG1(\"demo_Log(): ok\");\n"
            "}\n"
        )
        found = of_rule(report, "debugging.macro-shape")
        self.assertEqual([finding.line for finding in found], [4, 5, 6])
        inserted, replaced, misnamed = found
        self.assertEqual((inserted.fix.replacement, inserted.fix.expected), ("demo_Log(): ", ""))
        self.assertEqual((replaced.fix.replacement, replaced.fix.expected), ("demo_Log(): ", "other(): "))
        self.assertIsNone(misnamed.fix)
        self.assertEqual(report.categories["Debugging"].status, "FAIL")


if __name__ == "__main__":
    unittest.main()
