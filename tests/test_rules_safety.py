import unittest

import cgate


def analyze(text, path="demo.c", config=None):
    return cgate.analyze_source(path, text, config)


def of_rule(report, rule_id):
    return [finding for finding in report.findings if finding.rule_id == rule_id]


SYSTEM_CALLS = """#include <stdlib.h>
#include <sys/wait.h>

int demo_Run(const char *cmd)
{
    int status = system(cmd);
    int result = 1;
    if (WIFEXITED(status) && WEXITSTATUS(status) == 0) {
        result = 0;
    }
    return result;
}

void demo_Fire(void)
{
    system("ls");
    if (system(NULL) == 0) {
        return;
    }
}
"""

FORMATS = """#include <stdio.h>
#include <stdlib.h>

int main(int argc, char **argv)
{
    const char *fmt = argv[1];
    char line[64];
    char *home = getenv("HOME");
    printf("%s\\n", argv[0]);
    printf(fmt);
    printf(home);
    if (fgets(line, sizeof(line), stdin) != NULL) {
        printf(line);
    }
    return 0;
}
"""

LEAKY = """#include <stdio.h>

int demo_Read(const char *path)
{
    FILE *fp = fopen(path, "r");
    if (fp == NULL) {
        return -1;
    }
    if (fgetc(fp) == EOF) {
        return -2;
    }
    fclose(fp);
    return 0;
}
"""


class SystemRuleTests(unittest.TestCase):
    def test_unchecked_system_is_reported(self) -> None:
        report = analyze(SYSTEM_CALLS)
        found = of_rule(report, "system.status-check")
        self.assertEqual([finding.line for finding in found], [16])
        self.assertEqual(found[0].severity, "MUST")
        self.assertEqual(report.categories["system() usage"].status, "FAIL")

    def test_checked_in_the_same_statement(self) -> None:
        report = analyze(
            "int demo_Run(const char *cmd)\n{\n    int rc = system(cmd);\n"
            "    return WIFEXITED(rc) ? WEXITSTATUS(rc) : -1;\n}\n"
        )
        self.assertEqual(of_rule(report, "system.status-check"), [])

    def test_check_in_another_function_does_not_count(self) -> None:
        report = analyze(
            "int demo_Run(const char *cmd)\n{\n    int rc = system(cmd);\n    if (rc) {\n        return rc;\n    }\n"
            "    return 0;\n}\nint demo_Late(int rc)\n{\n    return WIFEXITED(rc) && WEXITSTATUS(rc);\n}\n"
        )
        self.assertEqual([finding.line for finding in of_rule(report, "system.status-check")], [3])

    def test_sole_successor_block_counts(self) -> None:
        report = analyze(
            "void demo_Wait(const char *cmd)\n{\n    int rc = system(cmd);\n"
            "    while (!WIFEXITED(rc) || WEXITSTATUS(rc) != 0) {\n        rc = system(cmd);\n    }\n}\n"
        )
        self.assertEqual(of_rule(report, "system.status-check"), [])

    def test_check_behind_a_branch_is_too_late(self) -> None:
        report = analyze(
            "int demo_Run(const char *cmd)\n{\n    int rc = system(cmd);\n    if (rc == -1) {\n        rc = 127;\n    }\n"
            "    return WIFEXITED(rc) ? WEXITSTATUS(rc) : -1;\n}\n"
        )
        self.assertEqual([finding.line for finding in of_rule(report, "system.status-check")], [3])

    def test_exit_status_read_inside_wifexited_branch(self) -> None:
        report = analyze(
            "int demo_Run(void)\n{\n    int rc = -1;\n    int status = system(\"ls\");\n"
            "    if (WIFEXITED(status)) {\n        rc = WEXITSTATUS(status);\n    }\n    return rc;\n}\n"
        )
        self.assertEqual(of_rule(report, "system.status-check"), [])
        self.assertEqual(report.categories["system() usage"].status, "PASS")

    def test_wifexited_branch_without_exit_status(self) -> None:
        report = analyze(
            "int demo_Run(void)\n{\n    int rc = -1;\n    int status = system(\"ls\");\n"
            "    if (WIFEXITED(status)) {\n        rc = 0;\n    }\n    return rc;\n}\n"
        )
        self.assertEqual([finding.line for finding in of_rule(report, "system.status-check")], [4])

    def test_local_function_named_system_is_ignored(self) -> None:
        report = analyze("static int system(const char *c)\n{\n    return 0;\n}\nvoid demo_Go(void)\n{\n    system(\"x\");\n}\n")
        self.assertEqual(of_rule(report, "system.status-check"), [])


class SecurityRuleTests(unittest.TestCase):
    def test_banned_function(self) -> None:
        report = analyze("/* f */\nvoid demo_Read(void)\n{\n    char buf[32];\n    gets(buf);\n}\n")
        found = of_rule(report, "security.banned-api")
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].suggestion, "fgets")
        self.assertEqual(report.categories["Security/Safe-C"].status, "FAIL")

    def test_strcpy_into_array_gets_bounded_fix(self) -> None:
        report = analyze("/* f */\nvoid demo_Copy(const char *src)\n{\n    char buf[16];\n    strcpy(buf, src);\n}\n")
        found = of_rule(report, "security.discouraged-api")
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].severity, "SHOULD")
        self.assertEqual(found[0].suggestion, "strncpy")
        self.assertEqual(
            found[0].fix.replacement,
            "strncpy(buf, src, sizeof(buf) - 1);\n    buf[sizeof(buf) - 1] = '\\0';",
        )
        self.assertEqual(found[0].fix.expected, "strcpy(buf, src);")

    def test_strcpy_through_pointer_has_no_fix(self) -> None:
        report = analyze("/* f */\nvoid demo_Copy(char *dst, const char *src)\n{\n    strcpy(dst, src);\n}\n")
        found = of_rule(report, "security.discouraged-api")
        self.assertEqual(len(found), 1)
        self.assertIsNone(found[0].fix)

    def test_array_parameter_has_no_fix(self) -> None:
        report = analyze(
            "/* f */\nvoid demo_Fill(char buf[16], const char *s)\n{\n"
            "    strcpy(buf, s);\n    sprintf(buf, \"%s\", s);\n}\n"
        )
        found = of_rule(report, "security.discouraged-api")
        self.assertEqual(len(found), 2)
        self.assertEqual([finding.fix for finding in found], [None, None])

    def test_extern_array_has_no_fix(self) -> None:
        report = analyze(
            "/* f */\nextern char demo_Name[];\nvoid demo_Set(const char *s)\n{\n    strcpy(demo_Name, s);\n}\n"
        )
        found = of_rule(report, "security.discouraged-api")
        self.assertEqual(len(found), 1)
        self.assertIsNone(found[0].fix)

    def test_array_parameter_is_left_alone_when_fixing(self) -> None:
        text = "/* f */\nvoid demo_Fill(char buf[16], const char *s)\n{\n    strcpy(buf, s);\n}\n"
        report = cgate.analyze_source("demo.c", text, None, fix=True)
        self.assertNotIn(b"sizeof(buf)", report.fixed_source or b"")

    def test_sprintf_fix(self) -> None:
        report = analyze("/* f */\nvoid demo_Fmt(int n)\n{\n    char buf[16];\n    sprintf(buf, \"%d\", n);\n}\n")
        found = of_rule(report, "security.discouraged-api")
        self.assertEqual(found[0].fix.replacement, "snprintf(buf, sizeof(buf)")
        self.assertEqual(found[0].fix.expected, "sprintf(buf")

    def test_format_string_taint(self) -> None:
        report = analyze(FORMATS)
        found = of_rule(report, "security.format-string")
        self.assertEqual([finding.line for finding in found], [10, 11, 13])
        self.assertIn("external input", found[0].message)
        self.assertIn('"%s"', found[0].suggestion)

    def test_format_string_literals_and_constants(self) -> None:
        report = analyze(
            "#define GREETING \"hi %s\\n\"\n"
            "static const char *demo_Banner = \"ok\\n\";\n"
            "void demo_Say(char *msg, const char *name)\n{\n"
            "    printf(GREETING, name);\n"
            "    printf(demo_Banner);\n"
            "    fprintf(stderr, \"%s \" PRIX64 \"\\n\", name, 1);\n"
            "    printf(msg);\n"
            "}\n"
        )
        found = of_rule(report, "security.format-string")
        self.assertEqual([finding.line for finding in found], [8])
        self.assertIn("msg", found[0].message)


class ResourceLifecycleTests(unittest.TestCase):
    def test_leak_on_early_return(self) -> None:
        found = of_rule(analyze(LEAKY), "errors.resource-lifecycle")
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].line, 10)
        self.assertIn("'fp'", found[0].message)
        self.assertEqual(found[0].severity, "MUST")

    def test_every_leaking_path_is_found(self) -> None:
        # each acquisition that can reach the exit while held yields a finding
        text = (
            "void demo_Two(int a)\n{\n    char *p = malloc(4);\n    char *q = malloc(4);\n"
            "    if (a) {\n        return;\n    }\n    free(p);\n    free(q);\n}\n"
        )
        found = of_rule(analyze(text), "errors.resource-lifecycle")
        self.assertEqual(len(found), 2)
        self.assertEqual({finding.line for finding in found}, {6})
        self.assertEqual({("'p'" in f.message, "'q'" in f.message) for f in found}, {(True, False), (False, True)})

    def test_clean_function_passes(self) -> None:
        text = (
            "int demo_Clean(void)\n{\n    char *p = malloc(8);\n    if (!p) {\n        return -1;\n    }\n"
            "    free(p);\n    return 0;\n}\n"
        )
        self.assertEqual(of_rule(analyze(text), "errors.resource-lifecycle"), [])

    def test_assignment_in_condition(self) -> None:
        text = (
            "int demo_Open(const char *path)\n{\n    int fd;\n    if ((fd = open(path, 0)) < 0) {\n        return -1;\n    }\n"
            "    close(fd);\n    return 0;\n}\n"
        )
        self.assertEqual(of_rule(analyze(text), "errors.resource-lifecycle"), [])

    def test_ownership_transfer_by_return(self) -> None:
        text = "char *demo_Make(void)\n{\n    char *p = malloc(8);\n    return p;\n}\n"
        self.assertEqual(of_rule(analyze(text), "errors.resource-lifecycle"), [])

    def test_double_release(self) -> None:
        text = "void demo_Twice(void)\n{\n    char *p = malloc(8);\n    free(p);\n    free(p);\n}\n"
        found = of_rule(analyze(text), "errors.resource-lifecycle")
        self.assertEqual([finding.line for finding in found], [5])
        self.assertIn("twice", found[0].message)

    def test_overwrite_while_held(self) -> None:
        text = "void demo_Over(void)\n{\n    char *p = malloc(8);\n    p = malloc(16);\n    free(p);\n}\n"
        found = of_rule(analyze(text), "errors.resource-lifecycle")
        self.assertEqual([finding.line for finding in found], [4])
        self.assertIn("reassigned", found[0].message)

    def test_loop_release(self) -> None:
        text = (
            "void demo_Loop(int n)\n{\n    while (n > 0) {\n        char *p = malloc(8);\n        free(p);\n        n--;\n    }\n}\n"
        )
        self.assertEqual(of_rule(analyze(text), "errors.resource-lifecycle"), [])

    def test_path_limit_falls_back_to_local_check(self) -> None:
        branches = "".join(f"    if (a == {n}) {{\n        a++;\n    }}\n" for n in range(4))
        text = f"void demo_Many(int a)\n{{\n    char *p = malloc(8);\n{branches}    free(p);\n}}\n"
        config = cgate.AnalysisConfig.from_mapping({"options": {"path_limit": 4}})
        found = of_rule(analyze(text, config=config), "errors.resource-lifecycle")
        self.assertEqual([finding.severity for finding in found], ["SHOULD"])
        self.assertIn("incomplete", found[0].message)

    def test_events_are_in_statement_order(self) -> None:
        skeleton = cgate.parse_skeleton(cgate.SourceFile.from_text("demo.c", LEAKY))
        function = skeleton.functions[0]
        function.cfg = cgate.build_cfg(function)
        events = cgate.resource_events(function)
        flat = [(e.kind, e.symbol, e.family) for block in sorted(events) for e in events[block]]
        self.assertEqual(flat, [("acquire", "fp", "stream"), ("release", "fp", "stream")])


class ConditionalRuleTests(unittest.TestCase):
    def test_ifdef_style_fix(self) -> None:
        report = analyze("/* f */\n#ifdef FEATURE\nint demo_Flag;\n#endif\n#ifndef OTHER\nint demo_Other;\n#endif\n")
        found = of_rule(report, "conditional.ifdef-style")
        self.assertEqual(
            [finding.fix.replacement for finding in found],
            ["#if defined(FEATURE)", "#if !defined(OTHER)"],
        )

    def test_include_guard_is_exempt(self) -> None:
        report = analyze("/* f */\n#ifndef GUARD_H\n#define GUARD_H\nint demo_X;\n#endif\n", path="guard.h")
        self.assertEqual(of_rule(report, "conditional.ifdef-style"), [])

    def test_dead_block(self) -> None:
        report = analyze("/* f */\n#if 0\nint demo_Old;\n#endif\n")
        self.assertEqual(len(of_rule(report, "conditional.dead-block")), 1)

    def test_unbalanced_is_must(self) -> None:
        report = analyze("/* f */\nint demo_X;\n#endif\n#if FEATURE\n")
        found = of_rule(report, "conditional.unbalanced")
        self.assertEqual([finding.line for finding in found], [3, 4])
        self.assertEqual(report.categories["Conditional-Compilation"].status, "FAIL")


if __name__ == "__main__":
    unittest.main()
