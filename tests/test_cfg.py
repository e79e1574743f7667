import unittest

import cgate


def function_of(text, name=None):
    skeleton = cgate.parse_skeleton(cgate.SourceFile.from_text("demo.c", text))
    functions = skeleton.functions
    function = functions[0] if name is None else next(f for f in functions if f.name == name)
    function.cfg = cgate.build_cfg(function)
    return function


class ControlFlowGraphTests(unittest.TestCase):
    def test_if_else_branches_and_joins(self) -> None:
        function = function_of(
            "int f(int a)\n{\n    int r = 0;\n    if (a > 0) {\n        r = 1;\n    } else {\n        r = 2;\n    }\n    return r;\n}\n"
        )
        cfg = function.cfg
        entry = cfg.blocks[cfg.entry_id]
        self.assertEqual(entry.terminator, "branch")
        self.assertEqual([t.text for t in entry.branch_condition], ["a", ">", "0"])
        self.assertIsNotNone(entry.true_successor)
        self.assertIsNotNone(entry.false_successor)
        self.assertNotEqual(entry.true_successor, entry.false_successor)
        self.assertFalse(cfg.falls_off_end)
        self.assertEqual(cfg.unreachable_blocks(), [])
        self.assertEqual(len(cfg.return_blocks()), 1)
        self.assertEqual(len(list(cfg.paths_to_exit())), 2)

    def test_code_after_return_is_unreachable(self) -> None:
        cfg = function_of("int g(void)\n{\n    return 1;\n    demoCall();\n}\n").cfg
        dead = cfg.unreachable_blocks()
        self.assertEqual(len(dead), 1)
        self.assertEqual(dead[0].statements[0].line, 4)

    def test_falling_off_the_end_links_to_exit(self) -> None:
        cfg = function_of("void h(int n)\n{\n    n++;\n}\n").cfg
        self.assertTrue(cfg.falls_off_end)
        self.assertEqual(cfg.blocks[cfg.entry_id].terminator, "exit")
        self.assertIn(cfg.exit_id, cfg.blocks[cfg.entry_id].successors)

    def test_while_loop_has_back_edge(self) -> None:
        function = function_of("void h(int n)\n{\n    while (n > 0) {\n        n--;\n    }\n}\n")
        cfg = function.cfg
        loop = function.statements[0]
        condition = cfg.block_of(loop)
        self.assertEqual(condition.terminator, "branch")
        body = cfg.blocks[condition.true_successor]
        self.assertIn(condition.block_id, body.successors)

    def test_infinite_loop_condition_does_not_branch(self) -> None:
        function = function_of("void h(void)\n{\n    for (;;) {\n        tick();\n    }\n}\n")
        condition = function.cfg.block_of(function.statements[0])
        self.assertEqual(condition.terminator, "fallthrough")
        self.assertFalse(function.cfg.falls_off_end)

    def test_break_leaves_the_loop(self) -> None:
        function = function_of(
            "void h(int n)\n{\n    while (1) {\n        if (n) {\n            break;\n        }\n    }\n    n = 0;\n}\n"
        )
        self.assertTrue(function.cfg.falls_off_end)
        self.assertEqual(function.cfg.unreachable_blocks(), [])

    def test_switch_cases_hang_off_the_header(self) -> None:
        function = function_of(
            "int s(int k)\n{\n    int r = 0;\n    switch (k) {\n    case 1:\n        r = 1;\n        break;\n"
            "    default:\n        r = 2;\n        break;\n    }\n    return r;\n}\n"
        )
        cfg = function.cfg
        header = cfg.blocks[cfg.entry_id]
        self.assertEqual(header.terminator, "branch")
        self.assertEqual(len(header.successors), 2)
        self.assertEqual(cfg.unreachable_blocks(), [])

    def test_do_while_runs_body_first(self) -> None:
        function = function_of("void d(int n)\n{\n    do {\n        n--;\n    } while (n > 0);\n}\n")
        cfg = function.cfg
        body_id = cfg.blocks[cfg.entry_id].successors[0]
        loop = function.statements[0]
        condition = cfg.block_of(loop)
        self.assertEqual(condition.true_successor, body_id)

    def test_goto_resolution(self) -> None:
        function = function_of(
            "int c(int a)\n{\n    int rc = 0;\n    if (a) {\n        rc = -1;\n        goto out;\n    }\n"
            "    rc = 1;\nout:\n    return rc;\n}\n"
        )
        cfg = function.cfg
        self.assertEqual(cfg.unresolved_gotos, [])
        self.assertIn("out", cfg.labels)
        self.assertEqual(cfg.cleanup_labels(), ["out"])

    def test_unresolved_goto(self) -> None:
        cfg = function_of("void k(void)\n{\n    goto missing;\n}\n").cfg
        self.assertEqual([s.label for s in cfg.unresolved_gotos], ["missing"])

    def test_path_enumeration_is_bounded(self) -> None:
        body = "".join(f"    if (a == {n}) {{\n        a++;\n    }}\n" for n in range(10))
        cfg = function_of(f"void m(int a)\n{{\n{body}}}\n").cfg
        with self.assertRaises(cgate.AnalysisLimitExceeded):
            list(cfg.paths_to_exit(limit=8))

    def test_path_enumeration_honours_cancellation(self) -> None:
        cfg = function_of("void h(int n)\n{\n    n++;\n}\n").cfg
        token = cgate.CancelToken()
        token.cancel()
        with self.assertRaises(cgate.CancelledError):
            list(cfg.paths_to_exit(cancel=token))


if __name__ == "__main__":
    unittest.main()
