import unittest

import cgate


MODULE = """/* demo module */
#include <stdio.h>
#define MAX_USERS 16

typedef struct {
    int id;
} USER_STRUCT;

enum color { RED, GREEN = 3 };

static int userCount = 0;
extern int demo_Shared;

/* Adds a user. */
int demo_AddUser(const char *name, int flags)
{
    UINT32 user_id;
    int i;
    for (i = 0; i < MAX_USERS; i++) {
        if (name == NULL) {
            break;
        }
    }
    return 0;
}
"""


def parse(text, path="demo.c"):
    return cgate.parse_skeleton(cgate.SourceFile.from_text(path, text))


def by_name(skeleton, name):
    return next(decl for decl in skeleton.declarations if decl.name == name)


class StructuralParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.skeleton = parse(MODULE)

    def test_includes_and_macros(self) -> None:
        self.assertEqual(self.skeleton.includes, ["stdio.h"])
        macro = by_name(self.skeleton, "MAX_USERS")
        self.assertEqual(macro.kind, "macro")
        self.assertEqual(macro.value, "16")
        self.assertFalse(macro.is_function_like)

    def test_typedef_and_enum_constants(self) -> None:
        self.assertEqual(by_name(self.skeleton, "USER_STRUCT").kind, "typedef_struct")
        self.assertIn("USER_STRUCT", self.skeleton.typedef_names)
        self.assertEqual(by_name(self.skeleton, "RED").kind, "constant")
        self.assertEqual([t.text for t in by_name(self.skeleton, "GREEN").initializer], ["3"])
        self.assertEqual(by_name(self.skeleton, "color").kind, "tag")

    def test_file_scope_variables(self) -> None:
        count = by_name(self.skeleton, "userCount")
        self.assertEqual((count.kind, count.scope, count.storage), ("variable", "module", "static"))
        shared = by_name(self.skeleton, "demo_Shared")
        self.assertEqual(shared.storage, "extern")
        self.assertFalse(shared.is_definition)

    def test_function_definition(self) -> None:
        self.assertEqual(len(self.skeleton.functions), 1)
        function = self.skeleton.functions[0]
        self.assertEqual(function.name, "demo_AddUser")
        self.assertEqual(function.return_type, "int")
        self.assertEqual([p.name for p in function.parameters], ["name", "flags"])
        name = function.parameters[0]
        self.assertTrue(name.is_const)
        self.assertEqual(name.pointer_depth, 1)
        self.assertTrue(name.is_char_string)
        self.assertIsNotNone(function.header_comment)
        self.assertEqual([decl.name for decl in function.locals], ["user_id", "i"])

    def test_unknown_type_name_is_still_a_declaration(self) -> None:
        user_id = by_name(self.skeleton, "user_id")
        self.assertEqual(user_id.type_name, "UINT32")
        self.assertEqual(user_id.scope, "local")
        self.assertEqual(user_id.function, "demo_AddUser")

    def test_statement_tree(self) -> None:
        function = self.skeleton.functions[0]
        kinds = [statement.kind for statement in function.statements]
        self.assertEqual(kinds[:3], ["declaration", "declaration", "for"])
        self.assertIn("if", kinds)
        self.assertIn("break", kinds)
        self.assertEqual(kinds[-1], "return")
        loop = function.statements[2]
        init, condition, step = loop.for_clauses()
        self.assertEqual([t.text for t in condition], ["i", "<", "MAX_USERS"])
        self.assertEqual([t.text for t in loop.controlling_expression], ["i", "<", "MAX_USERS"])
        self.assertIn("i", loop.variables_written)

    def test_statement_assignment_and_calls(self) -> None:
        skeleton = parse("void f(int *out)\n{\n    *out = compute(1, g(2));\n}\n")
        statement = skeleton.functions[0].statements[0]
        lhs, op, rhs = statement.assignment
        self.assertEqual([t.text for t in lhs], ["*", "out"])
        self.assertEqual(op, "=")
        self.assertEqual([call.callee_name for call in statement.calls], ["compute", "g"])
        self.assertEqual(len(statement.calls[0].args), 2)

    def test_preprocessor_gate_is_recorded(self) -> None:
        skeleton = parse("#ifdef FEATURE\nint a;\n#else\nint b;\n#endif\n")
        self.assertEqual(by_name(skeleton, "a").gate, ("defined(FEATURE)",))
        self.assertEqual(by_name(skeleton, "b").gate, ("!(defined(FEATURE))",))
        self.assertEqual(skeleton.conditional_issues, [])

    def test_stray_and_unclosed_conditionals(self) -> None:
        stray = parse("int a;\n#endif\n")
        self.assertEqual(len(stray.conditional_issues), 1)
        self.assertIn("without a matching", stray.conditional_issues[0].message)
        unclosed = parse("#if HAVE_X\nint a;\n")
        self.assertEqual(len(unclosed.conditional_issues), 1)
        self.assertEqual(unclosed.conditional_issues[0].line, 1)

    def test_unterminated_statement_becomes_opaque(self) -> None:
        skeleton = parse("void f(void)\n{\n    x = 1\n}\n")
        statement = skeleton.functions[0].statements[0]
        self.assertEqual(statement.kind, "opaque")
        self.assertEqual(len(skeleton.ambiguities), 1)
        self.assertIsInstance(skeleton.ambiguities[0], cgate.ParseAmbiguity)

    def test_extern_c_wrapper_is_transparent(self) -> None:
        skeleton = parse('extern "C" {\nint demo_Api(void);\n}\n')
        api = by_name(skeleton, "demo_Api")
        self.assertEqual(api.kind, "function")
        self.assertFalse(api.is_definition)

    def test_goto_and_labels(self) -> None:
        skeleton = parse("void f(void)\n{\n    goto out;\nout:\n    return;\n}\n")
        kinds = [(s.kind, s.label) for s in skeleton.functions[0].statements]
        self.assertEqual(kinds, [("goto", "out"), ("label", "out"), ("return", None)])


if __name__ == "__main__":
    unittest.main()
