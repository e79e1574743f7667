import unittest

import cgate


SCOPES = """static int counter;
int demo_Get(int counter)
{
    int total = counter;
    {
        int counter = 3;
        total += counter;
    }
    return total + unknownThing + errno + MAX_SIZE;
}
"""


def table_for(text):
    skeleton = cgate.parse_skeleton(cgate.SourceFile.from_text("demo.c", text))
    return skeleton, cgate.SymbolTable.build(skeleton)


class SymbolTableTests(unittest.TestCase):
    def setUp(self) -> None:
        self.skeleton, self.symbols = table_for(SCOPES)

    def reference(self, name, line):
        return next(ref for ref in self.symbols.references if ref.token.text == name and ref.token.line == line)

    def test_parameter_shadows_file_scope(self) -> None:
        ref = self.reference("counter", 4)
        self.assertEqual(ref.declaration.kind, "parameter")
        self.assertEqual(ref.function, "demo_Get")

    def test_inner_block_shadows_parameter(self) -> None:
        ref = self.reference("counter", 7)
        self.assertEqual(ref.declaration.kind, "variable")
        self.assertEqual(ref.declaration.line, 6)
        self.assertIs(self.symbols.resolve_token(ref.token), ref.declaration)

    def test_unresolved_names_skip_macros_and_well_known(self) -> None:
        self.assertEqual(list(self.symbols.unresolved), ["unknownThing"])

    def test_lookup_walks_to_file_scope(self) -> None:
        decl = self.symbols.lookup("counter")
        self.assertEqual((decl.kind, decl.scope), ("variable", "module"))
        self.assertIsNone(self.symbols.lookup("nothing"))

    def test_module_writable(self) -> None:
        skeleton, symbols = table_for(
            "static int a;\nint demo_B = 1;\nstatic const int LIMIT = 4;\nextern int demo_C;\nconst char *demo_D;\n"
        )
        self.assertEqual([decl.name for decl in symbols.module_writable()], ["a", "demo_B", "demo_D"])

    def test_references_to(self) -> None:
        total = next(decl for decl in self.skeleton.declarations if decl.name == "total")
        lines = [ref.token.line for ref in self.symbols.references_to(total)]
        self.assertEqual(lines, [4, 7, 9])


if __name__ == "__main__":
    unittest.main()
