"""Tests for the embedded toolchains (shared lexer, java outline, brainfuck phases).

Pure functions are tested in-process; the click entry points the sandbox
runs are exercised with CliRunner.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from hypothesis import given, settings
from hypothesis import strategies as st

from compilerhub.toolchains import brainfuck as bf
from compilerhub.toolchains import javaparse
from compilerhub.toolchains.lexer import LANGUAGES, main as lexer_main, tokenize

# ============================================================================
# Shared lexer
# ============================================================================


def _kinds(source: str, language: str) -> list[tuple[str, str]]:
    tokens, errors = tokenize(source, language)
    assert errors == []
    return [(t.type, t.value) for t in tokens]


class TestLexer:
    def test_c_function(self) -> None:
        assert _kinds("int main(void) { return 0; }", "c") == [
            ("keyword", "int"),
            ("identifier", "main"),
            ("punctuation", "("),
            ("keyword", "void"),
            ("punctuation", ")"),
            ("punctuation", "{"),
            ("keyword", "return"),
            ("number", "0"),
            ("punctuation", ";"),
            ("punctuation", "}"),
        ]

    def test_positions(self) -> None:
        tokens, _ = tokenize("int x;\n  x = 42;", "c")
        assert [(t.value, t.line, t.column) for t in tokens][-4:] == [
            ("x", 2, 3),
            ("=", 2, 5),
            ("42", 2, 7),
            (";", 2, 9),
        ]

    def test_comments_are_skipped(self) -> None:
        assert _kinds("a // line\n/* block\n */ b", "cpp") == [("identifier", "a"), ("identifier", "b")]

    def test_preprocessor_directive(self) -> None:
        tokens, _ = tokenize('#include <stdio.h>\nint x = a # b;', "c")
        assert tokens[0].type == "preprocessor"
        assert tokens[0].value == "#include <stdio.h>"

    def test_longest_operator_wins(self) -> None:
        assert _kinds("a >>= b", "java") == [("identifier", "a"), ("operator", ">>="), ("identifier", "b")]

    def test_keywords_are_language_specific(self) -> None:
        assert _kinds("func", "go") == [("keyword", "func")]
        assert _kinds("func", "c") == [("identifier", "func")]
        assert _kinds("class", "cpp") == [("keyword", "class")]

    def test_go_raw_string_spans_lines(self) -> None:
        tokens, errors = tokenize("s := `a\nb`\nx", "go")
        assert errors == []
        assert tokens[2].type == "string"
        assert tokens[3].line == 3

    def test_swift_multiline_string(self) -> None:
        tokens, errors = tokenize('let s = """\nhi\n"""', "swift")
        assert errors == []
        assert tokens[-1].value == '"""\nhi\n"""'

    def test_unterminated_string_stops_lexing(self) -> None:
        tokens, errors = tokenize('x = "abc\ny = 1', "java")
        assert [t.value for t in tokens] == ["x", "="]
        assert len(errors) == 1
        assert errors[0].message == "unterminated string literal"
        assert (errors[0].line, errors[0].column) == (1, 5)

    def test_unexpected_character_is_reported_and_skipped(self) -> None:
        tokens, errors = tokenize("a ` b", "c")
        assert [t.value for t in tokens] == ["a", "b"]
        assert errors[0].message == "unexpected character '`'"

    @given(source=st.text(max_size=200), language=st.sampled_from(LANGUAGES))
    @settings(max_examples=200)
    def test_tokens_point_at_their_text(self, source: str, language: str) -> None:
        """Every token's (line, column) locates its exact text in the source."""
        tokens, _ = tokenize(source, language)
        line_starts = [0]
        for index, ch in enumerate(source):
            if ch == "\n":
                line_starts.append(index + 1)
        for token in tokens:
            assert token.line >= 1
            assert token.column >= 1
            offset = line_starts[token.line - 1] + token.column - 1
            assert source.startswith(token.value, offset)

    def test_cli(self, tmp_path: Path) -> None:
        path = tmp_path / "Main.java"
        path.write_text('class Main { String s = "x; }\n', encoding="utf-8")
        result = CliRunner().invoke(lexer_main, ["-l", "java", str(path)])
        assert result.exit_code == 1
        document = json.loads(result.stdout)
        assert document["language"] == "java"
        assert document["tokens"][0] == {"type": "keyword", "value": "class", "line": 1, "column": 1}
        assert "Main.java:1:25: error: unterminated string literal" in result.stderr


# ============================================================================
# Java outline parser
# ============================================================================

JAVA_SOURCE = """package demo;

import java.util.List;

public class Main implements Runnable, Comparable<Main> {
    private int count = 0;

    public Main() {
        count = 1;
    }

    @Override
    public String toString() {
        return "Main";
    }

    public static void main(String[] args) {
        for (int i = 0; i < 3; i++) {
            System.out.println(i);
        }
    }
}
"""


def _shape(node: javaparse.Node) -> tuple[str, str | None]:
    return node.type, node.value


class TestJavaOutline:
    def test_declarations(self) -> None:
        tokens, _ = tokenize(JAVA_SOURCE, "java")
        root = javaparse.outline(tokens)
        assert [_shape(n) for n in root.children] == [
            ("PackageDecl", "demo"),
            ("ImportDecl", "java.util.List"),
            ("ClassDecl", "Main"),
        ]
        cls = root.children[2]
        assert (cls.line, cls.column) == (5, 8)
        assert [_shape(n) for n in cls.children] == [
            ("FieldDecl", "count"),
            ("ConstructorDecl", "Main"),
            ("MethodDecl", "toString"),
            ("MethodDecl", "main"),
        ]

    def test_statements_and_calls_nest(self) -> None:
        tokens, _ = tokenize(JAVA_SOURCE, "java")
        main = javaparse.outline(tokens).children[2].children[3]
        [loop] = main.children
        assert _shape(loop) == ("ForStmt", None)
        assert [_shape(n) for n in loop.children] == [("MethodCall", "System.out.println")]
        assert _shape(javaparse.outline(tokens).children[2].children[2].children[0]) == ("ReturnStmt", None)

    def test_enum_constants(self) -> None:
        tokens, _ = tokenize('enum Color { RED, GREEN("g"); private final String code; }', "java")
        [decl] = javaparse.outline(tokens).children
        assert [_shape(n) for n in decl.children] == [
            ("EnumConstant", "RED"),
            ("EnumConstant", "GREEN"),
            ("FieldDecl", "code"),
        ]

    def test_balanced_source_has_no_bracket_errors(self) -> None:
        tokens, _ = tokenize(JAVA_SOURCE, "java")
        assert javaparse.check_brackets(tokens) == []

    def test_unclosed_brace(self) -> None:
        tokens, _ = tokenize("class A {\n  void f() {\n  }\n", "java")
        [err] = javaparse.check_brackets(tokens)
        assert (err.line, err.column) == (1, 9)
        assert err.message == "reached end of file while parsing: '{' is never closed"

    def test_mismatched_bracket(self) -> None:
        tokens, _ = tokenize("class A { void f( } }", "java")
        messages = [e.message for e in javaparse.check_brackets(tokens)]
        assert messages == ["')' expected to close '(' from line 1, found '}'"]

    def test_unmatched_closer(self) -> None:
        tokens, _ = tokenize("class A { } }", "java")
        [err] = javaparse.check_brackets(tokens)
        assert (err.message, err.column) == ("unmatched '}'", 13)

    def test_cli(self, tmp_path: Path) -> None:
        path = tmp_path / "Main.java"
        path.write_text(JAVA_SOURCE, encoding="utf-8")
        result = CliRunner().invoke(javaparse.main, [str(path)])
        assert result.exit_code == 0, result.output
        ast = json.loads(result.stdout)["ast"]
        assert ast["type"] == "CompilationUnit"
        cls = ast["children"][2]
        assert (cls["type"], cls["value"], cls["line"]) == ("ClassDecl", "Main", 5)
        assert [m["value"] for m in cls["children"]] == ["count", "Main", "toString", "main"]

    def test_cli_reports_syntax_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "Main.java"
        path.write_text("class Main {\n  void f() {\n", encoding="utf-8")
        result = CliRunner().invoke(javaparse.main, [str(path)])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["ast"]["children"][0]["value"] == "Main"
        assert "Main.java:1:12: error: reached end of file while parsing" in result.stderr
        assert "Main.java:2:12: error: reached end of file while parsing" in result.stderr


# ============================================================================
# Brainfuck phases
# ============================================================================

HELLO_A = "++++++++[>++++++++<-]>+."


def _run(source: str, *, optimize: bool = False, stdin: bytes = b"") -> bytes:
    state, _ = bf.execute(bf.build_ir(bf.parse(bf.lex(source)), optimize=optimize), stdin)
    return bytes(state.output)


class TestBrainfuck:
    def test_lex_ignores_comments(self) -> None:
        tokens = bf.lex("a+\n b[")
        assert [(t.type, t.line, t.column) for t in tokens] == [("INCREMENT", 1, 2), ("LOOP_START", 2, 3)]

    def test_parse_nesting(self) -> None:
        ast = bf.parse(bf.lex("+[>[-]<]"))
        assert [c.type for c in ast.children] == ["INCREMENT", "Loop"]
        loop = ast.children[1]
        assert [c.type for c in loop.children] == ["MOVE_RIGHT", "Loop", "MOVE_LEFT"]

    @pytest.mark.parametrize(
        ("source", "message", "position"),
        [
            ("+]", "unmatched ']'", (1, 2)),
            ("[+\n[", "unmatched '['", (2, 1)),
        ],
    )
    def test_unmatched_brackets(self, source: str, message: str, position: tuple[int, int]) -> None:
        with pytest.raises(bf.BrainfuckError) as exc_info:
            bf.parse(bf.lex(source))
        assert exc_info.value.message == message
        assert (exc_info.value.line, exc_info.value.column) == position

    def test_unoptimized_ir(self) -> None:
        code = bf.build_ir(bf.parse(bf.lex("++[-]")))
        assert [(i.op, i.arg) for i in code] == [("ADD", 1), ("ADD", 1), ("JZ", 4), ("ADD", -1), ("JNZ", 2)]

    def test_optimized_ir(self) -> None:
        code = bf.build_ir(bf.parse(bf.lex("+++--[-]>><")), optimize=True)
        assert [(i.op, i.arg) for i in code] == [("ADD", 1), ("SET", 0), ("MOVE", 1)]

    def test_zero_sum_runs_vanish(self) -> None:
        assert bf.build_ir(bf.parse(bf.lex("+-<>")), optimize=True) == []

    def test_execute(self) -> None:
        assert _run(HELLO_A) == b"A"
        assert _run(HELLO_A, optimize=True) == b"A"

    def test_cells_wrap(self) -> None:
        assert _run("-.") == b"\xff"
        assert _run("-+.") == b"\x00"

    def test_input(self) -> None:
        assert _run(",.,.,.", stdin=b"hi") == b"hi\x00"

    def test_pointer_off_tape(self) -> None:
        state = bf.ExecutionState()
        code = bf.build_ir(bf.parse(bf.lex("+.<")))
        with pytest.raises(bf.BrainfuckError, match="data pointer out of range"):
            bf.execute(code, state=state)
        # Partial progress is observable
        assert bytes(state.output) == b"\x01"

    def test_trace_is_bounded(self) -> None:
        code = bf.build_ir(bf.parse(bf.lex("+" * 1000)))
        state, _ = bf.execute(code, trace=True)
        assert state.steps == 1000
        assert len(state.trace) == bf.constants.BRAINFUCK_TRACE_LIMIT
        assert state.trace[0] == {"step": 1, "ip": 0, "op": "ADD", "arg": 1, "pointer": 0, "cell": 0}

    @given(
        program=st.lists(
            st.sampled_from(["+", "-", ">", "<", ".", "[-]", "[+]", "+++", "---"]),
            max_size=40,
        )
    )
    def test_optimization_preserves_behaviour(self, program: list[str]) -> None:
        # Enough head room that '<' never leaves the tape
        source = ">" * 50 + "".join(program)
        code = bf.build_ir(bf.parse(bf.lex(source)))
        optimized = bf.build_ir(bf.parse(bf.lex(source)), optimize=True)
        plain_state, plain_tape = bf.execute(code)
        opt_state, opt_tape = bf.execute(optimized)
        assert opt_state.output == plain_state.output
        assert opt_state.pointer == plain_state.pointer
        assert opt_tape == plain_tape
        assert len(optimized) <= len(code)


class TestBrainfuckCli:
    def test_phases(self, tmp_path: Path) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem(temp_dir=tmp_path):
            Path("main.bf").write_text(HELLO_A, encoding="utf-8")

            lexed = runner.invoke(bf.cli, ["lex", "main.bf"])
            assert lexed.exit_code == 0
            assert len(json.loads(lexed.stdout)["tokens"]) == len(HELLO_A)

            parsed = runner.invoke(bf.cli, ["parse", "main.bf"])
            assert json.loads(parsed.stdout)["ast"]["type"] == "Program"

            ir = runner.invoke(bf.cli, ["ir", "--optimize", "main.bf"])
            assert ir.exit_code == 0
            assert json.loads(ir.stdout)["optimized"] is True
            assert Path(bf.IR_FILENAME).is_file()

            executed = runner.invoke(bf.cli, ["execute", "--trace", bf.IR_FILENAME])
            assert executed.exit_code == 0
            state = json.loads(executed.stdout)
            assert state["output"] == "A"
            assert state["pointer"] == 1
            assert state["tape"]["cells"][1] == 65
            assert state["trace"]

    def test_parse_error(self, tmp_path: Path) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem(temp_dir=tmp_path):
            Path("main.bf").write_text("+\n+]", encoding="utf-8")
            result = runner.invoke(bf.cli, ["parse", "main.bf"])
        assert result.exit_code == 1
        assert result.stdout == ""
        assert "main.bf:2:2: error: unmatched ']'" in result.stderr

    def test_runtime_error_keeps_partial_state(self, tmp_path: Path) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem(temp_dir=tmp_path):
            Path("main.bf").write_text("+.<", encoding="utf-8")
            assert runner.invoke(bf.cli, ["ir", "main.bf"]).exit_code == 0
            result = runner.invoke(bf.cli, ["execute", bf.IR_FILENAME])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["output"] == "\x01"
        assert "error: data pointer out of range" in result.stderr
