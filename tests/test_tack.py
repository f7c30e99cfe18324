import dataclasses
from io import BytesIO

import pytest

import tack
from tack import TokenKind

def parse(text: str) -> tack.Program:
    return tack.parse_words(tack.lex_text("prog.tack", text))

def compile_text(text: str) -> str:
    return tack.generate_fasm_linux_x86_64(parse(text))

def run(text: str):
    out = BytesIO()
    returncode = tack.simulate_program(parse(text), out)
    return returncode, out.getvalue()

def asm_lines(text: str):
    return [line.strip() for line in compile_text(text).splitlines()]

# lexer

@pytest.mark.parametrize("text", ["", "   ", "\n\n", " \t\r\n\x0c \n"])
def test_whitespace_only_yields_no_words(text):
    assert tack.lex_text("prog.tack", text) == []

def test_words_carry_line_and_column():
    words = tack.lex_text("prog.tack", "2 3\n\n  +   dump\n")
    assert [(w.text, w.loc) for w in words] == [
        ("2", ("prog.tack", 1, 0)),
        ("3", ("prog.tack", 1, 2)),
        ("+", ("prog.tack", 3, 2)),
        ("dump", ("prog.tack", 3, 6)),
    ]

def test_only_ascii_whitespace_separates_words():
    words = tack.lex_text("prog.tack", "a\tb\x0bc\u00a0d\r\n")
    assert [w.text for w in words] == ["a", "b\x0bc\u00a0d"]

def test_words_are_immutable():
    word, = tack.lex_text("prog.tack", "dup")
    with pytest.raises(dataclasses.FrozenInstanceError):
        word.text = "drop"

# parser

@pytest.mark.parametrize("text,value", [
    ("0", 0),
    ("42", 42),
    ("-7", -7),
    ("+5", 5),
    ("007", 7),
    ("9223372036854775807", 2**63 - 1),
    ("-9223372036854775808", -2**63),
])
def test_integer_literals(text, value):
    token, = parse(text)
    assert token.kind == TokenKind.INT
    assert token.value == value
    assert token.word.text == text

@pytest.mark.parametrize("text", ["1_000", "1.5", "0x10", "١"])
def test_malformed_integers_are_invalid_tokens(text):
    with pytest.raises(tack.InvalidToken):
        parse(text)

def test_sign_without_digits_is_an_operator():
    assert [t.kind for t in parse("-")] == [TokenKind.SUB]
    assert [t.kind for t in parse("+")] == [TokenKind.ADD]

def test_integer_literal_out_of_range():
    with pytest.raises(tack.InvalidToken, match="does not fit"):
        parse("9223372036854775808")

def test_booleans_are_integer_literals():
    assert [(t.kind, t.value) for t in parse("true false")] == [
        (TokenKind.INT, 1),
        (TokenKind.INT, 0),
    ]

def test_keyword_table():
    program = parse("+ - * / = < > dup drop swp rot over dump asciidump")
    assert [t.kind for t in program] == [
        TokenKind.ADD, TokenKind.SUB, TokenKind.MUL, TokenKind.DIV,
        TokenKind.EQ, TokenKind.LT, TokenKind.GT,
        TokenKind.DUP, TokenKind.DROP, TokenKind.SWAP, TokenKind.ROT, TokenKind.OVER,
        TokenKind.DUMP, TokenKind.ASCIIDUMP,
    ]
    assert all(t.block is None and t.value is None for t in program)

def test_invalid_token_reports_position():
    with pytest.raises(tack.InvalidToken) as e:
        parse("1 2\n  swap")
    assert e.value.loc == ("prog.tack", 2, 2)
    assert "swap" in e.value.message

def test_comment_discards_rest_of_line():
    program = parse("1 rem 2 anything at all\n3 rem\nrem if\n4")
    assert [t.value for t in program] == [1, 3, 4]

def test_if_end_share_a_block():
    program = parse("1 if 2 end")
    assert program[1].kind == TokenKind.IF
    assert program[3].kind == TokenKind.END
    assert program[1].block == program[3].block == 0

def test_if_else_end_share_a_block():
    program = parse("1 if 2 else 3 end")
    ids = [t.block for t in program if t.block is not None]
    assert ids == [0, 0, 0]

def test_do_gets_its_own_block():
    program = parse("while 1 do end")
    kinds = [(t.kind, t.block) for t in program if t.block is not None]
    assert kinds == [
        (TokenKind.WHILE, 0),
        (TokenKind.DO, 1),
        (TokenKind.END, 1),
    ]

def test_block_ids_increase_in_document_order():
    program = parse("1 if 1 if end end while 0 do end")
    ids = [(t.kind, t.block) for t in program if t.block is not None]
    assert ids == [
        (TokenKind.IF, 0),
        (TokenKind.IF, 1),
        (TokenKind.END, 1),
        (TokenKind.END, 0),
        (TokenKind.WHILE, 2),
        (TokenKind.DO, 3),
        (TokenKind.END, 3),
    ]

@pytest.mark.parametrize("text,error", [
    ("do", tack.UnexpectedDo),
    ("1 if do end", tack.UnexpectedDo),
    ("end", tack.UnexpectedEnd),
    ("1 if end end", tack.UnexpectedEnd),
    ("while 1 end", tack.UnexpectedEnd),
    ("else", tack.UnmatchedElse),
    ("1 if 2 else 3 else 4 end", tack.UnmatchedElse),
    ("while 1 do else end", tack.UnmatchedElse),
    ("1 if", tack.UnterminatedBlock),
    ("while 1", tack.UnterminatedBlock),
    ("while 1 do", tack.UnterminatedBlock),
    ("1 if 2 else", tack.UnterminatedBlock),
])
def test_unbalanced_blocks_are_rejected(text, error):
    with pytest.raises(error):
        parse(text)

def test_unterminated_block_names_innermost_construct():
    with pytest.raises(tack.UnterminatedBlock) as e:
        parse("1 if\n  while 1 do\n")
    assert e.value.loc == ("prog.tack", 2, 10)
    assert "`do`" in e.value.message

def test_unterminated_else_names_the_if():
    with pytest.raises(tack.UnterminatedBlock) as e:
        parse("1 if 2 else 3")
    assert e.value.loc == ("prog.tack", 1, 2)
    assert "`if`" in e.value.message

def test_unmatched_else_points_at_open_block():
    with pytest.raises(tack.UnmatchedElse) as e:
        parse("while\nelse")
    assert e.value.loc == ("prog.tack", 2, 0)
    assert e.value.notes[0][0] == ("prog.tack", 1, 0)

# code generator

def test_document_layout():
    asm = compile_text("")
    lines = asm.splitlines()
    assert lines[:3] == [
        "format ELF64 executable",
        "entry start",
        "segment readable executable",
    ]
    assert "print_decimal:" in lines
    assert "print_char:" in lines
    assert lines.index("start:") > lines.index("print_char:")
    assert lines[-1].strip() == "syscall"
    assert "mov rax, 60" in asm

def test_if_without_else_labels():
    lines = asm_lines("1 if 2 dump end")
    assert lines.count("end_if_0:") == 1
    assert lines.count("jz end_if_0") == 1
    assert lines.index("jz end_if_0") < lines.index("end_if_0:")

def test_if_else_labels():
    lines = asm_lines("1 if 10 dump else 20 dump end")
    jmp = lines.index("jmp end_else_0")
    assert lines[jmp + 1] == "end_if_0:"
    assert lines.count("end_if_0:") == 1
    assert lines.count("end_else_0:") == 1
    assert lines.index("jz end_if_0") < jmp < lines.index("end_else_0:")

def test_while_labels():
    lines = asm_lines("0 while dup 3 < do 1 + end drop")
    top = lines.index("loop_top_0:")
    cond = lines.index("jz end_while_1")
    back = lines.index("jmp loop_top_0")
    exit_label = lines.index("end_while_1:")
    assert top < cond < back < exit_label
    assert back + 1 == exit_label
    assert lines.count("end_while_1:") == 1
    assert lines.count("jmp loop_top_0") == 1

def test_nested_blocks_never_share_labels():
    lines = asm_lines("1 if 1 if end else 0 while 1 do end end")
    labels = [line for line in lines if line.endswith(":")]
    assert len(labels) == len(set(labels))
    assert "end_if_1:" in labels
    assert "loop_top_2:" in labels
    assert "end_while_3:" in labels

def test_generation_is_deterministic():
    text = "0 while dup 10 < do dup 2 = if 1 asciidump end 1 + end"
    assert compile_text(text) == compile_text(text)

def test_integer_literal_lowering():
    lines = asm_lines("-5")
    push = lines.index("mov rax, -5")
    assert lines[push + 1] == "push rax"

def test_subtraction_uses_top_as_subtrahend():
    lines = asm_lines("10 3 -")
    sub = lines.index(";; -- sub --")
    assert lines[sub + 1:sub + 5] == ["pop rax", "pop rbx", "sub rbx, rax", "push rbx"]

# simulator

@pytest.mark.parametrize("text,expected", [
    ("10 3 - dump", b"7\n"),
    ("3 10 - dump", b"-7\n"),
    ("10 3 / dump", b"3\n"),
    ("-7 2 / dump", b"-3\n"),
    ("7 -2 / dump", b"-3\n"),
    ("6 7 * dump", b"42\n"),
    ("9223372036854775807 1 + dump", b"-9223372036854775808\n"),
    ("3 2 > dump 3 2 < dump 2 2 = dump", b"1\n0\n1\n"),
    ("1 2 3 rot dump dump dump", b"1\n3\n2\n"),
    ("1 2 over dump dump dump", b"1\n2\n1\n"),
    ("1 2 swp dump dump", b"1\n2\n"),
    ("72 asciidump 361 asciidump", b"Hi"),
])
def test_operator_semantics(text, expected):
    assert run(text) == (0, expected)

def test_add_then_dump():
    assert run("2 3 + dump") == (0, b"5\n")

@pytest.mark.parametrize("cond,expected", [("1", b"10\n"), ("0", b"20\n")])
def test_if_else_branches(cond, expected):
    assert run("%s if 10 dump else 20 dump end" % cond) == (0, expected)

def test_while_loop():
    assert run("0 while dup 3 < do dup dump 1 + end drop") == (0, b"0\n1\n2\n")

def test_exit_status_is_stack_top():
    assert run("7 300") == (300 & 0xFF, b"")
    assert run("") == (0, b"")

@pytest.mark.parametrize("text", ["dump", "1 +", "1 0 /", "-9223372036854775808 -1 /"])
def test_runtime_faults(text):
    with pytest.raises(tack.SimulationError):
        run(text)

# command line

def test_main_prints_assembly(tmp_path, monkeypatch, capsys):
    source = tmp_path / "add.tack"
    source.write_text("2 3 + dump\n")
    monkeypatch.setattr("sys.argv", ["tack.py", str(source)])
    tack.main()
    captured = capsys.readouterr()
    assert captured.out == tack.generate_fasm_linux_x86_64(parse("2 3 + dump"))
    assert captured.err == ""

@pytest.mark.parametrize("text,message", [
    ("do\n", "ERROR: unexpected `do`"),
    ("1 if\n", "ERROR: unterminated `if` block"),
    ("end\n", "ERROR: unexpected `end`"),
    ("bogus\n", "ERROR: invalid token `bogus`"),
])
def test_main_rejects_bad_programs(tmp_path, monkeypatch, capsys, text, message):
    source = tmp_path / "bad.tack"
    source.write_text(text)
    monkeypatch.setattr("sys.argv", ["tack.py", str(source)])
    with pytest.raises(SystemExit) as e:
        tack.main()
    assert e.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("%s:1:" % source)
    assert message in captured.err

def test_main_reports_unreadable_file(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["tack.py", str(tmp_path / "missing.tack")])
    with pytest.raises(SystemExit) as e:
        tack.main()
    assert e.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("[ERROR] could not read file")

@pytest.mark.parametrize("argv", [[], ["a.tack", "b.tack"]])
def test_main_requires_exactly_one_file(monkeypatch, capsys, argv):
    monkeypatch.setattr("sys.argv", ["tack.py"] + argv)
    with pytest.raises(SystemExit) as e:
        tack.main()
    assert e.value.code == 1
    assert "[ERROR]" in capsys.readouterr().err
